from enum import Enum, auto

class State(Enum):
    IDLE = auto()
    LOADING = auto()
    GENERATING = auto()
    COMPLETED = auto()
    ERROR = auto()
