from enum import Enum
from typing import Any, Callable, Dict

from kiln.llm.stream import UpdateEvent

Event = Dict[str, Any]
# Sinks must not block: they are called on the event loop, in emission order
EventSink = Callable[[Event], None]

class CommandType(Enum):
    LOAD = "load"
    GENERATE = "generate"
    INTERRUPT = "interrupt"
    RESET = "reset"

class Status(Enum):
    LOADING = "loading"
    INITIATE = "initiate"  # artifact download began
    PROGRESS = "progress"
    DONE = "done"  # artifact finished
    READY = "ready"
    START = "start"
    UPDATE = "update"
    COMPLETE = "complete"
    ERROR = "error"

def loading(text: str) -> Event:
    return {"status": Status.LOADING.value, "data": text}

def ready() -> Event:
    return {"status": Status.READY.value}

def start() -> Event:
    return {"status": Status.START.value}

def update(event: UpdateEvent) -> Event:
    payload = {
        "status": Status.UPDATE.value,
        "output": event.text,
        "numTokens": event.token_count,
    }
    # tps is absent, not null, on the first fragment
    if event.tokens_per_second is not None:
        payload["tps"] = event.tokens_per_second
    return payload

def complete(output: str) -> Event:
    return {"status": Status.COMPLETE.value, "output": output}

def error(message: str) -> Event:
    return {"status": Status.ERROR.value, "error": message}
