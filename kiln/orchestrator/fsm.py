import logging

from kiln.core.exceptions import ProtocolError
from kiln.orchestrator.state import State

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    State.IDLE: {State.LOADING},
    # LOADING -> IDLE when a load command finished or a lenient session gave up
    State.LOADING: {State.GENERATING, State.IDLE},
    State.GENERATING: {State.COMPLETED},
    State.COMPLETED: {State.LOADING},
    State.ERROR: {State.LOADING},
}

class FSM:
    """
    Lifecycle of the generation session: IDLE -> LOADING -> GENERATING -> COMPLETED.

    A load command holds LOADING until the model is warm and then returns to IDLE.
    Interruption is not a state: an interrupted run still ends in COMPLETED.
    ERROR is reachable from anywhere.
    """

    def __init__(self):
        self.state = State.IDLE

    @property
    def busy(self) -> bool:
        return self.state in (State.LOADING, State.GENERATING)

    def transition(self, new_state: State):
        if self.state == new_state:
            return

        if new_state != State.ERROR and new_state not in _TRANSITIONS[self.state]:
            raise ProtocolError(f"Invalid session transition {self.state.name} -> {new_state.name}")

        old_state = self.state
        self.state = new_state
        logger.info(f"FSM Transition: {old_state.name} -> {new_state.name}",
                    extra={"old_state": old_state.name, "new_state": new_state.name})

    def begin(self):
        """Claim the session for a new generation, rejecting overlap."""
        if self.busy:
            raise ProtocolError("generation already in progress")
        self.transition(State.LOADING)
