import threading


class InterruptFlag:
    """
    Cooperative stop signal shared by the orchestrator and the decoding loop.

    The orchestrator sets and resets it on the event loop thread while the
    decoding loop polls it from a worker thread once per generated token.
    `threading.Event` gives the write-visibility guarantee across that boundary.
    """

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        state = "set" if self.is_set() else "clear"
        return f"InterruptFlag({state})"
