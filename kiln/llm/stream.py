import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Callable, Iterable, Optional, Union

logger = logging.getLogger(__name__)

_CLOSED = object()

# Floor for the elapsed time between two fragments so a coarse clock never divides by zero
_MIN_ELAPSED_MS = 1e-3


class FragmentChannel:
    """
    Hands text fragments from the decoding thread to the event loop.

    `push` and `close` may be called from any thread; iteration happens on the
    loop. Fragments come out in the order they were pushed, one at a time, as
    soon as the loop gets to them.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def push(self, fragment: str) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, fragment)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._loop.call_soon_threadsafe(self._queue.put_nowait, _CLOSED)

    def __aiter__(self) -> "FragmentChannel":
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


@dataclass(frozen=True)
class UpdateEvent:
    text: str
    token_count: int
    tokens_per_second: Optional[float] = None


class StreamAggregator:
    """
    Turns decoded fragments into throughput-annotated updates.

    One aggregator per generation: the counter and the start timestamp belong
    to a single session. `token_count` counts fragments, not raw tokens.
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._consumed = False
        self.token_count = 0
        self.start_timestamp: Optional[float] = None

    def observe(self, text: str) -> UpdateEvent:
        now = self._clock()
        if self.start_timestamp is None:
            self.start_timestamp = now

        first = self.token_count == 0
        self.token_count += 1

        tps = None
        if not first:
            elapsed_ms = max((now - self.start_timestamp) * 1000.0, _MIN_ELAPSED_MS)
            tps = self.token_count / elapsed_ms * 1000.0

        return UpdateEvent(text=text, token_count=self.token_count, tokens_per_second=tps)

    async def wrap(self, fragments: Union[AsyncIterable[str], Iterable[str]]) -> AsyncIterator[UpdateEvent]:
        """
        Yield one UpdateEvent per fragment, in arrival order, without buffering.
        """
        if self._consumed:
            raise RuntimeError("StreamAggregator already consumed a stream; create a new one per session")
        self._consumed = True

        if hasattr(fragments, "__aiter__"):
            async for text in fragments:
                yield self.observe(text)
        else:
            for text in fragments:
                yield self.observe(text)

        logger.debug(f"Stream finished after {self.token_count} fragments")
