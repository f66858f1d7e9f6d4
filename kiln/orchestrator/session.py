import asyncio
import functools
import logging
import time
from typing import Callable, List, Mapping, Optional

from kiln.core.config import GenerationConfig
from kiln.core.exceptions import EncodingError, EngineError
from kiln.interfaces.engine import ModelResource
from kiln.llm.interrupt import InterruptFlag
from kiln.llm.prompts import Message
from kiln.llm.stream import FragmentChannel, StreamAggregator
from kiln.orchestrator import events
from kiln.orchestrator.events import EventSink
from kiln.orchestrator.fsm import FSM
from kiln.orchestrator.state import State

logger = logging.getLogger(__name__)

class GenerationSession:
    """
    Drives a single generation request from chat history to final text.

    A session lives for exactly one generate command. It never catches its own
    failures: they propagate to the router, which reports them to the host.
    """

    def __init__(
        self,
        resource: ModelResource,
        interrupt: InterruptFlag,
        emit: EventSink,
        config: Optional[GenerationConfig] = None,
        fsm: Optional[FSM] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.resource = resource
        self.interrupt = interrupt
        self.emit = emit
        self.config = config or GenerationConfig()
        self.fsm = fsm or FSM()
        self.aggregator = StreamAggregator(clock)
        self.last_error: Optional[BaseException] = None

    @property
    def token_count(self) -> int:
        return self.aggregator.token_count

    @property
    def start_timestamp(self) -> Optional[float]:
        return self.aggregator.start_timestamp

    async def run(self, history: List[Message]) -> Optional[str]:
        """
        Generate a reply to `history`, streaming updates through `emit`.

        Returns:
            The fully decoded output (special tokens included), or None when a
            lenient session skipped an unusable request
        """
        if self.fsm.state != State.LOADING:
            self.fsm.begin()
        try:
            return await self._run(history)
        except BaseException as e:
            self.last_error = e
            raise

    async def _run(self, history: List[Message]) -> Optional[str]:
        tokenizer, model = self.resource.tokenizer, self.resource.model

        try:
            request = tokenizer.encode_chat([m.to_dict() for m in history])
        except Exception as e:
            raise EncodingError(f"Chat template failed: {e}") from e

        if not isinstance(request, Mapping):
            if self.config.strict_encoding:
                raise EncodingError(
                    f"Chat template produced {type(request).__name__}, expected a mapping"
                )
            logger.warning("Chat template produced an unusable request; skipping generation")
            self.fsm.transition(State.IDLE)
            return None

        self.fsm.transition(State.GENERATING)
        self.emit(events.start())

        loop = asyncio.get_running_loop()
        channel = FragmentChannel(loop)
        future = loop.run_in_executor(
            None,
            functools.partial(
                model.generate,
                request,
                self.config.max_new_tokens,
                channel.push,
                self.interrupt,
            ),
        )
        future.add_done_callback(lambda _: channel.close())

        try:
            async for update in self.aggregator.wrap(channel):
                if update.token_count == 1:
                    logger.info("Received first fragment")
                self.emit(events.update(update))
        except BaseException:
            # Cancelled or the sink failed: stop the decoding loop before giving up the session
            self.interrupt.set()
            await asyncio.wait({future})
            if not future.cancelled() and future.exception() is not None:
                logger.debug(f"Decoding loop also failed: {future.exception()}")
            raise

        try:
            raw_output = await future
        except Exception as e:
            raise EngineError(f"Generation failed: {e}") from e

        output = tokenizer.decode(raw_output, skip_special_tokens=False)
        logger.info(
            f"Generation complete. Fragments: {self.token_count}",
            extra={"fragments": self.token_count, "interrupted": self.interrupt.is_set()},
        )

        self.fsm.transition(State.COMPLETED)
        self.emit(events.complete(output))
        return output
