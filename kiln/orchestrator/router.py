import asyncio
import functools
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from kiln.core.config import GenerationConfig, ModelConfig
from kiln.core.exceptions import EngineError, ProtocolError
from kiln.core.logging import set_correlation_id
from kiln.core.metrics import metrics
from kiln.interfaces.engine import ModelResource
from kiln.llm.interrupt import InterruptFlag
from kiln.llm.pool import ModelResourcePool
from kiln.llm.prompts import parse_history
from kiln.orchestrator import events
from kiln.orchestrator.events import CommandType, EventSink
from kiln.orchestrator.fsm import FSM
from kiln.orchestrator.session import GenerationSession
from kiln.orchestrator.state import State

logger = logging.getLogger(__name__)

CommandHandler = Callable[[Dict[str, Any]], Awaitable[None]]

WARMUP_MESSAGE = "Compiling kernels and warming up model..."

class CommandRouter:
    """
    Boundary between the host and the worker.

    Takes tagged command records, drives the pool, the session and the
    interrupt flag, and reports everything back through `emit`. A failing
    command produces exactly one `error` event and leaves the router usable.
    """

    def __init__(
        self,
        pool: ModelResourcePool,
        emit: EventSink,
        generation: Optional[GenerationConfig] = None,
        interrupt: Optional[InterruptFlag] = None,
    ):
        self.pool = pool
        self.emit = emit
        self.generation = generation or GenerationConfig()
        self.interrupt = interrupt or InterruptFlag()
        self.fsm = FSM()
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[CommandType, CommandHandler] = {
            CommandType.LOAD: self._load,
            CommandType.GENERATE: self._generate,
            CommandType.INTERRUPT: self._interrupt,
            CommandType.RESET: self._reset,
        }

    def dispatch(self, command: Any) -> asyncio.Task:
        """
        Schedule `handle` without waiting for it, so an interrupt can be
        received while a generation is still running.
        """
        task = asyncio.create_task(self.handle(command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle(self, command: Any):
        set_correlation_id(str(uuid.uuid4()))
        try:
            command_type = self._command_type(command)
            logger.debug(f"Handling command {command_type.value}", extra={"command": command_type.value})
            metrics.increment("commands", {"type": command_type.value})
            await self._handlers[command_type](command)
        except Exception as e:
            logger.error(f"Command failed: {e}", exc_info=True)
            metrics.increment("errors", {"type": type(e).__name__})
            self.emit(events.error(str(e)))

    async def aclose(self):
        """Stop any in-flight generation and wait for pending commands."""
        self.interrupt.set()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _command_type(self, command: Any) -> CommandType:
        if not isinstance(command, dict):
            raise ProtocolError("command must be an object")
        try:
            return CommandType(command.get("type"))
        except ValueError:
            raise ProtocolError(f"Unknown command type {command.get('type')!r}") from None

    async def _load(self, command: Dict[str, Any]):
        config = ModelConfig.from_dict(command.get("config"))

        # Held until ready: a generate during download or warm-up is rejected
        self.fsm.begin()

        started = time.perf_counter()
        try:
            self.emit(events.loading(f"Loading model...\n{config.describe()}"))

            resource = await self.pool.acquire(config, self.emit)

            self.emit(events.loading(WARMUP_MESSAGE))
            await self._warm_up(resource)
        except BaseException:
            self.fsm.transition(State.ERROR)
            raise

        self.fsm.transition(State.IDLE)
        metrics.record_latency("model_load", (time.perf_counter() - started) * 1000,
                               {"model": config.model_name})
        self.emit(events.ready())

    async def _warm_up(self, resource: ModelResource):
        """Throwaway one-token generation so backend kernels are built before real use."""
        inputs = resource.tokenizer.encode_text(self.generation.warmup_text)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                functools.partial(resource.model.generate, inputs, self.generation.warmup_max_new_tokens),
            )
        except Exception as e:
            raise EngineError(f"Warm-up generation failed: {e}") from e

    async def _generate(self, command: Dict[str, Any]):
        history = parse_history(command.get("data"))
        config = ModelConfig.from_dict(command.get("config"))

        # Reject overlap before touching the flag: it belongs to the running session
        self.fsm.begin()
        self.interrupt.reset()

        started = time.perf_counter()
        try:
            resource = await self.pool.acquire(config)
            session = GenerationSession(resource, self.interrupt, self.emit, self.generation, self.fsm)
            await session.run(history)
        except BaseException:
            self.fsm.transition(State.ERROR)
            raise

        metrics.increment("generated_fragments", value=session.token_count)
        metrics.record_latency("generation", (time.perf_counter() - started) * 1000,
                               {"model": config.model_name})

    async def _interrupt(self, command: Dict[str, Any]):
        logger.info("Interrupt requested", extra={"state": self.fsm.state.name})
        metrics.increment("interrupts")
        self.interrupt.set()

    async def _reset(self, command: Dict[str, Any]):
        self.interrupt.reset()
