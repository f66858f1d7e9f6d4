import asyncio
import logging
from typing import Dict, List, Optional

from kiln.core.config import ModelConfig
from kiln.core.exceptions import LoadError
from kiln.interfaces.engine import ABCModelLoader, ModelResource, ProgressCallback

logger = logging.getLogger(__name__)


class ModelResourcePool:
    """
    Lazily loads and memoizes one tokenizer/model pair per ModelConfig.

    Entries hold the pending load task, so concurrent acquires for equal
    configs share a single load. Failed loads are dropped from the pool and
    the next acquire starts over. Resources are never evicted.
    """

    def __init__(self, loader: ABCModelLoader):
        self._loader = loader
        self._entries: Dict[ModelConfig, asyncio.Future] = {}

    async def acquire(self, config: ModelConfig, on_progress: Optional[ProgressCallback] = None) -> ModelResource:
        """
        Return the resource for `config`, loading it on first use.

        `on_progress` only fires for the call that actually starts the load;
        cache hits and callers joining an in-flight load never see progress.
        """
        entry = self._entries.get(config)
        if entry is None:
            logger.info(f"Loading model resource: {config.describe()}", extra={"model": config.model_name})
            entry = asyncio.ensure_future(self._load(config, on_progress))
            entry.add_done_callback(self._log_failure)
            self._entries[config] = entry
        elif entry.done():
            logger.debug(f"Model resource cache hit: {config.describe()}")
        else:
            logger.debug(f"Joining in-flight load: {config.describe()}")

        # A cancelled caller must not cancel the load the other callers share
        return await asyncio.shield(entry)

    async def _load(self, config: ModelConfig, on_progress: Optional[ProgressCallback]) -> ModelResource:
        resolved = False

        def report(event: dict) -> None:
            if resolved or on_progress is None:
                return
            on_progress(event)

        try:
            resource = await self._loader.load(config, report)
        except (LoadError, asyncio.CancelledError):
            self._entries.pop(config, None)
            raise
        except Exception as e:
            self._entries.pop(config, None)
            raise LoadError(f"Failed to load {config.describe()}: {e}", cause=e) from e
        finally:
            resolved = True

        logger.info(f"Model resource ready: {config.describe()}", extra={"model": config.model_name})
        return resource

    @staticmethod
    def _log_failure(entry: asyncio.Future) -> None:
        # Retrieves the failure even when every caller stopped waiting for it
        if not entry.cancelled() and entry.exception() is not None:
            logger.warning(f"Model resource load failed: {entry.exception()}")

    def is_loaded(self, config: ModelConfig) -> bool:
        entry = self._entries.get(config)
        return entry is not None and entry.done() and not entry.cancelled() and entry.exception() is None

    @property
    def loaded_configs(self) -> List[ModelConfig]:
        return [config for config in self._entries if self.is_loaded(config)]
