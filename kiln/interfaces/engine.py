from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

from kiln.core.config import ModelConfig

ProgressCallback = Callable[[dict], None]
FragmentCallback = Callable[[str], None]

class ABCTokenizer(ABC):
    """
    Interface for tokenizers.
    Responsibility: Turn a conversation into a model request and raw output back into text.
    """

    @abstractmethod
    def encode_chat(self, messages: Sequence[Mapping[str, str]]) -> Any:
        """
        Apply the chat template with the generation prompt appended.
        Returns a dict-like request on success; anything else is unusable.
        """
        pass

    @abstractmethod
    def encode_text(self, text: str) -> Mapping[str, Any]:
        """Encode plain text without any chat framing."""
        pass

    @abstractmethod
    def decode(self, raw_output: Any, skip_special_tokens: bool = False) -> str:
        """Decode the complete raw output of a generation."""
        pass

class ABCModel(ABC):
    """
    Interface for the decoding loop.
    Responsibility: Generate tokens, reporting text fragments as they are finalized.
    """

    @abstractmethod
    def generate(
        self,
        request: Mapping[str, Any],
        max_new_tokens: int,
        on_fragment: Optional[FragmentCallback] = None,
        interrupt: Any = None,
    ) -> Any:
        """
        Blocking generation. Must call `on_fragment` once per emitted unit of
        text in order and poll `interrupt.is_set()` at every step, stopping
        every row of the batch as soon as it is set.
        """
        pass

@dataclass(frozen=True)
class ModelResource:
    tokenizer: ABCTokenizer
    model: ABCModel

class ABCModelLoader(ABC):
    """
    Interface for model acquisition.
    Responsibility: Fetch artifacts and build the tokenizer/model pair for a config.
    """

    @abstractmethod
    async def load(self, config: ModelConfig, on_progress: Optional[ProgressCallback] = None) -> ModelResource:
        """
        Load both artifacts. `on_progress` receives initiate/progress/done
        records. Failures raise LoadError.
        """
        pass
