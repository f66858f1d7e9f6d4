"""
Backend based on Hugging Face Transformers.

Loads the model in its native format (safetensors) with torch. The dtype of a
ModelConfig selects either a torch dtype or bitsandbytes quantization; torch
and transformers are imported lazily so the orchestrator runs without them.
"""

import asyncio
import functools
import logging
import os
from typing import Any, Mapping, Optional, Sequence

from kiln.core.config import ModelConfig
from kiln.core.exceptions import LoadError
from kiln.hub.downloader import ArtifactDownloader
from kiln.interfaces.engine import (
    ABCModel,
    ABCModelLoader,
    ABCTokenizer,
    FragmentCallback,
    ModelResource,
    ProgressCallback,
)
from kiln.llm.prompts import Message, PromptBuilder

logger = logging.getLogger(__name__)

DEVICE_MAPS = {
    "auto": "auto",
    "cpu": "cpu",
    "gpu": "cuda",
    "cuda": "cuda",
}

# Browser execution targets have no torch counterpart
UNSUPPORTED_DEVICES = frozenset({"wasm", "webgpu", "dml", "webnn", "webnn-npu", "webnn-gpu", "webnn-cpu"})
UNSUPPORTED_DTYPES = frozenset({"uint8"})


@functools.lru_cache(maxsize=None)
def _streamer_class():
    from transformers import TextStreamer

    class CallbackTextStreamer(TextStreamer):
        """Forwards each finalized piece of text to a callback instead of stdout."""

        def __init__(self, tokenizer, callback: FragmentCallback):
            super().__init__(tokenizer, skip_prompt=True, skip_special_tokens=True)
            self.callback = callback

        def on_finalized_text(self, text: str, stream_end: bool = False):
            if text:
                self.callback(text)

    return CallbackTextStreamer


@functools.lru_cache(maxsize=None)
def _interrupt_criteria_class():
    import torch
    from transformers import StoppingCriteria

    class InterruptStoppingCriteria(StoppingCriteria):
        """Stops every row of the batch once the interrupt flag is set."""

        def __init__(self, flag):
            self.flag = flag

        def __call__(self, input_ids, scores, **kwargs):
            return torch.full(
                (input_ids.shape[0],),
                self.flag.is_set(),
                dtype=torch.bool,
                device=input_ids.device,
            )

    return InterruptStoppingCriteria


def make_streamer(tokenizer, callback: FragmentCallback):
    return _streamer_class()(tokenizer, callback)


def make_interrupt_criteria(flag):
    return _interrupt_criteria_class()(flag)


def load_kwargs(config: ModelConfig) -> dict:
    """Translate dtype/device of a ModelConfig into from_pretrained() arguments."""
    import torch

    kwargs = {"device_map": DEVICE_MAPS[config.device]}

    if config.dtype == "auto":
        kwargs["torch_dtype"] = "auto"
    elif config.dtype == "fp32":
        kwargs["torch_dtype"] = torch.float32
    elif config.dtype == "fp16":
        kwargs["torch_dtype"] = torch.float16
    elif config.dtype in ("q8", "int8"):
        from transformers import BitsAndBytesConfig

        kwargs["quantization_config"] = BitsAndBytesConfig(load_in_8bit=True)
    elif config.dtype in ("q4", "bnb4", "q4f16"):
        from transformers import BitsAndBytesConfig

        compute_dtype = torch.float16 if config.dtype == "q4f16" else torch.bfloat16
        kwargs["quantization_config"] = BitsAndBytesConfig(
            load_in_4bit=True,
            bnb_4bit_compute_dtype=compute_dtype,
            bnb_4bit_use_double_quant=True,
            bnb_4bit_quant_type="nf4",
        )
    return kwargs


class TransformersTokenizer(ABCTokenizer):
    def __init__(self, tokenizer, prompt_builder: Optional[PromptBuilder] = None):
        self._tokenizer = tokenizer
        self.prompt_builder = prompt_builder or PromptBuilder(format_style="chatml")

    @property
    def raw(self):
        return self._tokenizer

    def encode_chat(self, messages: Sequence[Mapping[str, str]]) -> Any:
        if getattr(self._tokenizer, "chat_template", None):
            return self._tokenizer.apply_chat_template(
                list(messages),
                add_generation_prompt=True,
                return_dict=True,
                return_tensors="pt",
            )

        # Tokenizers without a template get generic ChatML framing
        prompt = self.prompt_builder.build([Message(m["role"], m["content"]) for m in messages])
        return self._tokenizer(prompt, return_tensors="pt")

    def encode_text(self, text: str) -> Mapping[str, Any]:
        return self._tokenizer(text, return_tensors="pt")

    def decode(self, raw_output: Any, skip_special_tokens: bool = False) -> str:
        # Sessions generate a single sequence; the first row is the answer
        texts = self._tokenizer.batch_decode(raw_output, skip_special_tokens=skip_special_tokens)
        return texts[0] if texts else ""


class TransformersModel(ABCModel):
    def __init__(self, model, tokenizer):
        self._model = model
        self._tokenizer = tokenizer

    @property
    def raw(self):
        return self._model

    def generate(
        self,
        request: Mapping[str, Any],
        max_new_tokens: int,
        on_fragment: Optional[FragmentCallback] = None,
        interrupt: Any = None,
    ) -> Any:
        import torch
        from transformers import StoppingCriteriaList

        device = self._model.device
        gen_kwargs = {key: value.to(device) if hasattr(value, "to") else value for key, value in request.items()}
        gen_kwargs["max_new_tokens"] = max_new_tokens

        if on_fragment is not None:
            gen_kwargs["streamer"] = make_streamer(self._tokenizer, on_fragment)
        if interrupt is not None:
            gen_kwargs["stopping_criteria"] = StoppingCriteriaList([make_interrupt_criteria(interrupt)])

        with torch.no_grad():
            return self._model.generate(**gen_kwargs)


class TransformersLoader(ABCModelLoader):
    """Downloads a Hub repository (or uses a local directory) and builds the pair."""

    def __init__(self, downloader: Optional[ArtifactDownloader] = None):
        self._downloader = downloader

    @property
    def downloader(self) -> ArtifactDownloader:
        if self._downloader is None:
            self._downloader = ArtifactDownloader()
        return self._downloader

    async def load(self, config: ModelConfig, on_progress: Optional[ProgressCallback] = None) -> ModelResource:
        if config.device in UNSUPPORTED_DEVICES:
            raise LoadError(f"Unsupported execution target '{config.device}' for the transformers backend")
        if config.dtype in UNSUPPORTED_DTYPES:
            raise LoadError(f"Unsupported dtype '{config.dtype}' for the transformers backend")

        if os.path.isdir(config.model_name):
            path = config.model_name
        else:
            path = str(await self.downloader.fetch(config.model_name, on_progress))

        try:
            return await asyncio.to_thread(self._build, path, config)
        except Exception as e:
            raise LoadError(f"Failed to build {config.describe()}: {e}", cause=e) from e

    def _build(self, path: str, config: ModelConfig) -> ModelResource:
        from transformers import AutoModelForCausalLM, AutoTokenizer

        logger.info(f"Building tokenizer and model from {path}")
        tokenizer = AutoTokenizer.from_pretrained(path)
        model = AutoModelForCausalLM.from_pretrained(path, **load_kwargs(config))
        model.eval()

        return ModelResource(
            tokenizer=TransformersTokenizer(tokenizer),
            model=TransformersModel(model, tokenizer),
        )
