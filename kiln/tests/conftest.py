import asyncio
import threading
from typing import Any, List, Optional, Sequence

import pytest

from kiln.core.config import ModelConfig
from kiln.core.metrics import metrics
from kiln.interfaces.engine import ABCModel, ABCModelLoader, ABCTokenizer, ModelResource


class StubTokenizer(ABCTokenizer):
    def __init__(self, structured: bool = True):
        self.structured = structured
        self.encoded: List[Any] = []
        self.decode_calls: List[bool] = []

    def encode_chat(self, messages):
        self.encoded.append(list(messages))
        if not self.structured:
            return "<|user|>hi<|assistant|>"
        return {"input_ids": [[1, 2, 3]]}

    def encode_text(self, text):
        return {"input_ids": [[ord(c) for c in text]]}

    def decode(self, raw_output, skip_special_tokens=False):
        self.decode_calls.append(skip_special_tokens)
        return "<s>" + "".join(raw_output) + "</s>"


class StubModel(ABCModel):
    """
    Emits `fragments` one per step, polling the interrupt flag before each.
    With a `gate`, pauses after every streamed fragment until the gate is set.
    With `fail`, raises it once `fail_after` fragments were emitted.
    """

    def __init__(self, fragments: Sequence[str] = ("Hel", "lo"), gate: Optional[threading.Event] = None,
                 fail: Optional[Exception] = None, fail_after: int = 0):
        self.fragments = list(fragments)
        self.gate = gate
        self.fail = fail
        self.fail_after = fail_after
        self.calls = []

    def generate(self, request, max_new_tokens, on_fragment=None, interrupt=None):
        self.calls.append({"request": request, "max_new_tokens": max_new_tokens, "interrupt": interrupt})
        emitted = []
        for fragment in self.fragments[:max_new_tokens]:
            if interrupt is not None and interrupt.is_set():
                break
            if self.fail is not None and len(emitted) == self.fail_after:
                raise self.fail
            if on_fragment is not None:
                on_fragment(fragment)
            emitted.append(fragment)
            if self.gate is not None and on_fragment is not None:
                self.gate.wait(timeout=5)
        return emitted


class StubLoader(ABCModelLoader):
    """Reports two artifacts per load. Can be held open and made to fail."""

    def __init__(self, artifacts=("A", "B"), failures: int = 0, release: Optional[asyncio.Event] = None,
                 model_factory=None):
        self.artifacts = artifacts
        self.failures = failures
        self.release = release
        self.model_factory = model_factory or StubModel
        self.calls = 0
        self.report = None

    async def load(self, config, on_progress=None):
        self.calls += 1
        self.report = on_progress
        if self.release is not None:
            await self.release.wait()
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("network unreachable")
        for name in self.artifacts:
            if on_progress:
                on_progress({"status": "initiate", "name": config.model_name, "file": name, "progress": 0, "loaded": 0, "total": 10})
                on_progress({"status": "progress", "name": config.model_name, "file": name, "progress": 50.0, "loaded": 5, "total": 10})
                on_progress({"status": "done", "name": config.model_name, "file": name})
        return ModelResource(tokenizer=StubTokenizer(), model=self.model_factory())


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def model_config():
    return ModelConfig(model_name="M", dtype="q4f16", device="cpu")


@pytest.fixture
def config_dict():
    return {"modelName": "M", "dtype": "q4f16", "device": "cpu"}


@pytest.fixture
def emitted():
    return []


@pytest.fixture
def stub_loader():
    return StubLoader()


@pytest.fixture
def make_resource():
    def _make(fragments=("Hel", "lo"), gate=None, fail=None, fail_after=0, structured=True):
        return ModelResource(
            tokenizer=StubTokenizer(structured=structured),
            model=StubModel(fragments, gate=gate, fail=fail, fail_after=fail_after),
        )
    return _make


@pytest.fixture
def loader_factory():
    return StubLoader


@pytest.fixture
def stub_model_cls():
    return StubModel


@pytest.fixture
def gated_loader():
    """Loader whose model pauses after each of five fragments until the gate opens."""
    gate = threading.Event()
    loader = StubLoader(model_factory=lambda: StubModel(("a", "b", "c", "d", "e"), gate=gate))
    return loader, gate
