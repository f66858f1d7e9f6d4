"""
LLM Module - kiln

Generation building blocks shared by the orchestrator and the backends.

Main Components:
- ModelResourcePool: Lazily loaded, memoized tokenizer/model pairs per ModelConfig
- InterruptFlag: Cooperative stop signal polled by the decoding loop
- StreamAggregator: Turns text fragments into throughput-annotated updates
- FragmentChannel: Ordered hand-off of fragments from the decoding thread to the loop
- PromptBuilder: ChatML framing for tokenizers without a chat template

Example Usage:
    from kiln.llm import ModelResourcePool, StreamAggregator
    from kiln.engines.transformers_engine import TransformersLoader
    from kiln.core.config import ModelConfig

    pool = ModelResourcePool(TransformersLoader())
    resource = await pool.acquire(ModelConfig("Qwen/Qwen2.5-0.5B-Instruct"))

    async for update in StreamAggregator().wrap(fragments):
        print(update.text, end='', flush=True)
"""

from kiln.llm.interrupt import InterruptFlag
from kiln.llm.pool import ModelResourcePool
from kiln.llm.prompts import Message, PromptBuilder, parse_history
from kiln.llm.stream import FragmentChannel, StreamAggregator, UpdateEvent

__all__ = [
    "FragmentChannel",
    "InterruptFlag",
    "Message",
    "ModelResourcePool",
    "PromptBuilder",
    "StreamAggregator",
    "UpdateEvent",
    "parse_history",
]
