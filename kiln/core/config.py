import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

import yaml

from kiln.core.exceptions import ConfigurationError, ProtocolError

# Checkpoints known to load with the transformers backend; other ids are accepted
MODEL_NAMES = (
    "Qwen/Qwen2.5-0.5B-Instruct",
    "Qwen/Qwen2.5-1.5B-Instruct",
    "deepseek-ai/DeepSeek-R1-Distill-Qwen-1.5B",
    "meta-llama/Llama-3.2-3B-Instruct",
    "microsoft/Phi-3.5-mini-instruct",
    "microsoft/Phi-3-mini-4k-instruct",
)

DTYPES = (
    "auto",
    "fp32",
    "fp16",
    "q8",
    "int8",
    "uint8",
    "q4",
    "bnb4",
    "q4f16",  # fp16 compute with int4 block weight quantization
)

DEVICES = (
    "auto",
    "gpu",
    "cpu",
    "wasm",
    "webgpu",
    "cuda",
    "dml",
    "webnn",
    "webnn-npu",
    "webnn-gpu",
    "webnn-cpu",
)

@dataclass(frozen=True)
class ModelConfig:
    """Identifies one model resource. Equal fields mean the same cached resource."""
    model_name: str
    dtype: str = "auto"
    device: str = "auto"

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ModelConfig":
        """
        Build from a host command payload.

        Accepts the wire names (modelName, dtype, device), their long forms
        (precisionMode, executionTarget) and the snake_case spellings.
        """
        if not isinstance(data, Mapping):
            raise ProtocolError("config must be an object")

        model_name = data.get("modelName", data.get("model_name"))
        dtype = data.get("dtype", data.get("precisionMode", data.get("precision_mode", "auto")))
        device = data.get("device", data.get("executionTarget", data.get("execution_target", "auto")))

        if not model_name or not isinstance(model_name, str):
            raise ProtocolError("config.modelName is required")
        if dtype not in DTYPES:
            raise ProtocolError(f"Unknown dtype '{dtype}'. Expected one of: {', '.join(DTYPES)}")
        if device not in DEVICES:
            raise ProtocolError(f"Unknown device '{device}'. Expected one of: {', '.join(DEVICES)}")

        return cls(model_name=model_name, dtype=dtype, device=device)

    def to_dict(self) -> Dict[str, str]:
        return {"modelName": self.model_name, "dtype": self.dtype, "device": self.device}

    def describe(self) -> str:
        return f"{self.model_name} ({self.dtype}) {self.device}"

@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"

@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    path: str = "/ws"

@dataclass
class GenerationConfig:
    max_new_tokens: int = 512
    warmup_text: str = "a"
    warmup_max_new_tokens: int = 1
    strict_encoding: bool = True  # False: a non-dict chat template result is a silent no-op

@dataclass
class HubConfig:
    cache_dir: str = field(default_factory=lambda: os.path.join(os.path.expanduser("~"), ".cache", "kiln"))
    revision: str = "main"
    endpoint: str = "https://huggingface.co"
    chunk_size: int = 1 << 20
    allow_patterns: list[str] = field(default_factory=lambda: [
        "*.safetensors",
        "*.json",
        "tokenizer.model",  # SentencePiece
    ])

@dataclass
class ModelDefaults:
    model_name: str = MODEL_NAMES[0]
    dtype: str = "auto"
    device: str = "auto"

    def to_model_config(self) -> ModelConfig:
        return ModelConfig.from_dict({
            "modelName": self.model_name, "dtype": self.dtype, "device": self.device,
        })

@dataclass
class Config:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    hub: HubConfig = field(default_factory=HubConfig)
    model: ModelDefaults = field(default_factory=ModelDefaults)

    @classmethod
    def load(cls, path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> "Config":
        """
        Build the configuration from defaults, an optional YAML file and
        KILN_* environment variables, in that order of precedence.
        """
        config = cls()
        if path:
            config = config._merge_file(path)
        return config._merge_env(os.environ if env is None else env)

    def _merge_file(self, path: str) -> "Config":
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")

        sections = {}
        for f in fields(self):
            section = getattr(self, f.name)
            values = raw.get(f.name) or {}
            if not isinstance(values, dict):
                raise ConfigurationError(f"Section '{f.name}' must be a mapping")
            known = {sf.name for sf in fields(section)}
            unknown = set(values) - known
            if unknown:
                raise ConfigurationError(f"Unknown keys in '{f.name}': {', '.join(sorted(unknown))}")
            sections[f.name] = replace(section, **values)
        return replace(self, **sections)

    def _merge_env(self, env: Mapping[str, str]) -> "Config":
        overrides = {
            "KILN_LOG_LEVEL": (self.logging, "level", str),
            "KILN_LOG_FORMAT": (self.logging, "format", str),
            "KILN_HOST": (self.server, "host", str),
            "KILN_PORT": (self.server, "port", int),
            "KILN_CACHE_DIR": (self.hub, "cache_dir", str),
            "KILN_MAX_NEW_TOKENS": (self.generation, "max_new_tokens", int),
        }
        for name, (section, attr, cast) in overrides.items():
            if name not in env:
                continue
            try:
                setattr(section, attr, cast(env[name]))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {name}: {env[name]!r}") from e
        return self
