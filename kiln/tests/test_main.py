import pytest

from kiln.core.config import MODEL_NAMES, Config, ModelConfig
from kiln.main import apply_overrides, parse_args


def test_serve_overrides():
    args = parse_args(["serve", "--host", "0.0.0.0", "--port", "9001", "--log-level", "DEBUG"])
    config = apply_overrides(Config(), args)

    assert args.command == "serve"
    assert config.server.host == "0.0.0.0"
    assert config.server.port == 9001
    assert config.logging.level == "DEBUG"


def test_chat_overrides_model():
    args = parse_args(["chat", "--model", "org/model", "--dtype", "q4", "--device", "cpu"])
    config = apply_overrides(Config(), args)

    assert args.url is None
    assert config.model.to_model_config() == ModelConfig("org/model", "q4", "cpu")


def test_missing_flags_keep_defaults():
    config = apply_overrides(Config(), parse_args(["serve"]))

    assert config.server == Config().server


def test_chat_help_lists_known_models(capsys):
    with pytest.raises(SystemExit):
        parse_args(["chat", "--help"])

    # Help text is wrapped to the terminal width
    out = "".join(capsys.readouterr().out.split())
    assert all(name in out for name in MODEL_NAMES)
    assert Config().model.model_name in MODEL_NAMES
