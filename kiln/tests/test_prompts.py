import pytest

from kiln.core.exceptions import ProtocolError
from kiln.llm.prompts import Message, PromptBuilder, parse_history


def test_parse_history_preserves_order():
    history = parse_history([
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ])
    assert [m.role for m in history] == ["system", "user", "assistant"]
    assert history[1].to_dict() == {"role": "user", "content": "hi"}


def test_parse_history_allows_empty():
    assert parse_history([]) == []


@pytest.mark.parametrize("data", [
    None,
    {"role": "user", "content": "hi"},
    ["hi"],
    [{"role": "robot", "content": "hi"}],
    [{"role": "user", "content": 3}],
])
def test_parse_history_rejects_malformed(data):
    with pytest.raises(ProtocolError):
        parse_history(data)


def test_chatml_prompt():
    prompt = PromptBuilder().build([Message("user", "hi")])
    assert prompt == "<|im_start|>user\nhi<|im_end|>\n<|im_start|>assistant\n"


def test_plain_prompt_without_generation_prompt():
    prompt = PromptBuilder("plain").build(
        [Message("system", "be brief"), Message("user", "hi")], add_generation_prompt=False
    )
    assert prompt == "System: be brief\n\nUser: hi"
