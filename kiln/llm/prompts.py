from typing import Any, Dict, List
from dataclasses import dataclass

from kiln.core.exceptions import ProtocolError

ROLES = ("system", "user", "assistant")

@dataclass
class Message:
    """Represents a single message in a conversation."""
    role: str  # "system", "user", or "assistant"
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

def parse_history(data: Any) -> List[Message]:
    """
    Validate the conversation history sent by the host.

    Args:
        data: List of {"role": ..., "content": ...} objects

    Returns:
        The history as Message objects, order preserved
    """
    if not isinstance(data, list):
        raise ProtocolError("data must be a list of messages")

    history = []
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ProtocolError(f"message {i} must be an object")
        role = item.get("role")
        content = item.get("content")
        if role not in ROLES:
            raise ProtocolError(f"message {i} has invalid role {role!r}")
        if not isinstance(content, str):
            raise ProtocolError(f"message {i} content must be a string")
        history.append(Message(role=role, content=content))
    return history

class PromptBuilder:
    """
    Fallback chat framing for tokenizers that ship without a chat template.
    Supports ChatML and plain styles.
    """

    def __init__(self, format_style: str = "chatml"):
        self.format_style = format_style

    def build(self, messages: List[Message], add_generation_prompt: bool = True) -> str:
        if self.format_style == "chatml":
            return self._format_chatml(messages, add_generation_prompt)
        return self._format_plain(messages, add_generation_prompt)

    def _format_chatml(self, messages: List[Message], add_generation_prompt: bool) -> str:
        """Format messages in ChatML style (used by many modern models)."""
        formatted = [f"<|im_start|>{msg.role}\n{msg.content}<|im_end|>" for msg in messages]
        if add_generation_prompt:
            formatted.append("<|im_start|>assistant\n")
        return "\n".join(formatted)

    def _format_plain(self, messages: List[Message], add_generation_prompt: bool) -> str:
        formatted = [f"{msg.role.capitalize()}: {msg.content}" for msg in messages]
        if add_generation_prompt:
            formatted.append("Assistant:")
        return "\n\n".join(formatted)
