"""Host-side view of a worker conversation, rebuilt from events."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ProgressItem:
    file: str
    progress: float = 0.0
    loaded: int = 0
    total: int = 0


@dataclass
class ChatState:
    status: str = ""
    loading_message: str = ""
    progress_items: List[ProgressItem] = field(default_factory=list)
    messages: List[Dict[str, str]] = field(default_factory=list)
    is_running: bool = False
    tps: Optional[float] = None
    num_tokens: int = 0
    error: Optional[str] = None

    def add_user_message(self, content: str):
        self.messages.append({"role": "user", "content": content})
        self.tps = None
        self.is_running = True

    def reset(self):
        self.messages = []
        self.tps = None
        self.num_tokens = 0
        self.is_running = False

    def apply(self, event: Dict[str, Any]):
        """Fold one worker event into the state, in arrival order."""
        status = event.get("status")

        if status == "loading":
            self.status = "loading"
            self.loading_message = event.get("data", "")

        elif status == "initiate":
            self.progress_items.append(ProgressItem(
                file=event["file"],
                progress=event.get("progress", 0.0),
                loaded=event.get("loaded", 0),
                total=event.get("total", 0),
            ))

        elif status == "progress":
            for item in self.progress_items:
                if item.file == event["file"]:
                    item.progress = event.get("progress", item.progress)
                    item.loaded = event.get("loaded", item.loaded)
                    item.total = event.get("total", item.total)

        elif status == "done":
            self.progress_items = [i for i in self.progress_items if i.file != event["file"]]

        elif status == "ready":
            self.status = "ready"

        elif status == "start":
            self.messages.append({"role": "assistant", "content": ""})

        elif status == "update":
            # Absent on the first fragment of a reply
            self.tps = event.get("tps")
            self.num_tokens = event.get("numTokens", self.num_tokens)
            if self.messages:
                self.messages[-1]["content"] += event.get("output", "")

        elif status == "complete":
            self.is_running = False

        elif status == "error":
            self.error = event.get("error")
            self.is_running = False
