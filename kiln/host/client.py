"""
Terminal chat client for a kiln worker.

Loads a model, then reads prompts from stdin and streams the reply. Ctrl-C
during a reply sends `interrupt`; `/reset` clears the conversation.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional, Set, TextIO

import aiohttp

from kiln.core.config import ModelConfig
from kiln.host.state import ChatState

logger = logging.getLogger(__name__)


class ChatClient:
    def __init__(self, url: str, model: ModelConfig, out: TextIO = sys.stdout):
        self.url = url
        self.model = model
        self.out = out
        self.state = ChatState()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def run(self):
        loop = asyncio.get_running_loop()
        async with aiohttp.ClientSession() as session:
            async with session.ws_connect(self.url) as ws:
                self._ws = ws
                loop.add_signal_handler(signal.SIGINT, self._on_sigint)
                try:
                    await ws.send_json({"type": "load", "config": self.model.to_dict()})
                    if await self.wait_for({"ready", "error"}) == "error":
                        return

                    while True:
                        self.out.write("\n> ")
                        self.out.flush()
                        line = await loop.run_in_executor(None, sys.stdin.readline)
                        if not line:
                            break
                        if not await self.submit(line.strip()):
                            break
                finally:
                    loop.remove_signal_handler(signal.SIGINT)

    async def submit(self, text: str) -> bool:
        """Handle one line of user input. Returns False when the user quits."""
        if text in ("/quit", "/exit"):
            return False
        if text == "/reset":
            self.state.reset()
            await self._ws.send_json({"type": "reset"})
            return True
        if not text:
            return True

        self.state.add_user_message(text)
        await self._ws.send_json({
            "type": "generate",
            "data": self.state.messages,
            "config": self.model.to_dict(),
        })
        await self.wait_for({"complete", "error"})
        return True

    async def wait_for(self, statuses: Set[str]) -> Optional[str]:
        """Apply and render events until one of `statuses` arrives."""
        async for msg in self._ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            event = msg.json()
            self.state.apply(event)
            self.render(event)
            if event.get("status") in statuses:
                return event["status"]
        return None

    def render(self, event: dict):
        status = event.get("status")
        if status == "loading":
            self.out.write(f"{event.get('data', '')}\n")
        elif status == "progress":
            self.out.write(f"\r{event['file']}: {event.get('progress', 0):5.1f}%")
        elif status == "done":
            self.out.write("\n")
        elif status == "update":
            self.out.write(event.get("output", ""))
        elif status == "complete":
            rate = f", {self.state.tps:.1f} tok/s" if self.state.tps is not None else ""
            self.out.write(f"\n[{self.state.num_tokens} tokens{rate}]\n")
        elif status == "error":
            self.out.write(f"\nerror: {event.get('error')}\n")
        self.out.flush()

    def _on_sigint(self):
        if self.state.is_running and self._ws is not None:
            # The worker still answers with `complete` for the partial reply
            asyncio.ensure_future(self._ws.send_json({"type": "interrupt"}))
        else:
            raise KeyboardInterrupt
