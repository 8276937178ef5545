"""Console adapter rendering cards to a text stream, for the local CLI."""

from __future__ import annotations

import sys
from itertools import count
from pathlib import Path
from typing import Any, TextIO

from lark_bot.messenger.base import MessengerAdapter
from lark_bot.messenger.card import THINKING_NOTE, parse_card


class ConsoleAdapter(MessengerAdapter):
    """Prints replies; the final card edit prints its content and footer."""

    def __init__(self, out: TextIO | None = None, image_dir: str | Path = "."):
        self._out = out or sys.stdout
        self._image_dir = Path(image_dir)
        self._ids = count(1)

    @property
    def platform_name(self) -> str:
        return "console"

    async def send_text(self, chat_id: str, text: str) -> None:
        print(f"[{chat_id}] {text}", file=self._out)

    async def reply_card(self, message_id: str, card: str) -> dict[str, Any]:
        placeholder_id = f"console-{next(self._ids)}"
        return {"code": 0, "msg": "success", "data": {"message_id": placeholder_id}}

    async def patch_card(self, message_id: str, card: str) -> None:
        content, footer = parse_card(card)
        if footer != THINKING_NOTE:
            print(f"{content}\n  -- {footer}", file=self._out)
        else:
            print(".", end="", file=self._out, flush=True)

    async def get_image(self, message_id: str, image_key: str) -> bytes:
        """Image keys are file names relative to ``image_dir``."""
        return (self._image_dir / image_key).read_bytes()
