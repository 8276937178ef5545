"""Relay streamed transcripts into in-place edits of a placeholder card."""

from __future__ import annotations

from typing import Callable

from lark_bot.log import get_logger
from lark_bot.messenger.base import MessengerAdapter
from lark_bot.messenger.card import build_card, current_time

logger = get_logger(__name__)


class ResponseRelay:
    """Turns ``on_partial`` callbacks into card edits.

    Every call is forwarded; throttling is the model client's job. Each edit
    carries the full transcript, so edits are idempotent.
    """

    def __init__(
        self,
        messenger: MessengerAdapter,
        placeholder_id: str,
        header: str = "Result",
        clock: Callable[[], str] = current_time,
    ):
        self._messenger = messenger
        self._placeholder_id = placeholder_id
        self._header = header
        self._clock = clock
        self.edits = 0
        self.finished = False
        self.last_text = ""

    async def on_partial(self, text: str, end_note: str, is_final: bool) -> None:
        if self.finished:
            logger.warning("relay_call_after_final", placeholder_id=self._placeholder_id)
            return
        card = build_card(self._header, self._clock(), text, end_note, is_final, True)
        await self._messenger.patch_card(self._placeholder_id, card)
        self.edits += 1
        self.last_text = text
        self.finished = is_final
        logger.debug(
            "relay_card_patched",
            placeholder_id=self._placeholder_id,
            length=len(text),
            final=is_final,
        )
