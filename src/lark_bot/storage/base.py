"""Abstract key-value stores for conversations, token usage and seen events.

Implementations catch their own backend errors: a failed read behaves as
"not found" and a failed write is logged and dropped, so a flaky store never
crashes an invocation. Usage ledgers raise StorageReadError from ``_load``
instead, and the shared ``get``/``add`` decide what a failed read means.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from lark_bot.errors import StorageReadError
from lark_bot.log import get_logger
from lark_bot.storage.models import ConversationRecord, TokenUsage

logger = get_logger(__name__)


class ConversationStore(ABC):
    """Per-chat history keyed by chat id, expiring after a TTL."""

    @abstractmethod
    async def load(self, chat_id: str) -> ConversationRecord | None:
        ...

    @abstractmethod
    async def save(
        self,
        chat_id: str,
        messages: list[dict[str, Any]],
        system_prompt: str | None,
    ) -> None:
        """Replace the record wholesale and restart its expiry window."""
        ...


class UsageLedger(ABC):
    """Cumulative token counts per application identity.

    ``add`` is read-then-write without compare-and-swap; concurrent
    invocations for the same app id can lose updates. A failed read skips
    the write so stored counters never go backwards.
    """

    @abstractmethod
    async def _load(self, app_id: str) -> TokenUsage | None:
        """Stored counters or None when absent. Raises StorageReadError."""
        ...

    @abstractmethod
    async def put(self, app_id: str, usage: TokenUsage) -> None:
        ...

    async def get(self, app_id: str) -> TokenUsage:
        """Current counters, zeros when the app id has no row or the read fails."""
        try:
            return await self._load(app_id) or TokenUsage()
        except StorageReadError as e:
            logger.error("usage_load_failed", app_id=app_id, error=str(e))
            return TokenUsage()

    async def add(self, app_id: str, input_delta: int, output_delta: int) -> TokenUsage | None:
        """Add deltas to the stored counters; None when the current row is unreadable."""
        try:
            current = await self._load(app_id) or TokenUsage()
        except StorageReadError as e:
            logger.error("usage_add_skipped", app_id=app_id, error=str(e))
            return None
        updated = current + TokenUsage(input_tokens=input_delta, output_tokens=output_delta)
        await self.put(app_id, updated)
        return updated


class EventLedger(ABC):
    """Best-effort duplicate-delivery guard keyed by webhook event id."""

    @abstractmethod
    async def exists(self, event_id: str) -> bool:
        ...

    @abstractmethod
    async def record(self, event_id: str, header: dict[str, Any]) -> None:
        ...
