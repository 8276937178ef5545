"""Shared fixtures: in-memory stores, a recording messenger and chat config."""

from __future__ import annotations

import json
from typing import Any

import pytest

from lark_bot.config import ChatConfig, MockConfig
from lark_bot.messenger.base import MessengerAdapter
from lark_bot.messenger.card import parse_card
from lark_bot.storage.base import ConversationStore, EventLedger, UsageLedger
from lark_bot.storage.models import ConversationRecord, TokenUsage


class MemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self.records: dict[str, ConversationRecord] = {}
        self.saves = 0

    async def load(self, chat_id: str) -> ConversationRecord | None:
        return self.records.get(chat_id)

    async def save(self, chat_id: str, messages: list[dict[str, Any]], system_prompt: str | None) -> None:
        self.saves += 1
        self.records[chat_id] = ConversationRecord(
            chat_id=chat_id,
            messages=json.loads(json.dumps(messages)),
            system_prompt=system_prompt,
        )


class MemoryUsageLedger(UsageLedger):
    def __init__(self) -> None:
        self.rows: dict[str, TokenUsage] = {}

    async def _load(self, app_id: str) -> TokenUsage | None:
        return self.rows.get(app_id)

    async def put(self, app_id: str, usage: TokenUsage) -> None:
        self.rows[app_id] = usage


class MemoryEventLedger(EventLedger):
    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}

    async def exists(self, event_id: str) -> bool:
        return event_id in self.events

    async def record(self, event_id: str, header: dict[str, Any]) -> None:
        self.events[event_id] = header


class RecordingMessenger(MessengerAdapter):
    """Keeps every outbound call for assertions."""

    def __init__(self, images: dict[str, bytes] | None = None) -> None:
        self.texts: list[tuple[str, str]] = []
        self.replies: list[tuple[str, str]] = []
        self.patches: list[tuple[str, str]] = []
        self.images = images or {}
        self.closed = False

    @property
    def platform_name(self) -> str:
        return "recording"

    async def send_text(self, chat_id: str, text: str) -> None:
        self.texts.append((chat_id, text))

    async def reply_card(self, message_id: str, card: str) -> dict[str, Any]:
        self.replies.append((message_id, card))
        return {"code": 0, "msg": "success", "data": {"message_id": f"placeholder-{len(self.replies)}"}}

    async def patch_card(self, message_id: str, card: str) -> None:
        self.patches.append((message_id, card))

    async def get_image(self, message_id: str, image_key: str) -> bytes:
        return self.images[image_key]

    async def close(self) -> None:
        self.closed = True

    @property
    def patched(self) -> list[tuple[str, str]]:
        """(content, footer) of every card edit, in order."""
        return [parse_card(card) for _, card in self.patches]


@pytest.fixture
def store():
    return MemoryConversationStore()


@pytest.fixture
def usage():
    return MemoryUsageLedger()


@pytest.fixture
def events():
    return MemoryEventLedger()


@pytest.fixture
def messenger():
    return RecordingMessenger()


@pytest.fixture
def chat_config():
    return ChatConfig(max_seq=2, max_chat_quota=6, system_prompt="be brief")


@pytest.fixture
def mock_config():
    return MockConfig(delay_ms=0, response_text="a b c d")
