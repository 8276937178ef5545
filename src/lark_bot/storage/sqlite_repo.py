"""SQLite-backed stores for local runs, emulating TTL by expiry timestamps."""

from __future__ import annotations

import json
import sqlite3
import time
from typing import Any, Callable

from lark_bot.errors import StorageReadError
from lark_bot.log import get_logger
from lark_bot.storage.base import ConversationStore, EventLedger, UsageLedger
from lark_bot.storage.database import Database
from lark_bot.storage.models import ConversationRecord, TokenUsage

logger = get_logger(__name__)


class SqliteConversationStore(ConversationStore):
    def __init__(self, db: Database, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self._db = db
        self._ttl = ttl_seconds
        self._clock = clock

    async def load(self, chat_id: str) -> ConversationRecord | None:
        try:
            cursor = await self._db.conn.execute(
                "SELECT * FROM conversations WHERE chat_id = ? AND expire_at > ?",
                (chat_id, int(self._clock())),
            )
            row = await cursor.fetchone()
        except sqlite3.Error as e:
            logger.error("conversation_load_failed", chat_id=chat_id, error=str(e))
            return None
        if row is None:
            return None
        try:
            messages = json.loads(row["messages"]) or []
            system_prompt = json.loads(row["system_prompt"])
        except (TypeError, ValueError) as e:
            logger.error("conversation_row_corrupt", chat_id=chat_id, error=str(e))
            return None
        return ConversationRecord(
            chat_id=row["chat_id"],
            messages=messages,
            system_prompt=system_prompt,
            expire_at=row["expire_at"],
        )

    async def save(
        self,
        chat_id: str,
        messages: list[dict[str, Any]],
        system_prompt: str | None,
    ) -> None:
        expire_at = int(self._clock()) + self._ttl
        try:
            await self._db.conn.execute(
                """INSERT INTO conversations (chat_id, messages, system_prompt, expire_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(chat_id) DO UPDATE SET
                       messages = excluded.messages,
                       system_prompt = excluded.system_prompt,
                       expire_at = excluded.expire_at""",
                (chat_id, json.dumps(messages), json.dumps(system_prompt), expire_at),
            )
            await self._db.conn.commit()
        except sqlite3.Error as e:
            logger.error("conversation_save_failed", chat_id=chat_id, error=str(e))


class SqliteUsageLedger(UsageLedger):
    def __init__(self, db: Database):
        self._db = db

    async def _load(self, app_id: str) -> TokenUsage | None:
        try:
            cursor = await self._db.conn.execute(
                "SELECT tokens FROM usage_stats WHERE app_id = ?", (app_id,)
            )
            row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageReadError(str(e)) from e
        if row is None:
            return None
        try:
            data = json.loads(row["tokens"])
            return TokenUsage(
                input_tokens=int(data.get("input_tokens", 0)),
                output_tokens=int(data.get("output_tokens", 0)),
            )
        except (AttributeError, TypeError, ValueError) as e:
            raise StorageReadError(f"corrupt usage row: {e}") from e

    async def put(self, app_id: str, usage: TokenUsage) -> None:
        try:
            await self._db.conn.execute(
                """INSERT INTO usage_stats (app_id, tokens) VALUES (?, ?)
                   ON CONFLICT(app_id) DO UPDATE SET tokens = excluded.tokens""",
                (app_id, json.dumps(usage.to_dict())),
            )
            await self._db.conn.commit()
        except sqlite3.Error as e:
            logger.error("usage_save_failed", app_id=app_id, error=str(e))


class SqliteEventLedger(EventLedger):
    def __init__(self, db: Database, ttl_seconds: int, clock: Callable[[], float] = time.time):
        self._db = db
        self._ttl = ttl_seconds
        self._clock = clock

    async def exists(self, event_id: str) -> bool:
        try:
            cursor = await self._db.conn.execute(
                "SELECT 1 FROM events WHERE event_id = ? AND expire_at > ?",
                (event_id, int(self._clock())),
            )
            return await cursor.fetchone() is not None
        except sqlite3.Error as e:
            logger.error("event_load_failed", event_id=event_id, error=str(e))
            return False

    async def record(self, event_id: str, header: dict[str, Any]) -> None:
        try:
            await self._db.conn.execute(
                """INSERT OR REPLACE INTO events (event_id, header_data, expire_at)
                   VALUES (?, ?, ?)""",
                (event_id, json.dumps(header), int(self._clock()) + self._ttl),
            )
            await self._db.conn.commit()
        except sqlite3.Error as e:
            logger.error("event_save_failed", event_id=event_id, error=str(e))
