"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from lark_bot.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    chat_id         TEXT    PRIMARY KEY,
    messages        TEXT    NOT NULL DEFAULT '[]',
    system_prompt   TEXT    NOT NULL DEFAULT 'null',
    expire_at       INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_stats (
    app_id          TEXT    PRIMARY KEY,
    tokens          TEXT    NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
    event_id        TEXT    PRIMARY KEY,
    header_data     TEXT    NOT NULL,
    expire_at       INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_conversations_expire ON conversations(expire_at);
CREATE INDEX IF NOT EXISTS idx_events_expire ON events(expire_at);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def purge_expired(self, now: int) -> int:
        """Delete rows whose TTL has passed. Returns number of deleted rows."""
        total = 0
        for table in ("conversations", "events"):
            cursor = await self.conn.execute(f"DELETE FROM {table} WHERE expire_at <= ?", (now,))
            total += cursor.rowcount
        await self.conn.commit()
        if total:
            logger.debug("database_purged", rows=total)
        return total

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
