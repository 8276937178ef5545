"""Tests for the SQLite and DynamoDB store implementations."""

import json

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError

from lark_bot.storage.database import Database
from lark_bot.storage.dynamo import DynamoConversationStore, DynamoEventLedger, DynamoUsageLedger
from lark_bot.storage.models import TokenUsage
from lark_bot.storage.sqlite_repo import (
    SqliteConversationStore,
    SqliteEventLedger,
    SqliteUsageLedger,
)


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.initialize()
    yield database
    await database.close()


@pytest.mark.asyncio
async def test_sqlite_conversation_roundtrip_and_expiry(db):
    clock = Clock()
    conversations = SqliteConversationStore(db, ttl_seconds=60, clock=clock)
    messages = [{"role": "user", "content": "hi"}]

    assert await conversations.load("oc_1") is None
    await conversations.save("oc_1", messages, "pirate")

    record = await conversations.load("oc_1")
    assert record.messages == messages
    assert record.system_prompt == "pirate"
    assert record.expire_at == 1_000_060

    clock.now += 61
    assert await conversations.load("oc_1") is None
    assert await db.purge_expired(int(clock.now)) == 1


@pytest.mark.asyncio
async def test_sqlite_save_replaces_record(db):
    conversations = SqliteConversationStore(db, ttl_seconds=60)

    await conversations.save("oc_1", [{"role": "user", "content": "a"}], "p")
    await conversations.save("oc_1", [], None)

    record = await conversations.load("oc_1")
    assert record.messages == []
    assert record.system_prompt is None


@pytest.mark.asyncio
async def test_sqlite_usage_accumulates(db):
    ledger = SqliteUsageLedger(db)

    assert await ledger.get("cli_app") == TokenUsage()
    await ledger.add("cli_app", 10, 20)
    totals = await ledger.add("cli_app", 5, 5)

    assert totals == TokenUsage(input_tokens=15, output_tokens=25)
    assert await ledger.get("cli_app") == totals


@pytest.mark.asyncio
async def test_sqlite_event_ledger(db):
    clock = Clock()
    ledger = SqliteEventLedger(db, ttl_seconds=86400, clock=clock)

    assert not await ledger.exists("ev_1")
    await ledger.record("ev_1", {"event_id": "ev_1"})
    assert await ledger.exists("ev_1")

    clock.now += 86401
    assert not await ledger.exists("ev_1")


@pytest.mark.asyncio
async def test_sqlite_read_failure_is_not_found():
    database = Database(":memory:")
    await database.initialize()
    conversations = SqliteConversationStore(database, ttl_seconds=60)
    await database.conn.execute("DROP TABLE conversations")

    assert await conversations.load("oc_1") is None
    await conversations.save("oc_1", [], None)
    await database.close()


@pytest.mark.asyncio
async def test_sqlite_corrupt_rows_read_as_not_found(db):
    conversations = SqliteConversationStore(db, ttl_seconds=60)
    ledger = SqliteUsageLedger(db)
    await db.conn.execute(
        "INSERT INTO conversations (chat_id, messages, system_prompt, expire_at) VALUES (?, ?, ?, ?)",
        ("oc_1", "{not json", "null", 4_000_000_000),
    )
    await db.conn.execute(
        "INSERT INTO usage_stats (app_id, tokens) VALUES (?, ?)", ("cli_app", "{not json")
    )

    assert await conversations.load("oc_1") is None
    assert await ledger.get("cli_app") == TokenUsage()


@pytest.mark.asyncio
async def test_sqlite_unreadable_usage_row_is_not_overwritten(db):
    ledger = SqliteUsageLedger(db)
    await db.conn.execute(
        "INSERT INTO usage_stats (app_id, tokens) VALUES (?, ?)", ("cli_app", "{not json")
    )

    assert await ledger.add("cli_app", 5, 5) is None

    cursor = await db.conn.execute("SELECT tokens FROM usage_stats WHERE app_id = ?", ("cli_app",))
    row = await cursor.fetchone()
    assert row["tokens"] == "{not json"

class FakeDynamo:
    """Minimal low-level DynamoDB client keyed by table and first key attribute."""

    def __init__(self, fail=False, fail_reads=False):
        self.tables = {}
        self.fail = fail
        self.fail_reads = fail_reads

    def _error(self, op):
        return ClientError({"Error": {"Code": "ProvisionedThroughputExceededException"}}, op)

    def get_item(self, TableName, Key):
        if self.fail or self.fail_reads:
            raise self._error("GetItem")
        (name, value), = Key.items()
        item = self.tables.get(TableName, {}).get(value["S"])
        return {"Item": item} if item else {}

    def put_item(self, TableName, Item):
        if self.fail:
            raise self._error("PutItem")
        key = next(iter(Item.values()))["S"]
        self.tables.setdefault(TableName, {})[key] = Item
        return {}


@pytest.mark.asyncio
async def test_dynamo_conversation_roundtrip_and_expiry():
    client = FakeDynamo()
    clock = Clock()
    conversations = DynamoConversationStore(client, "lark_messages", ttl_seconds=60, clock=clock)

    await conversations.save("oc_1", [{"role": "user", "content": "hi"}], None)

    item = client.tables["lark_messages"]["oc_1"]
    assert item["expire_at"] == {"N": "1000060"}
    assert json.loads(item["system_prompt"]["S"]) is None
    record = await conversations.load("oc_1")
    assert record.messages == [{"role": "user", "content": "hi"}]

    clock.now += 60
    assert await conversations.load("oc_1") is None


@pytest.mark.asyncio
async def test_dynamo_usage_reads_numeric_rows_and_writes_json():
    client = FakeDynamo()
    client.tables["lark_stats"] = {
        "cli_app": {"app_id": {"S": "cli_app"}, "input_tokens": {"N": "7"}, "output_tokens": {"N": "9"}}
    }
    ledger = DynamoUsageLedger(client, "lark_stats")

    totals = await ledger.add("cli_app", 3, 1)

    assert totals == TokenUsage(input_tokens=10, output_tokens=10)
    stored = client.tables["lark_stats"]["cli_app"]["tokens"]["S"]
    assert json.loads(stored) == {"input_tokens": 10, "output_tokens": 10}


@pytest.mark.asyncio
async def test_dynamo_event_ledger():
    ledger = DynamoEventLedger(FakeDynamo(), "lark_events", ttl_seconds=86400)

    assert not await ledger.exists("ev_1")
    await ledger.record("ev_1", {"event_id": "ev_1"})
    assert await ledger.exists("ev_1")


@pytest.mark.asyncio
async def test_dynamo_errors_degrade_to_not_found():
    client = FakeDynamo(fail=True)
    conversations = DynamoConversationStore(client, "lark_messages", ttl_seconds=60)
    ledger = DynamoUsageLedger(client, "lark_stats")

    assert await conversations.load("oc_1") is None
    await conversations.save("oc_1", [], None)
    assert await ledger.get("cli_app") == TokenUsage()


@pytest.mark.asyncio
async def test_dynamo_failed_usage_read_skips_the_write():
    client = FakeDynamo()
    ledger = DynamoUsageLedger(client, "lark_stats")
    await ledger.put("cli_app", TokenUsage(input_tokens=1000, output_tokens=2000))

    client.fail_reads = True
    assert await ledger.get("cli_app") == TokenUsage()
    assert await ledger.add("cli_app", 5, 5) is None

    client.fail_reads = False
    assert await ledger.get("cli_app") == TokenUsage(input_tokens=1000, output_tokens=2000)
