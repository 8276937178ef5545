"""DynamoDB-backed stores (boto3 low-level client, calls run in a worker thread).

Row layouts:
    messages table  {chat_id: S, messages: S(json), system_prompt: S(json), expire_at: N}
    stats table     {app_id: S, tokens: S(json)}  or  {app_id, input_tokens: N, output_tokens: N}
    events table    {event_id: S, header_data: S(json), expire_at: N}
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Callable

from botocore.exceptions import BotoCoreError, ClientError

from lark_bot.errors import StorageReadError
from lark_bot.log import get_logger
from lark_bot.storage.base import ConversationStore, EventLedger, UsageLedger
from lark_bot.storage.models import ConversationRecord, TokenUsage

logger = get_logger(__name__)

_STORE_ERRORS = (ClientError, BotoCoreError)


class _DynamoTable:
    def __init__(self, client: Any, table_name: str):
        self._client = client
        self.table_name = table_name

    async def fetch_item(self, key: dict[str, Any]) -> dict[str, Any] | None:
        """Return the item or None when absent; raise StorageReadError on error."""
        try:
            result = await asyncio.to_thread(
                self._client.get_item, TableName=self.table_name, Key=key
            )
        except _STORE_ERRORS as e:
            raise StorageReadError(f"{self.table_name}: {e}") from e
        return result.get("Item")

    async def get_item(self, key: dict[str, Any]) -> dict[str, Any] | None:
        """Return the item, or None when absent or on error."""
        try:
            return await self.fetch_item(key)
        except StorageReadError as e:
            logger.error("dynamodb_get_failed", table=self.table_name, error=str(e))
            return None

    async def put_item(self, item: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._client.put_item, TableName=self.table_name, Item=item)
        except _STORE_ERRORS as e:
            logger.error("dynamodb_put_failed", table=self.table_name, error=str(e))


def _json_attr(item: dict[str, Any], name: str) -> Any:
    attr = item.get(name)
    if not attr or "S" not in attr:
        return None
    try:
        return json.loads(attr["S"])
    except json.JSONDecodeError:
        logger.warning("dynamodb_bad_json", attribute=name)
        return None


class DynamoConversationStore(ConversationStore):
    def __init__(
        self,
        client: Any,
        table_name: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self._table = _DynamoTable(client, table_name)
        self._ttl = ttl_seconds
        self._clock = clock

    async def load(self, chat_id: str) -> ConversationRecord | None:
        item = await self._table.get_item({"chat_id": {"S": chat_id}})
        if item is None:
            return None
        expire_at = item.get("expire_at", {}).get("N")
        # TTL deletion lags; treat an expired row as gone.
        if expire_at and int(expire_at) <= self._clock():
            return None
        return ConversationRecord(
            chat_id=chat_id,
            messages=_json_attr(item, "messages") or [],
            system_prompt=_json_attr(item, "system_prompt"),
            expire_at=int(expire_at) if expire_at else None,
        )

    async def save(
        self,
        chat_id: str,
        messages: list[dict[str, Any]],
        system_prompt: str | None,
    ) -> None:
        expire_at = int(self._clock()) + self._ttl
        await self._table.put_item(
            {
                "chat_id": {"S": chat_id},
                "messages": {"S": json.dumps(messages, ensure_ascii=False)},
                "system_prompt": {"S": json.dumps(system_prompt, ensure_ascii=False)},
                "expire_at": {"N": str(expire_at)},
            }
        )
        logger.debug("conversation_saved", chat_id=chat_id, message_count=len(messages))


class DynamoUsageLedger(UsageLedger):
    def __init__(self, client: Any, table_name: str):
        self._table = _DynamoTable(client, table_name)

    async def _load(self, app_id: str) -> TokenUsage | None:
        item = await self._table.fetch_item({"app_id": {"S": app_id}})
        if item is None:
            return None

        tokens = _json_attr(item, "tokens")
        try:
            if isinstance(tokens, dict):
                return TokenUsage(
                    input_tokens=int(tokens.get("input_tokens", 0)),
                    output_tokens=int(tokens.get("output_tokens", 0)),
                )
            if "tokens" in item:
                raise ValueError("tokens attribute is not a JSON object")
            return TokenUsage(
                input_tokens=int(item.get("input_tokens", {}).get("N", 0)),
                output_tokens=int(item.get("output_tokens", {}).get("N", 0)),
            )
        except (TypeError, ValueError) as e:
            raise StorageReadError(f"corrupt usage row {app_id}: {e}") from e

    async def put(self, app_id: str, usage: TokenUsage) -> None:
        await self._table.put_item(
            {"app_id": {"S": app_id}, "tokens": {"S": json.dumps(usage.to_dict())}}
        )


class DynamoEventLedger(EventLedger):
    def __init__(
        self,
        client: Any,
        table_name: str,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self._table = _DynamoTable(client, table_name)
        self._ttl = ttl_seconds
        self._clock = clock

    async def exists(self, event_id: str) -> bool:
        item = await self._table.get_item({"event_id": {"S": event_id}})
        return item is not None and "header_data" in item

    async def record(self, event_id: str, header: dict[str, Any]) -> None:
        await self._table.put_item(
            {
                "event_id": {"S": event_id},
                "header_data": {"S": json.dumps(header, ensure_ascii=False)},
                "expire_at": {"N": str(int(self._clock()) + self._ttl)},
            }
        )
