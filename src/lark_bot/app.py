"""Application orchestrator - wires stores, model client, messenger and handlers."""

from __future__ import annotations

import time
from typing import Any

from lark_bot.ai.conversation import ConversationReducer
from lark_bot.ai.factory import ClientCache, ModelClientFactory
from lark_bot.config import AppConfig
from lark_bot.log import get_logger
from lark_bot.messenger.base import MessengerAdapter
from lark_bot.storage.base import ConversationStore, EventLedger, UsageLedger
from lark_bot.storage.database import Database
from lark_bot.webhook.callback import CallbackHandler
from lark_bot.webhook.chat import ChatHandler
from lark_bot.webhook.fanout import InProcessPublisher, Publisher, SnsPublisher

logger = get_logger(__name__)


class LarkBotApp:
    """Top-level application orchestrator.

    One instance serves both the webhook path (``callback``) and the chat
    path (``chat``) for the lifetime of one event loop.
    """

    def __init__(
        self,
        config: AppConfig,
        messenger: MessengerAdapter | None = None,
        publisher: Publisher | None = None,
        cache: ClientCache | None = None,
    ):
        self.config = config
        self.db: Database | None = None
        self.cache = cache or ClientCache()
        self.factory = ModelClientFactory(config.models, self.cache)
        self.messenger = messenger or self._create_messenger()
        self.conversations, self.usage, self.events = self._create_stores()
        self.reducer = ConversationReducer(
            self.conversations,
            self.usage,
            config.chat,
            config.lark.app_id,
            image_loader=self.messenger.get_image,
        )
        self._publisher = publisher
        self._chat: ChatHandler | None = None
        self._callback: CallbackHandler | None = None

    async def start(self) -> None:
        if self.db is not None:
            await self.db.initialize()
            await self.db.purge_expired(int(time.time()))
        logger.info(
            "lark_bot_started",
            model_kind=self.config.models.kind,
            storage=self.config.storage.backend,
            fanout=self.config.fanout.backend,
            messenger=self.messenger.platform_name,
        )

    async def close(self) -> None:
        await self.cache.close_all()
        try:
            await self.messenger.close()
        except Exception as e:
            logger.error("messenger_close_error", error=str(e))
        if self.db is not None:
            await self.db.close()
        logger.info("lark_bot_stopped")

    @property
    def chat(self) -> ChatHandler:
        """Chat handler; the model client is created (and validated) on first use."""
        if self._chat is None:
            self._chat = ChatHandler(
                messenger=self.messenger,
                model_client=self.factory.create(),
                reducer=self.reducer,
                usage=self.usage,
                app_id=self.config.lark.app_id,
            )
        return self._chat

    @property
    def callback(self) -> CallbackHandler:
        if self._callback is None:
            self._callback = CallbackHandler(
                self.config.lark,
                self.events,
                self.messenger,
                self._publisher or self._create_publisher(),
            )
        return self._callback

    def _create_messenger(self) -> MessengerAdapter:
        from lark_bot.messenger.lark import LarkAdapter

        return LarkAdapter(self.config.lark)

    def _create_stores(self) -> tuple[ConversationStore, UsageLedger, EventLedger]:
        storage = self.config.storage
        ttl = self.config.chat.history_ttl_seconds
        match storage.backend:
            case "sqlite":
                from lark_bot.storage.sqlite_repo import (
                    SqliteConversationStore,
                    SqliteEventLedger,
                    SqliteUsageLedger,
                )

                self.db = Database(storage.db_path)
                return (
                    SqliteConversationStore(self.db, ttl),
                    SqliteUsageLedger(self.db),
                    SqliteEventLedger(self.db, storage.event_ttl_seconds),
                )
            case "dynamodb":
                from lark_bot.storage.dynamo import (
                    DynamoConversationStore,
                    DynamoEventLedger,
                    DynamoUsageLedger,
                )

                client = _boto3_client("dynamodb", storage.region)
                return (
                    DynamoConversationStore(client, storage.conversations_table, ttl),
                    DynamoUsageLedger(client, storage.usage_table),
                    DynamoEventLedger(client, storage.events_table, storage.event_ttl_seconds),
                )
            case _:
                raise ValueError(f"Unknown storage backend: {storage.backend}")

    def _create_publisher(self) -> Publisher:
        fanout = self.config.fanout
        match fanout.backend:
            case "inline":
                return InProcessPublisher(lambda message: self.chat.handle(message))
            case "sns":
                if not fanout.topic_arn:
                    raise ValueError("fanout backend 'sns' requires 'topic_arn'")
                return SnsPublisher(_boto3_client("sns", fanout.region), fanout.topic_arn)
            case _:
                raise ValueError(f"Unknown fanout backend: {fanout.backend}")


def _boto3_client(service: str, region: str | None) -> Any:
    import boto3

    return boto3.client(service, region_name=region) if region else boto3.client(service)
