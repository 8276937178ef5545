"""Publishers decoupling the webhook acknowledgement from slow inference."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from lark_bot.log import get_logger
from lark_bot.messenger.models import FanoutMessage

logger = get_logger(__name__)


class Publisher(ABC):
    @abstractmethod
    async def publish(self, message: FanoutMessage) -> None:
        ...


class SnsPublisher(Publisher):
    """Publishes to an SNS topic; one subscriber handles each message."""

    def __init__(self, client: Any, topic_arn: str):
        self._client = client
        self._topic_arn = topic_arn

    async def publish(self, message: FanoutMessage) -> None:
        response = await asyncio.to_thread(
            self._client.publish, TopicArn=self._topic_arn, Message=message.to_json()
        )
        logger.info(
            "fanout_published",
            topic=self._topic_arn,
            sns_message_id=response.get("MessageId"),
            message_id=message.message_id,
        )


class InProcessPublisher(Publisher):
    """Delivers straight to a consumer in the same process (local replay, tests)."""

    def __init__(self, consumer: Callable[[FanoutMessage], Awaitable[Any]]):
        self._consumer = consumer

    async def publish(self, message: FanoutMessage) -> None:
        logger.debug("fanout_inline", message_id=message.message_id)
        await self._consumer(message)
