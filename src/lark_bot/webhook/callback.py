"""Inbound webhook: verify, de-duplicate, acknowledge with a placeholder and fan out."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from lark_bot.ai.conversation import strip_mentions
from lark_bot.config import LarkConfig
from lark_bot.core.types import MessageType
from lark_bot.errors import GENERIC_ERROR_TEXT, DecryptionError, WebhookValidationError
from lark_bot.log import get_logger
from lark_bot.messenger.base import MessengerAdapter
from lark_bot.messenger.card import build_card, current_time
from lark_bot.messenger.models import FanoutMessage
from lark_bot.storage.base import EventLedger
from lark_bot.webhook.crypto import decrypt_event
from lark_bot.webhook.fanout import Publisher

logger = get_logger(__name__)

MESSAGE_RECEIVED_EVENT = "im.message.receive_v1"
URL_VERIFICATION = "url_verification"


@dataclass
class WebhookResponse:
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    def to_lambda(self) -> dict[str, Any]:
        response: dict[str, Any] = {"statusCode": self.status_code}
        if self.body:
            response["body"] = json.dumps(self.body)
        return response


class EventHeader(BaseModel):
    event_id: str
    token: str
    event_type: str
    app_id: Optional[str] = None
    create_time: Optional[str] = None


class EventMessage(BaseModel):
    message_id: str
    chat_id: str
    message_type: str
    content: str = "{}"


def _challenge(data: dict[str, Any]) -> str | None:
    """Return the challenge string if ``data`` is a URL-verification request."""
    header = data.get("header") or {}
    if data.get("type") == URL_VERIFICATION or header.get("event_type") == URL_VERIFICATION:
        return data.get("challenge") or (data.get("event") or {}).get("challenge") or ""
    challenge = data.get("challenge")
    return challenge if isinstance(challenge, str) else None


def _message_payload(message: EventMessage) -> str | None:
    """Text (mentions stripped) or image key carried by ``message``."""
    try:
        content = json.loads(message.content)
    except ValueError:
        return None
    match message.message_type:
        case MessageType.TEXT:
            return strip_mentions(content.get("text", ""))
        case MessageType.IMAGE:
            return content.get("image_key")
        case _:
            return None


class CallbackHandler:
    """Handles one webhook delivery and returns the HTTP response to send."""

    def __init__(
        self,
        config: LarkConfig,
        events: EventLedger,
        messenger: MessengerAdapter,
        publisher: Publisher,
    ):
        self._config = config
        self._events = events
        self._messenger = messenger
        self._publisher = publisher

    async def handle(self, body: str | bytes | None) -> WebhookResponse:
        try:
            data = self._parse(body)
        except DecryptionError as e:
            logger.warning("webhook_decrypt_failed", error=str(e))
            return WebhookResponse(200)
        except WebhookValidationError as e:
            logger.warning("webhook_rejected", reason=str(e))
            return WebhookResponse(400, {"message": "Invalid request"})

        challenge = _challenge(data)
        if challenge is not None:
            logger.info("webhook_url_verification")
            return WebhookResponse(200, {"challenge": challenge})

        try:
            header, message = self._validate(data)
        except WebhookValidationError as e:
            logger.warning("webhook_rejected", reason=str(e))
            return WebhookResponse(400, {"message": "Invalid request"})

        if await self._events.exists(header.event_id):
            logger.warning("webhook_duplicate_event", event_id=header.event_id)
            return WebhookResponse(200)

        await self._events.record(header.event_id, header.model_dump(exclude_none=True))
        await self._dispatch(message)
        return WebhookResponse(200)

    def _parse(self, body: str | bytes | None) -> dict[str, Any]:
        if not body:
            raise WebhookValidationError("no event body found")
        try:
            data = json.loads(body)
        except ValueError as e:
            raise WebhookValidationError("event body is not JSON") from e
        if not isinstance(data, dict):
            raise WebhookValidationError("event body is not an object")

        if data.get("encrypt") and self._config.encrypt_key:
            data = decrypt_event(data["encrypt"], self._config.encrypt_key)
            logger.debug("webhook_decrypted", keys=sorted(data))
        return data

    def _validate(self, data: dict[str, Any]) -> tuple[EventHeader, EventMessage]:
        try:
            header = EventHeader.model_validate(data.get("header") or {})
        except ValidationError as e:
            raise WebhookValidationError("malformed event header") from e
        if header.token != self._config.verification_token:
            raise WebhookValidationError("verification token mismatch")
        if header.event_type != MESSAGE_RECEIVED_EVENT:
            raise WebhookValidationError(f"unexpected event type {header.event_type!r}")
        try:
            message = EventMessage.model_validate((data.get("event") or {}).get("message") or {})
        except ValidationError as e:
            raise WebhookValidationError("malformed event message") from e
        return header, message

    async def _dispatch(self, message: EventMessage) -> None:
        try:
            card = build_card("Pending", current_time(), "...", "", False, True)
            msg_body = await self._messenger.reply_card(message.message_id, card)
            await self._publisher.publish(
                FanoutMessage(
                    msg_type=message.message_type,
                    msg=_message_payload(message),
                    open_chat_id=message.chat_id,
                    message_id=message.message_id,
                    msg_body=msg_body,
                )
            )
        except Exception as e:
            logger.error(
                "webhook_dispatch_failed",
                chat_id=message.chat_id,
                message_id=message.message_id,
                error=str(e),
                exc_info=True,
            )
            try:
                await self._messenger.send_text(message.chat_id, GENERIC_ERROR_TEXT)
            except Exception as send_error:
                logger.error("apology_send_failed", chat_id=message.chat_id, error=str(send_error))
