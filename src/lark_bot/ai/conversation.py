"""Conversation state: control commands, bounded history and prompt selection."""

from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from lark_bot.config import ChatConfig
from lark_bot.core.types import MessageType, Role
from lark_bot.errors import QuotaExceededError
from lark_bot.log import get_logger, is_debug_mode, set_debug_mode
from lark_bot.messenger.models import IncomingMessage
from lark_bot.storage.base import ConversationStore, UsageLedger

logger = get_logger(__name__)

TOKEN_COUNT_COMMAND = "/tc"
SYSTEM_PROMPT_COMMAND = "/sp"
DEBUG_COMMAND = "/debug"

RESET_REPLY = "Flushed! Let's chat!"
SYSTEM_PROMPT_REPLY = "System prompt updated! Let's chat!"
QUOTA_REPLY = "max chat quota reached!"
EMPTY_REPLY = "Please send a non-empty message."

MENTION_PATTERN = re.compile(r"@_user_\d+\s*")

ImageLoader = Callable[[str, str], Awaitable[bytes]]


@dataclass(frozen=True)
class Reply:
    """Early return: send ``text`` to the chat, no model call."""

    text: str


@dataclass(frozen=True)
class ChatTurn:
    """Bounded message sequence and effective system prompt for one model call."""

    chat_id: str
    messages: list[dict[str, Any]]
    system_prompt: str


def strip_mentions(text: str) -> str:
    return MENTION_PATTERN.sub("", text).strip()


def trim_history(messages: list[dict[str, Any]], max_len: int) -> list[dict[str, Any]]:
    """Drop the oldest messages until at most ``max_len`` remain."""
    if len(messages) <= max_len:
        return list(messages)
    return messages[len(messages) - max_len:]


def append_turn(
    chat_id: str,
    history: list[dict[str, Any]],
    message: dict[str, Any],
    quota: int,
    max_len: int,
) -> list[dict[str, Any]]:
    """Append ``message`` to ``history`` subject to the per-chat quota and length cap."""
    if len(history) > quota:
        raise QuotaExceededError(chat_id, len(history), quota)
    return trim_history([*history, message], max_len)


def build_image_message(image: bytes, prompt: str, media_type: str = "image/png") -> dict[str, Any]:
    """User message carrying an image block followed by the description prompt."""
    return {
        "role": Role.USER.value,
        "content": [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": media_type,
                    "data": base64.b64encode(image).decode(),
                },
            },
            {"type": "text", "text": prompt},
        ],
    }


class ConversationReducer:
    """Classifies an inbound message against the stored conversation.

    ``reduce`` returns either a ``Reply`` (commands, quota, unsupported input)
    or a ``ChatTurn`` to submit to a model client. ``commit`` persists the
    turn once the model has answered.
    """

    def __init__(
        self,
        store: ConversationStore,
        usage: UsageLedger,
        config: ChatConfig,
        app_id: str,
        image_loader: ImageLoader | None = None,
    ):
        self._store = store
        self._usage = usage
        self._config = config
        self._app_id = app_id
        self._image_loader = image_loader

    async def reduce(self, incoming: IncomingMessage) -> Reply | ChatTurn:
        chat_id = incoming.chat_id

        if incoming.message_type == MessageType.TEXT:
            text = strip_mentions(incoming.text or "")
            if not text:
                return Reply(EMPTY_REPLY)
            command_reply = await self._run_command(chat_id, text)
            if command_reply is not None:
                return command_reply
            record = await self._store.load(chat_id)
            current = {"role": Role.USER.value, "content": text}

        elif incoming.message_type == MessageType.IMAGE:
            record = await self._store.load(chat_id)
            prompt = (record.system_prompt if record else None) or self._config.image_prompt
            current = await self._image_message(incoming, prompt)

        else:
            logger.info("unsupported_message_type", chat_id=chat_id, message_type=incoming.message_type)
            return Reply(f"'{incoming.message_type}' format is unsupported.")

        history = record.messages if record else []
        try:
            messages = append_turn(
                chat_id,
                history,
                current,
                self._config.max_chat_quota,
                self._config.max_retained_messages,
            )
        except QuotaExceededError as e:
            logger.info("chat_quota_exceeded", chat_id=chat_id, history=e.history_length, quota=e.quota)
            return Reply(QUOTA_REPLY)

        system_prompt = (record.system_prompt if record else None) or self._config.system_prompt
        logger.debug(
            "chat_turn_built",
            chat_id=chat_id,
            history=len(history),
            messages=len(messages),
            custom_prompt=bool(record and record.system_prompt),
        )
        return ChatTurn(chat_id=chat_id, messages=messages, system_prompt=system_prompt)

    async def commit(self, turn: ChatTurn, reply_text: str) -> list[dict[str, Any]]:
        """Append the assistant reply and persist, restarting the expiry window.

        The stored list can hold ``max_retained_messages + 1`` entries: the
        reply lands after the trim, and the next turn's trim then drops the
        oldest user message together with its reply.
        """
        messages = [*turn.messages, {"role": Role.ASSISTANT.value, "content": reply_text.lstrip()}]
        await self._store.save(turn.chat_id, messages, turn.system_prompt)
        return messages

    async def _image_message(self, incoming: IncomingMessage, prompt: str) -> dict[str, Any]:
        if self._image_loader is None or not incoming.image_key:
            raise ValueError("image message received but no image loader is configured")
        image = await self._image_loader(incoming.message_id, incoming.image_key)
        logger.debug("image_loaded", chat_id=incoming.chat_id, size=len(image))
        return build_image_message(image, prompt)

    async def _run_command(self, chat_id: str, text: str) -> Reply | None:
        """Execute a control command; None when ``text`` is not one."""
        if text == self._config.reset_command:
            await self._store.save(chat_id, [], None)
            logger.info("conversation_reset", chat_id=chat_id)
            return Reply(RESET_REPLY)

        if text == DEBUG_COMMAND or text.startswith(DEBUG_COMMAND + " "):
            arg = text[len(DEBUG_COMMAND):].strip().lower()
            if arg in ("on", "off"):
                set_debug_mode(arg == "on")
            state = "enabled" if is_debug_mode() else "disabled"
            return Reply(f"Debug mode is currently {state}. Use '/debug on' or '/debug off' to switch.")

        if text == TOKEN_COUNT_COMMAND:
            usage = await self._usage.get(self._app_id)
            return Reply(json.dumps(usage.to_dict()))

        if text == SYSTEM_PROMPT_COMMAND or text.startswith(SYSTEM_PROMPT_COMMAND + " "):
            prompt = text[len(SYSTEM_PROMPT_COMMAND):].strip()
            record = await self._store.load(chat_id)
            if not prompt:
                current = (record.system_prompt if record else None) or self._config.system_prompt
                return Reply(f"Current system prompt: {current or '(backend default)'}")
            await self._store.save(chat_id, record.messages if record else [], prompt)
            logger.info("system_prompt_updated", chat_id=chat_id, length=len(prompt))
            return Reply(SYSTEM_PROMPT_REPLY)

        return None
