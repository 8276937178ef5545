"""Chat handler: fan-out message -> reducer -> streaming model -> card edits -> persistence."""

from __future__ import annotations

from lark_bot.ai.client import StreamingModelClient
from lark_bot.ai.conversation import ChatTurn, ConversationReducer, Reply
from lark_bot.errors import GENERIC_ERROR_TEXT
from lark_bot.log import get_logger
from lark_bot.messenger.base import MessengerAdapter
from lark_bot.messenger.card import build_card, current_time
from lark_bot.messenger.models import FanoutMessage
from lark_bot.messenger.relay import ResponseRelay
from lark_bot.storage.base import UsageLedger

logger = get_logger(__name__)


class ChatHandler:
    """Handles one chat turn end-to-end. Returns True on success."""

    def __init__(
        self,
        messenger: MessengerAdapter,
        model_client: StreamingModelClient,
        reducer: ConversationReducer,
        usage: UsageLedger,
        app_id: str,
    ):
        self._messenger = messenger
        self._model_client = model_client
        self._reducer = reducer
        self._usage = usage
        self._app_id = app_id

    async def handle(self, fanout: FanoutMessage) -> bool:
        chat_id = fanout.open_chat_id
        incoming = fanout.to_incoming()
        logger.info("chat_turn_received", chat_id=chat_id, message_type=incoming.message_type)

        try:
            outcome = await self._reducer.reduce(incoming)
            if isinstance(outcome, Reply):
                await self._messenger.send_text(chat_id, outcome.text)
                return True
            return await self._run_turn(fanout, outcome)
        except Exception as e:
            logger.error(
                "chat_turn_failed",
                chat_id=chat_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            await self._apologize(chat_id)
            return False

    async def _run_turn(self, fanout: FanoutMessage, turn: ChatTurn) -> bool:
        placeholder_id = fanout.placeholder_id
        if placeholder_id is None:
            logger.warning("placeholder_missing", chat_id=turn.chat_id, msg_body=fanout.msg_body)
            card = build_card("Pending", current_time(), "...", "", False, True)
            response = await self._messenger.reply_card(fanout.message_id, card)
            placeholder_id = response["data"]["message_id"]

        relay = ResponseRelay(self._messenger, placeholder_id)
        result = await self._model_client.invoke_stream(
            turn.messages, turn.system_prompt, relay.on_partial
        )
        if result is None or not relay.finished:
            logger.error(
                "model_stream_incomplete",
                chat_id=turn.chat_id,
                model=self._model_client.model_name,
                edits=relay.edits,
            )
            await self._apologize(turn.chat_id)
            return False

        await self._reducer.commit(turn, result.text)
        totals = await self._usage.add(
            self._app_id, result.usage.input_tokens, result.usage.output_tokens
        )
        logger.info(
            "chat_turn_completed",
            chat_id=turn.chat_id,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            totals=totals.to_dict() if totals else None,
            metadata=result.metadata,
        )
        return True

    async def _apologize(self, chat_id: str) -> None:
        try:
            await self._messenger.send_text(chat_id, GENERIC_ERROR_TEXT)
        except Exception as e:
            logger.error("apology_send_failed", chat_id=chat_id, error=str(e))
