"""Deterministic mock backend for tests and local runs."""

from __future__ import annotations

import asyncio
from typing import Any

from lark_bot.ai.client import (
    PartialCallback,
    StreamInvocationResult,
    StreamingModelClient,
    format_end_note,
    message_text,
    round_half_up,
)
from lark_bot.config import MockConfig
from lark_bot.log import get_logger
from lark_bot.storage.models import TokenUsage

logger = get_logger(__name__)

FLUSH_EVERY = 3


class MockClient(StreamingModelClient):
    """Streams a canned response word by word."""

    kind = "mock"

    def __init__(self, config: MockConfig):
        self._delay = config.delay_ms / 1000
        self._response_text = config.response_text
        logger.info(
            "mock_client_initialized",
            delay_ms=config.delay_ms,
            response_length=len(self._response_text),
        )

    @property
    def model_name(self) -> str:
        return "mock"

    async def invoke_stream(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        on_partial: PartialCallback,
    ) -> StreamInvocationResult:
        self._require_messages(messages)
        logger.debug(
            "mock_stream_invoked",
            message_count=len(messages),
            system_prompt_length=len(system_prompt),
        )

        words = self._response_text.split()
        input_chars = sum(len(message_text(m)) for m in messages)
        usage = TokenUsage(input_tokens=round_half_up(input_chars / 4))

        if not words:
            await on_partial("", format_end_note(usage), True)
            return StreamInvocationResult(text="", usage=usage)

        transcript = ""
        last = len(words) - 1
        for i, word in enumerate(words):
            if self._delay:
                await asyncio.sleep(self._delay)
            transcript = word if i == 0 else f"{transcript} {word}"

            if i == last:
                usage.output_tokens = round_half_up(len(transcript) / 4)
                await on_partial(transcript, format_end_note(usage), True)
            elif i % FLUSH_EVERY == 0:
                await on_partial(transcript, "", False)

        logger.debug(
            "mock_stream_completed",
            response_length=len(transcript),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return StreamInvocationResult(text=transcript, usage=usage)
