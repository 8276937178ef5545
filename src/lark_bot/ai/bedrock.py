"""Claude on Amazon Bedrock via the Anthropic SDK streaming Messages API."""

from __future__ import annotations

import random
from typing import Any

import anthropic

from lark_bot.ai.client import (
    PartialCallback,
    StreamInvocationResult,
    StreamingModelClient,
    format_end_note,
)
from lark_bot.config import PrimaryModelConfig
from lark_bot.errors import BackendStreamError
from lark_bot.log import get_logger
from lark_bot.storage.models import TokenUsage

logger = get_logger(__name__)

# Partial edits are flushed every N deltas, N drawn from this range per delta.
FLUSH_INTERVAL = (10, 20)
BEDROCK_METRICS_KEY = "amazon-bedrock-invocationMetrics"


class BedrockClaudeClient(StreamingModelClient):
    """Primary backend: Anthropic Claude hosted on Bedrock."""

    kind = "primary"

    def __init__(
        self,
        config: PrimaryModelConfig,
        client: anthropic.AsyncAnthropicBedrock | None = None,
        rng: random.Random | None = None,
    ):
        self._config = config
        self._client = client or anthropic.AsyncAnthropicBedrock(
            aws_region=config.region,
            aws_access_key=config.access_key_id,
            aws_secret_key=config.secret_access_key,
        )
        self._rng = rng or random.Random()
        logger.info(
            "bedrock_client_initialized",
            region=config.region,
            model=config.model_id,
            temperature=config.temperature,
            top_p=config.top_p,
            max_tokens=config.max_tokens,
        )

    @property
    def model_name(self) -> str:
        return self._config.model_id or ""

    async def close(self) -> None:
        await self._client.close()

    async def invoke_stream(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        on_partial: PartialCallback,
    ) -> StreamInvocationResult | None:
        self._require_messages(messages)
        kwargs: dict[str, Any] = {
            "model": self._config.model_id,
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature,
            "top_p": self._config.top_p,
            "messages": messages,
            "stream": True,
        }
        if system_prompt:
            kwargs["system"] = system_prompt

        logger.info("bedrock_stream_request", model=self.model_name, message_count=len(messages))
        try:
            stream = await self._client.messages.create(**kwargs)
            async with stream:
                return await self._consume(stream, on_partial)
        except (anthropic.PermissionDeniedError, anthropic.AuthenticationError) as e:
            # Not re-raised: the caller sees no final callback and a None result.
            logger.error(
                "bedrock_access_denied",
                model=self.model_name,
                status_code=e.status_code,
                error=str(e),
            )
            return None
        except anthropic.APIError as e:
            logger.error("bedrock_stream_error", model=self.model_name, error=str(e))
            raise BackendStreamError(f"Bedrock stream failed: {e}") from e
        finally:
            logger.debug("bedrock_stream_finished", model=self.model_name)

    async def _consume(self, stream: Any, on_partial: PartialCallback) -> StreamInvocationResult:
        transcript = ""
        usage = TokenUsage()
        idx = 0
        stopped = False

        async for event in stream:
            if event.type == "message_start":
                usage.input_tokens = event.message.usage.input_tokens
                logger.debug("bedrock_message_start", role=event.message.role)

            elif event.type == "content_block_delta":
                text = getattr(event.delta, "text", None)
                if not text:
                    continue
                transcript += text
                if idx % self._rng.randint(*FLUSH_INTERVAL) == 0:
                    logger.debug("bedrock_partial_flush", chunk_index=idx, length=len(transcript))
                    await on_partial(transcript, "", False)
                idx += 1

            elif event.type == "message_delta":
                usage.output_tokens = event.usage.output_tokens

            elif event.type == "message_stop":
                metrics = (getattr(event, "model_extra", None) or {}).get(BEDROCK_METRICS_KEY)
                if metrics:
                    usage = TokenUsage(
                        input_tokens=metrics.get("inputTokenCount", usage.input_tokens),
                        output_tokens=metrics.get("outputTokenCount", usage.output_tokens),
                    )
                    logger.info(
                        "bedrock_invocation_metrics",
                        invocation_latency=metrics.get("invocationLatency"),
                        first_byte_latency=metrics.get("firstByteLatency"),
                    )
                stopped = True
                await on_partial(transcript, format_end_note(usage), True)

        if not stopped:
            raise BackendStreamError("Bedrock stream ended without a stop event")

        logger.info(
            "bedrock_stream_completed",
            response_length=len(transcript),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return StreamInvocationResult(
            text=transcript,
            usage=usage,
            metadata={"model": self.model_name},
        )
