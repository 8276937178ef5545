"""Bedrock Knowledge Base retrieve-and-generate streaming backend."""

from __future__ import annotations

import asyncio
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from lark_bot.ai.client import (
    PartialCallback,
    StreamInvocationResult,
    StreamingModelClient,
    estimate_tokens,
    format_end_note,
    message_text,
)
from lark_bot.config import KnowledgeBaseConfig
from lark_bot.errors import AuthorizationError, BackendStreamError
from lark_bot.log import get_logger
from lark_bot.storage.models import TokenUsage

logger = get_logger(__name__)

_ACCESS_DENIED_CODES = frozenset({"AccessDeniedException", "UnrecognizedClientException"})


class KnowledgeBaseClient(StreamingModelClient):
    """RAG backend answering the last message from a Bedrock knowledge base."""

    kind = "rag"

    def __init__(self, config: KnowledgeBaseConfig, client: Any = None):
        self._config = config
        self._client = client or boto3.client(
            "bedrock-agent-runtime",
            region_name=config.region,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
        )
        logger.info(
            "knowledge_base_client_initialized",
            region=config.region,
            knowledge_base_id=config.knowledge_base_id,
            model_arn=config.model_arn,
        )

    @property
    def model_name(self) -> str:
        return self._config.model_arn or ""

    def _request(self, question: str) -> dict[str, Any]:
        cfg = self._config
        inference = {
            "textInferenceConfig": {
                "maxTokens": cfg.max_tokens,
                "stopSequences": ["\nObservation"],
                "temperature": cfg.temperature,
                "topP": cfg.top_p,
            }
        }
        return {
            "input": {"text": question},
            "retrieveAndGenerateConfiguration": {
                "type": "KNOWLEDGE_BASE",
                "knowledgeBaseConfiguration": {
                    "knowledgeBaseId": cfg.knowledge_base_id,
                    "modelArn": cfg.model_arn,
                    "orchestrationConfiguration": {"inferenceConfig": inference},
                    "generationConfiguration": {"inferenceConfig": inference},
                    "retrievalConfiguration": {
                        "vectorSearchConfiguration": {
                            "numberOfResults": cfg.number_of_results,
                            "overrideSearchType": cfg.search_type,
                        }
                    },
                },
            },
        }

    async def invoke_stream(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        on_partial: PartialCallback,
    ) -> StreamInvocationResult:
        """Only the last message is sent; ``system_prompt`` is not used by this backend."""
        self._require_messages(messages)
        question = message_text(messages[-1])
        request = self._request(question)
        logger.debug("knowledge_base_request", question_length=len(question))

        try:
            response = await asyncio.to_thread(
                self._client.retrieve_and_generate_stream, **request
            )
            events = iter(response["stream"])
            transcript = ""
            citations: list[str] = []

            while True:
                event = await asyncio.to_thread(next, events, None)
                if event is None:
                    break
                if "output" in event:
                    transcript += event["output"].get("text", "")
                    await on_partial(transcript, "", False)
                elif "citation" in event:
                    citations.extend(_reference_uris(event["citation"]))
                else:
                    logger.debug("knowledge_base_unhandled_event", keys=list(event))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            logger.error("knowledge_base_error", code=code, error=str(e))
            if code in _ACCESS_DENIED_CODES:
                raise AuthorizationError(f"Knowledge base access denied: {code}") from e
            raise BackendStreamError(f"Knowledge base stream failed: {code}") from e
        except BotoCoreError as e:
            logger.error("knowledge_base_error", error=str(e))
            raise BackendStreamError(f"Knowledge base stream failed: {e}") from e

        if not transcript:
            logger.warning("knowledge_base_empty_output")
            raise BackendStreamError("Knowledge base returned no output")

        usage = TokenUsage(
            input_tokens=estimate_tokens(question),
            output_tokens=estimate_tokens(transcript),
        )
        await on_partial(transcript, format_end_note(usage), True)

        logger.info(
            "knowledge_base_stream_completed",
            response_length=len(transcript),
            citation_count=len(citations),
        )
        return StreamInvocationResult(
            text=transcript,
            usage=usage,
            metadata={"citations": citations, "session_id": response.get("sessionId")},
        )


def _reference_uris(citation: dict[str, Any]) -> list[str]:
    uris = []
    for reference in citation.get("retrievedReferences") or []:
        uri = (reference.get("location") or {}).get("s3Location", {}).get("uri")
        if uri:
            uris.append(uri)
    return uris
