"""Dify-style workflow backend streamed over server-sent events."""

from __future__ import annotations

import json
import math
from typing import Any

import httpx

from lark_bot.ai.client import (
    PartialCallback,
    StreamInvocationResult,
    StreamingModelClient,
    format_end_note,
    message_text,
    round_half_up,
)
from lark_bot.config import WorkflowConfig
from lark_bot.errors import AuthorizationError, BackendStreamError
from lark_bot.log import get_logger
from lark_bot.storage.models import TokenUsage

logger = get_logger(__name__)

INPUT_SHARE = 0.3


def split_usage(total_tokens: int) -> TokenUsage:
    """Split a backend total into an estimated 30/70 input/output share."""
    return TokenUsage(
        input_tokens=round_half_up(total_tokens * INPUT_SHARE),
        output_tokens=round_half_up(total_tokens * (1 - INPUT_SHARE)),
    )


class WorkflowClient(StreamingModelClient):
    """Runs a workflow app and follows its lifecycle events."""

    kind = "workflow"

    def __init__(self, config: WorkflowConfig, http: httpx.AsyncClient | None = None):
        self._config = config
        self._base_url = (config.base_url or "").rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=config.timeout)
        logger.info(
            "workflow_client_initialized",
            base_url=self._base_url,
            user_id=config.user_id,
            input_var=config.input_var_name,
        )

    @property
    def model_name(self) -> str:
        return f"workflow:{self._base_url}"

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Content-Type": "application/json",
        }

    def _format_inputs(self, messages: list[dict[str, Any]], system_prompt: str) -> dict[str, Any]:
        cfg = self._config
        inputs: dict[str, Any] = {}

        last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
        if last_user is not None:
            inputs[cfg.input_var_name] = message_text(last_user)
        if system_prompt and cfg.system_prompt_var_name:
            inputs[cfg.system_prompt_var_name] = system_prompt
        if len(messages) > 1 and cfg.history_var_name:
            inputs[cfg.history_var_name] = [
                {"role": m.get("role"), "content": message_text(m)} for m in messages[:-1]
            ]
        return inputs

    async def invoke_stream(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        on_partial: PartialCallback,
    ) -> StreamInvocationResult:
        self._require_messages(messages)
        inputs = self._format_inputs(messages, system_prompt)
        payload = {"inputs": inputs, "response_mode": "streaming", "user": self._config.user_id}
        question = inputs.get(self._config.input_var_name, "")

        state = _WorkflowState()
        logger.info("workflow_stream_request", message_count=len(messages))
        try:
            async with self._http.stream(
                "POST",
                f"{self._base_url}/workflows/run",
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code in (401, 403):
                    raise AuthorizationError(f"Workflow API rejected credentials ({response.status_code})")
                response.raise_for_status()

                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        data = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        logger.warning("workflow_bad_event", line=line[:200])
                        continue
                    await self._handle_event(data, state, question, on_partial)
        except httpx.HTTPError as e:
            logger.error("workflow_stream_error", error=str(e))
            raise BackendStreamError(f"Workflow stream failed: {e}") from e

        if not state.finished:
            raise BackendStreamError("Workflow stream ended without workflow_finished")

        logger.info(
            "workflow_stream_completed",
            response_length=len(state.transcript),
            total_tokens=state.total_tokens,
            workflow_run_id=state.workflow_run_id,
        )
        return StreamInvocationResult(
            text=state.transcript,
            usage=state.usage,
            metadata={
                "workflow_run_id": state.workflow_run_id,
                "task_id": state.task_id,
                "citations": state.citations,
            },
        )

    async def _handle_event(
        self,
        data: dict[str, Any],
        state: _WorkflowState,
        question: str,
        on_partial: PartialCallback,
    ) -> None:
        event = data.get("event")
        body = data.get("data") or {}

        if event == "workflow_started":
            state.task_id = data.get("task_id")
            state.workflow_run_id = data.get("workflow_run_id")

        elif event == "node_finished":
            state.collect_citations(body)
            total = (body.get("execution_metadata") or {}).get("total_tokens")
            if total:
                state.total_tokens = total
            text = (body.get("outputs") or {}).get("text")
            if text:
                state.transcript = text
                await on_partial(state.transcript, "", False)

        elif event == "workflow_finished":
            if body.get("status") not in (None, "succeeded"):
                raise BackendStreamError(f"Workflow {body.get('status')}: {body.get('error')}")
            state.collect_citations(body)
            text = (body.get("outputs") or {}).get("text")
            if text:
                state.transcript = text
            if not state.transcript:
                raise BackendStreamError("Workflow returned no output")
            if body.get("total_tokens"):
                state.total_tokens = body["total_tokens"]
            state.usage = (
                split_usage(state.total_tokens)
                if state.total_tokens
                else split_usage(math.ceil(len(question + state.transcript) / 4))
            )
            state.finished = True
            await on_partial(state.transcript, format_end_note(state.usage), True)

        elif event == "ping":
            pass

    async def stop(self, task_id: str) -> dict[str, Any]:
        """Stop a running workflow task."""
        if not task_id:
            raise ValueError("task_id is required to stop a workflow")
        try:
            response = await self._http.post(
                f"{self._base_url}/workflows/tasks/{task_id}/stop",
                headers=self._headers,
                json={"user": self._config.user_id},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("workflow_stop_error", task_id=task_id, error=str(e))
            raise BackendStreamError(f"Failed to stop workflow task {task_id}: {e}") from e
        return response.json()


class _WorkflowState:
    def __init__(self) -> None:
        self.transcript = ""
        self.task_id: str | None = None
        self.workflow_run_id: str | None = None
        self.total_tokens = 0
        self.usage = TokenUsage()
        self.citations: list[str] = []
        self.finished = False

    def collect_citations(self, body: dict[str, Any]) -> None:
        outputs = body.get("outputs") or {}
        references: list[dict[str, Any]] = []
        if body.get("node_type") == "knowledge-retrieval":
            references.extend(r for r in outputs.get("result") or [] if isinstance(r, dict))
        metadata = body.get("metadata") or {}
        references.extend(metadata.get("retriever_resources") or [])

        for ref in references:
            meta = ref.get("metadata") or ref
            name = meta.get("document_name") or meta.get("url") or meta.get("title")
            if name and name not in self.citations:
                self.citations.append(name)
