"""Streaming model client abstraction shared by every backend variant."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from lark_bot.storage.models import TokenUsage

# (transcript so far, end note, is_final). The transcript is always the full
# text produced so far, never a delta.
PartialCallback = Callable[[str, str, bool], Awaitable[None]]


@dataclass
class StreamInvocationResult:
    """Unified result of one streaming invocation, discarded after use."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    metadata: dict[str, Any] = field(default_factory=dict)  # Backend-specific extras


def format_end_note(usage: TokenUsage) -> str:
    """Footer shown on the final placeholder edit."""
    return f"input:{usage.input_tokens} output:{usage.output_tokens} "


def message_text(message: dict[str, Any]) -> str:
    """Plain text of a message whose content is a string or a list of content blocks."""
    content = message.get("content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return ""


def estimate_tokens(text: str) -> int:
    """Coarse character/4 token estimate."""
    return math.ceil(len(text) / 4)


def round_half_up(value: float) -> int:
    """Nearest integer with halves rounded up, not to even."""
    return math.floor(value + 0.5)


class StreamingModelClient(ABC):
    """Abstract base class for streaming model backends.

    To add a backend, subclass this, implement ``invoke_stream`` and add a
    branch to ``ModelClientFactory``.
    """

    kind: str = ""

    @abstractmethod
    async def invoke_stream(
        self,
        messages: list[dict[str, Any]],
        system_prompt: str,
        on_partial: PartialCallback,
    ) -> StreamInvocationResult | None:
        """Invoke the backend, reporting the growing transcript through ``on_partial``.

        ``on_partial`` is called one or more times; the last call has
        ``is_final=True`` and a non-empty end note. An empty ``system_prompt``
        means "use the backend default". Returns ``None`` only when the
        backend rejected the request in a way the variant chooses to swallow,
        in which case no final callback was made.
        """
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        ...

    async def close(self) -> None:
        """Release network resources held by the client."""

    @staticmethod
    def _require_messages(messages: list[dict[str, Any]]) -> None:
        if not messages:
            raise ValueError("messages must not be empty")
