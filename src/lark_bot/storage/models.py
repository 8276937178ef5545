"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass
class ConversationRecord:
    chat_id: str
    messages: list[dict[str, Any]] = field(default_factory=list)  # {"role", "content"}
    system_prompt: Optional[str] = None
    expire_at: Optional[int] = None  # epoch seconds
