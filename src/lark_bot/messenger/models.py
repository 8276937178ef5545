"""Message models shared by the webhook, fan-out and chat handlers."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    chat_id: str
    message_id: str
    message_type: str  # "text" | "image" | anything else is unsupported
    text: Optional[str] = None
    image_key: Optional[str] = None


@dataclass(frozen=True, slots=True)
class FanoutMessage:
    """Payload published by the webhook handler and consumed by the chat handler."""

    msg_type: str
    msg: Optional[str]
    open_chat_id: str
    message_id: str
    msg_body: dict[str, Any] = field(default_factory=dict)  # placeholder reply response

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> FanoutMessage:
        data = json.loads(raw)
        return cls(
            msg_type=data.get("msg_type", ""),
            msg=data.get("msg"),
            open_chat_id=data["open_chat_id"],
            message_id=data["message_id"],
            msg_body=data.get("msg_body") or {},
        )

    @property
    def placeholder_id(self) -> Optional[str]:
        """Message id of the placeholder card, if the reply succeeded."""
        if self.msg_body.get("code", 0) != 0:
            return None
        return (self.msg_body.get("data") or {}).get("message_id")

    def to_incoming(self) -> IncomingMessage:
        return IncomingMessage(
            chat_id=self.open_chat_id,
            message_id=self.message_id,
            message_type=self.msg_type,
            text=self.msg if self.msg_type == "text" else None,
            image_key=self.msg if self.msg_type == "image" else None,
        )
