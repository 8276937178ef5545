"""Abstract messenger adapter interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class MessengerAdapter(ABC):
    """Base class for messaging platform adapters.

    To add a new platform, subclass this and implement all abstract methods.
    """

    @abstractmethod
    async def send_text(self, chat_id: str, text: str) -> None:
        """Post a plain text message to a chat."""
        ...

    @abstractmethod
    async def reply_card(self, message_id: str, card: str) -> dict[str, Any]:
        """Reply to a message with an interactive card.

        Returns the platform response; ``data.message_id`` identifies the new
        card for later edits.
        """
        ...

    @abstractmethod
    async def patch_card(self, message_id: str, card: str) -> None:
        """Replace the content of a previously sent card in place."""
        ...

    @abstractmethod
    async def get_image(self, message_id: str, image_key: str) -> bytes:
        """Download an image attached to a message."""
        ...

    async def close(self) -> None:
        """Release network resources."""

    @property
    @abstractmethod
    def platform_name(self) -> str:
        ...
