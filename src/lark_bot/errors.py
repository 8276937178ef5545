"""Error taxonomy shared across the bot."""

from __future__ import annotations

from collections.abc import Iterable

GENERIC_ERROR_TEXT = "An error occurred while processing your request. Please try again later."


class LarkBotError(Exception):
    """Base class for all lark-bot errors."""


class ConfigurationError(LarkBotError):
    """Required settings are missing or invalid. Fatal, never retried."""

    def __init__(self, message: str, missing: Iterable[str] = ()) -> None:
        self.missing = list(missing)
        if self.missing:
            message = f"{message}: {', '.join(self.missing)}"
        super().__init__(message)


class UnknownModelKindError(ConfigurationError):
    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Unknown model kind: {kind}")


class AuthorizationError(LarkBotError):
    """The model backend rejected our credentials."""


class DecryptionError(LarkBotError):
    """Webhook ciphertext is malformed or the key is wrong."""


class WebhookValidationError(LarkBotError):
    """Webhook body is malformed, carries a wrong token or an unknown event."""


class QuotaExceededError(LarkBotError):
    def __init__(self, chat_id: str, history_length: int, quota: int) -> None:
        self.chat_id = chat_id
        self.history_length = history_length
        self.quota = quota
        super().__init__(f"Chat {chat_id} holds {history_length} messages, quota is {quota}")


class BackendStreamError(LarkBotError):
    """Transient network or provider failure while streaming a response."""


class MessengerError(LarkBotError):
    """The messaging platform API returned an error."""

    def __init__(self, message: str, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class StorageReadError(LarkBotError):
    """A store could not read a row; distinct from the row being absent."""
