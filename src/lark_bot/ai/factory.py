"""Resolve per-kind model configuration and construct streaming clients."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel

from lark_bot.ai.client import StreamingModelClient
from lark_bot.config import (
    KnowledgeBaseConfig,
    MockConfig,
    ModelsConfig,
    PrimaryModelConfig,
    WorkflowConfig,
)
from lark_bot.core.types import ModelKind
from lark_bot.errors import ConfigurationError, UnknownModelKindError
from lark_bot.log import get_logger

logger = get_logger(__name__)

_AWS_KEYS = ("region", "access_key_id", "secret_access_key")

REQUIRED_KEYS: dict[ModelKind, tuple[str, ...]] = {
    ModelKind.PRIMARY: (*_AWS_KEYS, "model_id"),
    ModelKind.RAG: (*_AWS_KEYS, "knowledge_base_id", "model_arn"),
    ModelKind.WORKFLOW: ("api_key", "base_url"),
    ModelKind.MOCK: (),
}

_CONFIG_TYPES: dict[ModelKind, type[BaseModel]] = {
    ModelKind.PRIMARY: PrimaryModelConfig,
    ModelKind.RAG: KnowledgeBaseConfig,
    ModelKind.WORKFLOW: WorkflowConfig,
    ModelKind.MOCK: MockConfig,
}

_SECRET_KEYS = frozenset({"access_key_id", "secret_access_key", "api_key"})


def parse_kind(kind: str | ModelKind) -> ModelKind:
    try:
        return ModelKind(str(kind).strip().lower())
    except ValueError:
        raise UnknownModelKindError(str(kind)) from None


def mask_secrets(config: dict[str, Any]) -> dict[str, Any]:
    return {k: ("***" if k in _SECRET_KEYS and v else v) for k, v in config.items()}


class ClientCache:
    """Process-wide cache of constructed clients keyed by configuration fingerprint."""

    def __init__(self) -> None:
        self._clients: dict[str, StreamingModelClient] = {}

    @staticmethod
    def fingerprint(kind: ModelKind, config: dict[str, Any]) -> str:
        raw = json.dumps({"kind": kind.value, "config": config}, sort_keys=True, default=str)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def get(self, key: str) -> StreamingModelClient | None:
        return self._clients.get(key)

    def put(self, key: str, client: StreamingModelClient) -> None:
        self._clients[key] = client

    def __len__(self) -> int:
        return len(self._clients)

    async def close_all(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()


class ModelClientFactory:
    """Creates the streaming client for a model kind.

    Adding a backend means adding a ``ModelKind`` member, its required keys,
    its config type and one branch in ``_build``.
    """

    def __init__(self, config: ModelsConfig, cache: ClientCache | None = None):
        self._config = config
        self._cache = cache

    def resolve(self, kind: str | ModelKind, override: dict[str, Any] | None = None) -> dict[str, Any]:
        """Merge configured defaults with ``override`` (override wins per key) and validate."""
        model_kind = parse_kind(kind)
        section: BaseModel = getattr(self._config, model_kind.value)
        merged = {**section.model_dump(), **(override or {})}

        missing = [key for key in REQUIRED_KEYS[model_kind] if not merged.get(key)]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration for model kind '{model_kind}'", missing
            )
        return merged

    def create(
        self, kind: str | ModelKind | None = None, override: dict[str, Any] | None = None
    ) -> StreamingModelClient:
        model_kind = parse_kind(kind or self._config.kind)
        merged = self.resolve(model_kind, override)

        key = ClientCache.fingerprint(model_kind, merged)
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        logger.info("model_client_create", kind=model_kind.value, config=mask_secrets(merged))
        client = self._build(model_kind, _CONFIG_TYPES[model_kind](**merged))
        if self._cache is not None:
            self._cache.put(key, client)
        return client

    @staticmethod
    def _build(kind: ModelKind, config: Any) -> StreamingModelClient:
        match kind:
            case ModelKind.PRIMARY:
                from lark_bot.ai.bedrock import BedrockClaudeClient

                return BedrockClaudeClient(config)
            case ModelKind.RAG:
                from lark_bot.ai.knowledge_base import KnowledgeBaseClient

                return KnowledgeBaseClient(config)
            case ModelKind.WORKFLOW:
                from lark_bot.ai.workflow import WorkflowClient

                return WorkflowClient(config)
            case ModelKind.MOCK:
                from lark_bot.ai.mock import MockClient

                return MockClient(config)
            case _:
                raise UnknownModelKindError(str(kind))
