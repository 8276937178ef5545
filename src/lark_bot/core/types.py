"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class ModelKind(StrEnum):
    PRIMARY = "primary"
    RAG = "rag"
    WORKFLOW = "workflow"
    MOCK = "mock"


class MessageType(StrEnum):
    TEXT = "text"
    IMAGE = "image"


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
