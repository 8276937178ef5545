"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_MOCK_RESPONSE = (
    "Got it, this is a mock response. The dependency inversion principle is one of "
    "the SOLID principles: high-level modules should not depend on low-level modules, "
    "both should depend on abstractions."
)


class LarkConfig(BaseModel):
    app_id: str = ""
    app_secret: str = ""
    verification_token: str = ""
    encrypt_key: Optional[str] = None
    base_url: str = "https://open.feishu.cn"
    timeout: float = 10.0


class ChatConfig(BaseModel):
    reset_command: str = "/rs"
    max_seq: int = 10
    max_chat_quota: int = 100
    system_prompt: str = ""
    image_prompt: str = "Describe this image in detail."
    history_ttl_seconds: int = 24 * 60 * 60

    @property
    def max_retained_messages(self) -> int:
        return 2 * self.max_seq + 1


class PrimaryModelConfig(BaseModel):
    region: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    model_id: Optional[str] = None
    temperature: float = 0.7
    top_p: float = 0.9
    max_tokens: int = 2048


class KnowledgeBaseConfig(BaseModel):
    region: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    knowledge_base_id: Optional[str] = None
    model_arn: Optional[str] = None
    number_of_results: int = 10
    search_type: str = "HYBRID"
    temperature: float = 0.0
    top_p: float = 1.0
    max_tokens: int = 4096


class WorkflowConfig(BaseModel):
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    user_id: str = "default-user"
    input_var_name: str = "user_input"
    system_prompt_var_name: str = "system_prompt"
    history_var_name: str = "conversation_history"
    timeout: float = 120.0


class MockConfig(BaseModel):
    delay_ms: int = 300
    response_text: str = DEFAULT_MOCK_RESPONSE


class ModelsConfig(BaseModel):
    kind: str = "primary"  # "primary" | "rag" | "workflow" | "mock"
    primary: PrimaryModelConfig = Field(default_factory=PrimaryModelConfig)
    rag: KnowledgeBaseConfig = Field(default_factory=KnowledgeBaseConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    mock: MockConfig = Field(default_factory=MockConfig)


class StorageConfig(BaseModel):
    backend: str = "dynamodb"  # "dynamodb" | "sqlite"
    region: Optional[str] = None
    conversations_table: str = "lark_messages"
    usage_table: str = "lark_stats"
    events_table: str = "lark_events"
    db_path: str = "./data/lark_bot.db"
    event_ttl_seconds: int = 24 * 60 * 60


class FanoutConfig(BaseModel):
    backend: str = "sns"  # "sns" | "inline"
    topic_arn: Optional[str] = None
    region: Optional[str] = None


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "console"  # "console" | "json"
    debug_mode: bool = False
    lark: LarkConfig = Field(default_factory=LarkConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    fanout: FanoutConfig = Field(default_factory=FanoutConfig)


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        value = os.environ.get(match.group(1))
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    interpolated = _interpolate_env_vars(config_file.read_text(encoding="utf-8"))
    data = yaml.safe_load(interpolated) or {}
    return AppConfig(**data)


# Flat deployment variables -> (section, key) in AppConfig.
_ENV_MAPPING: dict[str, tuple[str, ...]] = {
    "LOG_LEVEL": ("log_level",),
    "LOG_FORMAT": ("log_format",),
    "LARK_APPID": ("lark", "app_id"),
    "LARK_APP_SECRET": ("lark", "app_secret"),
    "LARK_TOKEN": ("lark", "verification_token"),
    "LARK_ENCRYPT_KEY": ("lark", "encrypt_key"),
    "LARK_BASE_URL": ("lark", "base_url"),
    "START_CMD": ("chat", "reset_command"),
    "AWS_CLAUDE_MAX_SEQ": ("chat", "max_seq"),
    "AWS_CLAUDE_MAX_CHAT_QUOTA_PER_USER": ("chat", "max_chat_quota"),
    "AWS_CLAUDE_SYSTEM_PROMPT": ("chat", "system_prompt"),
    "AWS_CLAUDE_IMG_DESC_PROMPT": ("chat", "image_prompt"),
    "AI_MODEL_TYPE": ("models", "kind"),
    "AWS_BEDROCK_CLAUDE_SONNET": ("models", "primary", "model_id"),
    "KNOWLEDGE_BASE_ID": ("models", "rag", "knowledge_base_id"),
    "RAG_MODEL_ARN": ("models", "rag", "model_arn"),
    "DIFY_API_KEY": ("models", "workflow", "api_key"),
    "DIFY_BASE_URL": ("models", "workflow", "base_url"),
    "DIFY_USER_ID": ("models", "workflow", "user_id"),
    "MOCK_MODEL_DELAY": ("models", "mock", "delay_ms"),
    "MOCK_MODEL_DEFAULT_RESPONSE": ("models", "mock", "response_text"),
    "DB_TABLE": ("storage", "conversations_table"),
    "DB_STATS_TABLE": ("storage", "usage_table"),
    "DB_EVENTS_TABLE": ("storage", "events_table"),
    "STORAGE_BACKEND": ("storage", "backend"),
    "SQLITE_PATH": ("storage", "db_path"),
    "SNS_TOPIC_ARN": ("fanout", "topic_arn"),
    "FANOUT_BACKEND": ("fanout", "backend"),
}

# Shared by every AWS-backed section.
_AWS_ENV: dict[str, str] = {
    "AWS_REGION_CODE": "region",
    "AWS_AK": "access_key_id",
    "AWS_SK": "secret_access_key",
}

# Sampling parameters common to primary model settings.
_SAMPLING_ENV: dict[str, str] = {
    "AI_MODEL_TEMPERATURE": "temperature",
    "AI_MODEL_TOP_P": "top_p",
    "AI_MODEL_MAX_TOKENS": "max_tokens",
}


def _set_path(data: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    node = data
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def config_from_env(environ: dict[str, str] | None = None) -> AppConfig:
    """Build AppConfig from the flat environment surface of the serverless deployment.

    Empty variables count as unset so that the model factory can report them
    as missing.
    """
    env = dict(os.environ if environ is None else environ)
    data: dict[str, Any] = {}

    for name, path in _ENV_MAPPING.items():
        value = env.get(name)
        if value:
            _set_path(data, path, value)

    for name, key in _AWS_ENV.items():
        value = env.get(name)
        if not value:
            continue
        _set_path(data, ("models", "primary", key), value)
        _set_path(data, ("models", "rag", key), value)
        if key == "region":
            _set_path(data, ("storage", "region"), value)
            _set_path(data, ("fanout", "region"), value)

    for name, key in _SAMPLING_ENV.items():
        value = env.get(name)
        if value:
            _set_path(data, ("models", "primary", key), value)

    data["debug_mode"] = env.get("DEBUG_MODE", "0").strip().lower() in ("1", "true", "yes")
    return AppConfig(**data)
