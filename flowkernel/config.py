from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowkernel.logging import get_logger

logger = get_logger(__name__)


class WebSearchProvider(str, Enum):
    """Web search backends the runtime knows how to build."""

    BRAVE = "brave"
    STUB = "stub"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow engine and its collaborators."""

    # Model completion defaults applied when a node leaves them unset
    default_model: str = env_field("gpt-4o-mini", "DEFAULT_MODEL")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")
    default_max_tokens: int = env_field(1000, "DEFAULT_MAX_TOKENS")
    default_top_k: int = env_field(3, "DEFAULT_TOP_K")
    default_result_count: int = env_field(3, "DEFAULT_RESULT_COUNT")

    # Execution limits
    node_timeout_ms: int = env_field(
        15000,
        "WORKFLOW_NODE_TIMEOUT_MS",
        description="Per-node timeout unless the node sets timeoutMs",
    )
    max_node_timeout_ms: int = env_field(
        60000,
        "WORKFLOW_MAX_NODE_TIMEOUT_MS",
        description="Hard cap on any per-node timeout",
    )
    workflow_timeout_ms: int = env_field(
        300000,
        "WORKFLOW_TIMEOUT_MS",
        description="Wall clock budget for a whole run, checked between nodes",
    )
    node_max_retries: int = env_field(0, "WORKFLOW_NODE_MAX_RETRIES")
    node_backoff_ms: int = env_field(1000, "WORKFLOW_NODE_BACKOFF_MS")
    strict_scheduling: bool = env_field(
        True,
        "WORKFLOW_STRICT_SCHEDULING",
        description="Fail the run when nodes remain unordered after scheduling",
    )

    # Collaborators
    completion_api_key: str | None = env_field(None, "COMPLETION_API_KEY")
    completion_base_url: str = env_field(
        "https://api.openai.com/v1", "COMPLETION_BASE_URL"
    )
    completion_timeout: float = env_field(30.0, "COMPLETION_TIMEOUT")
    web_search_provider: WebSearchProvider = env_field(
        WebSearchProvider.STUB, "WEB_SEARCH_PROVIDER"
    )
    web_search_api_key: str | None = env_field(None, "WEB_SEARCH_API_KEY")
    web_search_base_url: str = env_field(
        "https://api.search.brave.com/res/v1", "WEB_SEARCH_BASE_URL"
    )
    web_search_timeout: float = env_field(15.0, "WEB_SEARCH_TIMEOUT")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use deterministic stub collaborators",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("web_search_provider", mode="before")
    @classmethod
    def _validate_search_provider(cls, value: Any) -> WebSearchProvider:
        if isinstance(value, str):
            value = value.strip().lower()
        return WebSearchProvider(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator("node_max_retries")
    @classmethod
    def _cap_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("node_max_retries must be >= 0")
        if value > 3:
            logger.warning("node_max_retries_capped", requested=value, cap=3)
            return 3
        return value

    @field_validator("node_timeout_ms", "max_node_timeout_ms", "workflow_timeout_ms")
    @classmethod
    def _positive_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
