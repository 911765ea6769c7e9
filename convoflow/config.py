from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from convoflow.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the workflow engine and its collaborators."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Use the in-process backing store instead of Redis (single instance only)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: stub AI backend, in-memory fallbacks.",
    )
    default_tenant_id: str | None = env_field(None, "DEFAULT_TENANT_ID")

    # Execution context store
    workflow_state_ttl_seconds: int = env_field(
        3600,
        "WORKFLOW_STATE_TTL_SECONDS",
        description="Sliding TTL of a persisted conversation continuation",
    )

    # Distributed execution lock
    lock_ttl_seconds: int = env_field(30, "WORKFLOW_LOCK_TTL_SECONDS")
    lock_retries: int = env_field(5, "WORKFLOW_LOCK_RETRIES")
    lock_wait_ms: int = env_field(200, "WORKFLOW_LOCK_WAIT_MS")

    # Loop / runaway guard
    max_visits_per_node: int = env_field(10, "WORKFLOW_MAX_VISITS_PER_NODE")
    max_total_nodes: int = env_field(100, "WORKFLOW_MAX_TOTAL_NODES")
    max_execution_time_ms: int = env_field(300_000, "WORKFLOW_MAX_EXECUTION_TIME_MS")

    # Per-node policy
    max_node_timeout_ms: int = env_field(
        120_000,
        "WORKFLOW_MAX_NODE_TIMEOUT_MS",
        description="Hard cap applied to node config.timeout",
    )
    node_retry_backoff_ms: int = env_field(1000, "WORKFLOW_NODE_RETRY_BACKOFF_MS")

    # Outbound HTTP (API-call action)
    http_connect_timeout: float = env_field(10.0, "HTTP_CONNECT_TIMEOUT")
    http_total_timeout: float = env_field(30.0, "HTTP_TOTAL_TIMEOUT")
    http_allowlist: list[str] = env_field(
        [],
        "HTTP_ALLOWLIST",
        description="Optional host allowlist (hostname, *.wildcard, or CIDR); empty allows any public host",
    )
    http_proxy_url: str | None = env_field(None, "HTTP_PROXY_URL")

    # AI capability
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    ai_model: str = env_field("gpt-4o-mini", "AI_MODEL")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Convoflow", "EMAIL_FROM_NAME")

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

    @field_validator("http_allowlist", mode="before")
    @classmethod
    def _split_allowlist(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return list(value)

    @field_validator(
        "workflow_state_ttl_seconds",
        "lock_ttl_seconds",
        "lock_retries",
        "max_visits_per_node",
        "max_total_nodes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
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
