from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from coursegate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication and governance core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-memory fallbacks.",
    )
    jwt_secret: str = env_field(
        None,
        "JWT_SECRET",
        description="Signing secret for access tokens; always the newest secret.",
        validate_default=True,
    )
    jwt_previous_secrets: list[str] = env_field(
        [],
        "JWT_PREVIOUS_SECRETS",
        description="Comma separated secrets still accepted for verification during rotation.",
    )
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS")
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")
    rate_limit_default_capacity: int = env_field(60, "RATE_LIMIT_DEFAULT_CAPACITY")
    rate_limit_default_window_ms: int = env_field(60_000, "RATE_LIMIT_DEFAULT_WINDOW_MS")
    rate_limit_max_keys: int = env_field(
        100_000,
        "RATE_LIMIT_MAX_KEYS",
        description="Upper bound on in-memory rate limit buckets before LRU eviction.",
    )
    idempotency_ttl_seconds: int = env_field(24 * 60 * 60, "IDEMPOTENCY_TTL_SECONDS")
    idempotency_reject_inflight: bool = env_field(
        False,
        "IDEMPOTENCY_REJECT_INFLIGHT",
        description="Reject concurrent duplicates of an unfinished idempotent request with 409.",
    )
    identity_seed_file: str | None = env_field(None, "IDENTITY_SEED_FILE")
    audit_sink: str = env_field("log", "AUDIT_SINK")
    audit_max_events: int = env_field(10_000, "AUDIT_MAX_EVENTS")

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

    @property
    def token_secrets(self) -> list[str]:
        """Secrets accepted by the token codec, newest first."""
        return [self.jwt_secret, *self.jwt_previous_secrets]

    @field_validator("jwt_previous_secrets", mode="before")
    @classmethod
    def _split_secrets(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "session_ttl_days",
        "rate_limit_default_capacity",
        "rate_limit_default_window_ms",
        "rate_limit_max_keys",
        "idempotency_ttl_seconds",
        "audit_max_events",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("audit_sink")
    @classmethod
    def _validate_audit_sink(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"log", "redis"}:
            raise ValueError("AUDIT_SINK must be 'log' or 'redis'")
        return normalized

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; generated an ephemeral signing secret",
        )
        return secrets.token_urlsafe(64)


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
