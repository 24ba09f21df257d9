from __future__ import annotations

import os
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)

# Defaults mirror a typical deployment: one day of inactivity, five minute
# write-back, one hour ledger retention (roughly one bearer-token lifetime).
DEFAULT_INACTIVITY_TIMEOUT_SECONDS = 24 * 60 * 60
DEFAULT_WRITE_THROTTLE_SECONDS = 5 * 60
DEFAULT_LOGOUT_TTL_SECONDS = 60 * 60
DEFAULT_SESSIONS_NAMESPACE = "user_sessions"
DEFAULT_LOGOUTS_NAMESPACE = "user_logouts"
DEFAULT_MAX_RETRIES = 1
DEFAULT_CLIENT_TIMEOUT_SECONDS = 10.0
DEFAULT_LOGOUT_ENDPOINT = "/auth/logout"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service and its client helpers."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Fall back to the in-memory document store when Redis is unreachable.",
    )

    # Session engine
    inactivity_timeout_seconds: int = env_field(
        DEFAULT_INACTIVITY_TIMEOUT_SECONDS, "INACTIVITY_TIMEOUT_SECONDS"
    )
    write_throttle_seconds: float = env_field(
        DEFAULT_WRITE_THROTTLE_SECONDS,
        "WRITE_THROTTLE_SECONDS",
        description="Interval between batched activity writes to the durable store",
    )
    sessions_namespace: str = env_field(DEFAULT_SESSIONS_NAMESPACE, "SESSIONS_NAMESPACE")
    logouts_namespace: str = env_field(DEFAULT_LOGOUTS_NAMESPACE, "LOGOUTS_NAMESPACE")
    logout_ttl_seconds: int = env_field(
        DEFAULT_LOGOUT_TTL_SECONDS,
        "LOGOUT_TTL_SECONDS",
        description="Retention for logout records; storage hygiene only",
    )
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    warmup_on_startup: bool = env_field(True, "WARMUP_ON_STARTUP")

    # Token verification
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("sessionguard", "JWT_ISSUER")
    jwt_audience: str = env_field("sessionguard-clients", "JWT_AUDIENCE")
    token_leeway_seconds: int = env_field(120, "TOKEN_LEEWAY_SECONDS")
    skip_token_verification: bool = env_field(
        False,
        "SKIP_TOKEN_VERIFICATION",
        description="Development only: accept any bearer token as the mock subject",
    )
    mock_subject_id: str = env_field("dev-user", "MOCK_SUBJECT_ID")

    # Client helpers
    client_max_retries: int = env_field(DEFAULT_MAX_RETRIES, "CLIENT_MAX_RETRIES")
    client_timeout_seconds: float = env_field(
        DEFAULT_CLIENT_TIMEOUT_SECONDS, "CLIENT_TIMEOUT_SECONDS"
    )
    logout_endpoint: str = env_field(DEFAULT_LOGOUT_ENDPOINT, "LOGOUT_ENDPOINT")

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

    @field_validator(
        "inactivity_timeout_seconds",
        "write_throttle_seconds",
        "logout_ttl_seconds",
        "store_timeout_seconds",
        "client_timeout_seconds",
    )
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("client_max_retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("client_max_retries cannot be negative")
        return value

    @model_validator(mode="after")
    def _require_secret(self) -> "Settings":
        if not self.skip_token_verification and not self.jwt_secret:
            raise ValueError(
                "JWT_SECRET must be set unless SKIP_TOKEN_VERIFICATION is enabled"
            )
        if self.skip_token_verification:
            logger.warning("token_verification_disabled", mock_subject_id=self.mock_subject_id)
        return self

    @property
    def inactivity_timeout(self) -> timedelta:
        return timedelta(seconds=self.inactivity_timeout_seconds)

    @property
    def logout_ttl(self) -> timedelta:
        return timedelta(seconds=self.logout_ttl_seconds)


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
