from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from schoolgate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/schoolgate", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Sync Redis client and runtime reset helpers for the test suite.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "TOKEN_TTL_MINUTES",
        description="Lifetime of issued bearer tokens",
    )

    # OTP login
    otp_ttl_seconds: int = env_field(100, "OTP_TTL_SECONDS")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_debug_log: bool = env_field(
        False,
        "OTP_DEBUG_LOG",
        description="Log issued codes from the SMS stub (development only)",
    )
    otp_phone_requests_per_window: int = env_field(3, "OTP_PHONE_REQUESTS_PER_WINDOW")
    otp_phone_window_seconds: int = env_field(15 * 60, "OTP_PHONE_WINDOW_SECONDS")
    otp_ip_requests_per_minute: int = env_field(100, "OTP_IP_REQUESTS_PER_MINUTE")

    # Password login
    login_ip_attempts_per_minute: int = env_field(100, "LOGIN_IP_ATTEMPTS_PER_MINUTE")
    login_max_failed_attempts: int = env_field(3, "LOGIN_MAX_FAILED_ATTEMPTS")
    login_lockout_minutes: int = env_field(30, "LOGIN_LOCKOUT_MINUTES")

    # Caching
    principal_cache_ttl_seconds: int = env_field(
        300,
        "PRINCIPAL_CACHE_TTL_SECONDS",
        description="TTL for cached principals; bounds how long a deactivated account stays usable",
    )
    parent_child_cache_ttl_seconds: int = env_field(300, "PARENT_CHILD_CACHE_TTL_SECONDS")
    parent_child_cache_empty: bool = env_field(
        False,
        "PARENT_CHILD_CACHE_EMPTY",
        description="Cache empty child sets instead of re-reading the store every request",
    )
    local_cache_ttl_seconds: int = env_field(60, "LOCAL_CACHE_TTL_SECONDS")
    rate_limit_sweep_interval_seconds: int = env_field(
        5 * 60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )
    upload_limit_sweep_interval_seconds: int = env_field(
        10 * 60, "UPLOAD_LIMIT_SWEEP_INTERVAL_SECONDS"
    )

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # No generated fallback: every process must share the configured secret
        if not value or not str(value).strip():
            logger.error("jwt_secret_missing")
            raise ValueError("JWT_SECRET must be set")
        return str(value)

    @field_validator(
        "otp_ttl_seconds",
        "otp_max_attempts",
        "token_ttl_minutes",
        "local_cache_ttl_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
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
