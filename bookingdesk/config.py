from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the operations console backend."""

    database_url: str | None = env_field(
        None,
        "DATABASE_URL",
        description="Postgres DSN for booking and site tables; unset keeps records in memory",
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    state_path: str | None = env_field(
        None,
        "STATE_PATH",
        description="JSON file persisting identities, roles, factors and local tables",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    session_ttl_minutes: int = env_field(720, "SESSION_TTL_MINUTES", ge=1)
    login_flow_ttl_minutes: int = env_field(
        15,
        "LOGIN_FLOW_TTL_MINUTES",
        ge=1,
        description="How long a login left in an MFA step is kept before it is discarded",
    )
    min_password_length: int = env_field(6, "MIN_PASSWORD_LENGTH", ge=1)

    mfa_issuer: str = env_field("BookingDesk", "MFA_ISSUER")
    mfa_challenge_ttl_seconds: int = env_field(300, "MFA_CHALLENGE_TTL_SECONDS", ge=30)
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Fernet key used to encrypt TOTP secrets at rest",
    )

    booking_limit: int = env_field(500, "BOOKING_LIMIT", ge=1, le=5000)
    site_cache_ttl_seconds: int = env_field(300, "SITE_CACHE_TTL_SECONDS", ge=0)
    notify_webhook_url: str | None = env_field(None, "NOTIFY_WEBHOOK_URL")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:5173"], "CORS_ALLOW_ORIGINS"
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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "database_url", "redis_url", "notify_webhook_url", "mfa_secret_key", "state_path"
    )
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


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
