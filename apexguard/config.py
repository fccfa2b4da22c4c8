from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Deployment environments; only development logs audit events verbosely."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class KeystoreBackend(str, Enum):
    """Where durable client-side values (refresh tokens, device id) live."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_POSITIVE_INT_FIELDS = (
    "access_token_expiry_seconds",
    "refresh_token_expiry_seconds",
    "session_timeout_seconds",
    "max_login_attempts",
    "login_attempt_window_seconds",
    "rate_limit_window_seconds",
    "default_rate_limit_attempts",
    "min_password_length",
    "session_sweep_interval_seconds",
)


class Settings(BaseModel):
    """Runtime settings for the session/rate-limit/CSRF core."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "APP_ENV")

    # Token and session lifetimes
    access_token_expiry_seconds: int = env_field(
        15 * 60, "ACCESS_TOKEN_EXPIRY", description="Hard session lifetime"
    )
    refresh_token_expiry_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_EXPIRY"
    )
    session_timeout_seconds: int = env_field(
        30 * 60, "SESSION_TIMEOUT", description="Inactivity timeout"
    )
    session_sweep_interval_seconds: int = env_field(60, "SESSION_SWEEP_INTERVAL")

    # Rate limiting
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    login_attempt_window_seconds: int = env_field(15 * 60, "LOGIN_ATTEMPT_WINDOW")
    rate_limit_window_seconds: int = env_field(60, "RATE_LIMIT_WINDOW")
    default_rate_limit_attempts: int = env_field(5, "RATE_LIMIT_MAX_ATTEMPTS")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Key per-IP limits on X-Forwarded-For instead of the peer address",
    )

    # Password policy
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")
    require_uppercase: bool = env_field(True, "REQUIRE_UPPERCASE")
    require_lowercase: bool = env_field(True, "REQUIRE_LOWERCASE")
    require_numbers: bool = env_field(True, "REQUIRE_NUMBERS")
    require_special_chars: bool = env_field(True, "REQUIRE_SPECIAL_CHARS")

    # Collaborators
    keystore_backend: KeystoreBackend = env_field(KeystoreBackend.MEMORY, "KEYSTORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    security_monitoring_url: str | None = env_field(None, "SECURITY_MONITORING_URL")

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

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("keystore_backend", mode="before")
    @classmethod
    def _validate_keystore_backend(cls, value: Any) -> KeystoreBackend:
        if isinstance(value, str):
            value = value.strip().lower()
        return KeystoreBackend(value)

    @field_validator(*_POSITIVE_INT_FIELDS)
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT


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
