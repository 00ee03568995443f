from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from edenauth.logging import get_logger

logger = get_logger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when the process cannot start with the supplied configuration."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings for the storefront auth service."""

    environment: str = env_field("development", "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable test-only hooks such as runtime resets.",
    )

    # Token signing
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("eden-perfume", "JWT_ISSUER")
    jwt_audience: str = env_field("eden-perfume-users", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Access token lifetime in minutes (7 days)",
    )
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token and session lifetime in minutes (30 days)",
    )

    # Lockout
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")

    # Argon2id cost; defaults take roughly as long as bcrypt cost 12
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="Memory cost in KiB"
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")

    # Storage
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str | None = env_field(
        None,
        "STATE_DIR",
        description="Directory for memory store snapshots; unset keeps state in memory only",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/eden_perfume", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(2, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_connect_timeout_seconds: int = env_field(10, "DB_CONNECT_TIMEOUT_SECONDS")
    db_pool_timeout_seconds: float = env_field(5.0, "DB_POOL_TIMEOUT_SECONDS")
    db_statement_timeout_ms: int = env_field(45000, "DB_STATEMENT_TIMEOUT_MS")

    # Rate limiting
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    signin_rate_limit: int = env_field(5, "SIGNIN_RATE_LIMIT")
    signin_rate_window_seconds: int = env_field(15 * 60, "SIGNIN_RATE_WINDOW_SECONDS")
    signup_rate_limit: int = env_field(3, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(60 * 60, "SIGNUP_RATE_WINDOW_SECONDS")

    # Background sweep of expired sessions
    session_cleanup_enabled: bool = env_field(True, "SESSION_CLEANUP_ENABLED")
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS"
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

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @field_validator("jwt_secret")
    @classmethod
    def _strip_jwt_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("redis_url", "state_dir")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()

    def require_jwt_secret(self) -> str:
        """Return the signing secret or refuse to continue without one."""
        if not self.jwt_secret:
            logger.error("jwt_secret_missing")
            raise ConfigurationError(
                "JWT_SECRET must be set; refusing to start without a signing secret"
            )
        if len(self.jwt_secret) < 32:
            logger.warning("jwt_secret_short", length=len(self.jwt_secret))
        return self.jwt_secret


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
