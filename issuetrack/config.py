from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from issuetrack.logging import get_logger

logger = get_logger(__name__)


class AppEnv(str, Enum):
    """Deployment environments that change cookie and error-detail behavior."""

    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the issue tracker API."""

    database_url: str = env_field(
        "postgresql://localhost:5432/issuetrack", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis connection for shared rate limit counters; unset keeps counters in-process",
    )
    shared_fs_root: str = env_field("/srv/issuetrack", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Fall back to in-process rate limits when REDIS_URL is set but unreachable",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enable deterministic behaviors relied on by the test suite",
    )
    app_env: AppEnv = env_field(AppEnv.DEVELOPMENT, "APP_ENV")
    build_sha: str = env_field("dev", "BUILD_SHA")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    refresh_token_secret: str = env_field(
        None, "REFRESH_TOKEN_SECRET", validate_default=True
    )
    jwt_issuer: str = env_field("issuetrack", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        description="Refresh token lifetime; also used as the refresh cookie max-age",
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit: int = env_field(
        5, "AUTH_RATE_LIMIT", description="Login/register attempts per window"
    )
    api_rate_limit: int = env_field(100, "API_RATE_LIMIT")
    public_rate_limit: int = env_field(200, "PUBLIC_RATE_LIMIT")
    rate_limit_sweep_interval_seconds: int = env_field(
        5 * 60, "RATE_LIMIT_SWEEP_INTERVAL_SECONDS"
    )

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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
        return self.app_env == AppEnv.PRODUCTION

    @field_validator("app_env", mode="before")
    @classmethod
    def _normalize_env(cls, value: Any) -> AppEnv:
        if isinstance(value, str):
            return AppEnv(value.strip().lower())
        return AppEnv(value)

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", "refresh_token_secret", mode="before")
    @classmethod
    def _require_secret(cls, value: str | None, info) -> str:
        # Signing secrets are never generated; a missing one aborts startup.
        if value is None or not str(value).strip():
            logger.error("signing_secret_missing", setting=info.field_name)
            raise ValueError(f"{info.field_name.upper()} must be set")
        return str(value)

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "max_login_attempts",
        "lockout_duration_minutes",
        "rate_limit_window_seconds",
        "auth_rate_limit",
        "api_rate_limit",
        "public_rate_limit",
        "rate_limit_sweep_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: int, info) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
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
