from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gymauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field("postgresql://localhost:5432/kranos_gym", "DATABASE_URL")
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str | None = env_field(None, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; permits generated secrets.",
    )
    dev_mode: bool = env_field(
        False,
        "DEV_MODE",
        description="Local development; permits generated secrets and insecure cookies.",
    )

    # Token signing
    access_token_secret: str | None = env_field(None, "JWT_SECRET")
    refresh_token_secret: str | None = env_field(None, "REFRESH_TOKEN_SECRET")
    jwt_issuer: str = env_field("kranos-gym", "JWT_ISSUER")
    jwt_audience: str = env_field("kranos-gym-users", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        120, "JWT_LEEWAY_SECONDS", description="Clock skew tolerated on exp checks"
    )
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    session_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "SESSION_TTL_MINUTES",
        description="Server-side session lifetime; matches the refresh token by default",
    )

    # Credentials and lockout
    bcrypt_rounds: int = env_field(12, "BCRYPT_ROUNDS")
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS")
    lockout_minutes: int = env_field(15, "LOCKOUT_MINUTES")
    session_cleanup_interval_seconds: int = env_field(
        3600, "SESSION_CLEANUP_INTERVAL_SECONDS"
    )

    # Request throttling
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = env_field(100, "RATE_LIMIT_MAX_REQUESTS")

    # HTTP surface
    api_prefix: str = env_field("/api", "API_PREFIX")
    login_path: str = env_field("/login", "LOGIN_PATH")
    unauthorized_path: str = env_field("/unauthorized", "UNAUTHORIZED_PATH")
    auth_cookie_name: str = env_field("auth-token", "AUTH_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh-token", "REFRESH_COOKIE_NAME")
    csrf_cookie_name: str = env_field("csrf-token", "CSRF_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

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
        # ACCESS_TOKEN_SECRET is accepted as an alias of JWT_SECRET
        if "access_token_secret" not in merged and os.environ.get("ACCESS_TOKEN_SECRET"):
            merged["access_token_secret"] = os.environ["ACCESS_TOKEN_SECRET"]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", "shared_fs_root", "access_token_secret", "refresh_token_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        return "/" + value.strip("/")

    @field_validator(
        "bcrypt_rounds",
        "max_failed_login_attempts",
        "lockout_minutes",
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "session_ttl_minutes",
        "session_cleanup_interval_seconds",
        "rate_limit_window_seconds",
        "rate_limit_max_requests",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _ensure_token_secrets(self) -> "Settings":
        for field_name in ("access_token_secret", "refresh_token_secret"):
            if getattr(self, field_name):
                continue
            if not self.relaxed_security:
                raise ValueError(
                    f"{field_name} is not set; configure JWT_SECRET and REFRESH_TOKEN_SECRET"
                )
            # Per-process secret: tokens do not survive a restart
            setattr(self, field_name, secrets.token_urlsafe(64))
            logger.warning("token_secret_generated", field=field_name)
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("access and refresh token secrets must differ")
        return self

    @property
    def relaxed_security(self) -> bool:
        return self.test_mode or self.dev_mode


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
