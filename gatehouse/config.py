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
    """Runtime settings read from the environment and an optional ``.env`` file."""

    app_base_url: str = env_field(
        "http://localhost:4000",
        "APPLICATION_URL",
        description="Public base URL; OAuth callbacks resolve under /auth/oauth/callback",
    )
    allowed_origin: str = env_field(
        "http://localhost:3000",
        "ALLOWED_ORIGIN",
        description="Frontend origin for CORS and post-OAuth redirects",
    )
    # Session transport
    session_name: str = env_field("session", "SESSION_NAME")
    session_ttl_minutes: int = env_field(60 * 24 * 30, "SESSION_TTL_MINUTES")
    session_secure: bool = env_field(False, "SESSION_SECURE")
    session_domain: str | None = env_field(None, "SESSION_DOMAIN")
    # Storage
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_root: str | None = env_field(
        None,
        "MEMORY_STORE_ROOT",
        description="Directory for the memory store snapshot; unset keeps state in process only",
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/gatehouse", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    # OAuth providers
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_scopes: list[str] = env_field(["email", "profile"], "GOOGLE_SCOPES")
    yandex_client_id: str | None = env_field(None, "YANDEX_CLIENT_ID")
    yandex_client_secret: str | None = env_field(None, "YANDEX_CLIENT_SECRET")
    yandex_scopes: list[str] = env_field(
        ["login:email", "login:avatar", "login:info"], "YANDEX_SCOPES"
    )
    oauth_timeout_seconds: float = env_field(30.0, "OAUTH_TIMEOUT_SECONDS")
    oauth_link_by_email: bool = env_field(
        False,
        "OAUTH_LINK_BY_EMAIL",
        description="Attach a first-time OAuth identity to an existing account with the same email",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatehouse", "EMAIL_FROM_NAME")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow in-memory fallbacks for sessions without Redis",
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

    @field_validator("google_scopes", "yandex_scopes", mode="before")
    @classmethod
    def _split_scopes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [scope.strip() for scope in value.split(",") if scope.strip()]
        return value

    @field_validator("app_base_url", "allowed_origin")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("session_ttl_minutes")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("session_ttl_minutes must be positive")
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
