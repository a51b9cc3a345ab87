from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_SESSION_COOKIE_NAME = "auth_session"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session and credential service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authsession", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep users and sessions in process memory instead of Postgres",
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    db_connect_timeout: float = env_field(
        10.0,
        "DB_CONNECT_TIMEOUT",
        description="Seconds to wait for a pooled Postgres connection",
    )
    session_ttl_minutes: int = env_field(
        24 * 60,
        "SESSION_TTL_MINUTES",
        description="Session lifetime; sessions past half of it are refreshed on use",
    )
    session_cookie_name: str = env_field(
        DEFAULT_SESSION_COOKIE_NAME, "SESSION_COOKIE_NAME"
    )
    session_cookie_secure: bool = env_field(
        True,
        "SESSION_COOKIE_SECURE",
        description="Send the session cookie only over HTTPS; disable for local http",
    )
    session_sweep_interval_seconds: int = env_field(
        0,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Period of the expired-session sweep; 0 disables it",
    )
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(8080, "PORT")

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

    @field_validator("session_ttl_minutes")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value < 2:
            raise ValueError("session_ttl_minutes must be at least 2")
        return value

    @field_validator("session_sweep_interval_seconds")
    @classmethod
    def _validate_sweep_interval(cls, value: int) -> int:
        if value < 0:
            raise ValueError("session_sweep_interval_seconds cannot be negative")
        return value

    @field_validator("session_cookie_name")
    @classmethod
    def _validate_cookie_name(cls, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            return DEFAULT_SESSION_COOKIE_NAME
        return cleaned

    @model_validator(mode="after")
    def _validate_pool_bounds(self) -> "Settings":
        if self.db_pool_min_size < 1 or self.db_pool_max_size < 1:
            raise ValueError("database pool sizes must be positive")
        if self.db_pool_min_size > self.db_pool_max_size:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")
        return self


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
