from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CacheBackend(str, Enum):
    """Where recovery snapshots and override records are kept."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseModel):
    """Tunables for the session reconciliation engine."""

    # Identity provider
    provider_url: str = env_field("http://localhost:54321", "AUTH_PROVIDER_URL")
    provider_api_key: str | None = env_field(None, "AUTH_PROVIDER_API_KEY")
    http_timeout_seconds: float = env_field(10.0, "AUTH_HTTP_TIMEOUT_SECONDS")
    provider_max_attempts: int = env_field(
        3,
        "AUTH_PROVIDER_MAX_ATTEMPTS",
        description="Attempts per provider call before ProviderUnavailable",
    )
    provider_backoff_base_ms: int = env_field(250, "AUTH_PROVIDER_BACKOFF_BASE_MS")

    # Profile store
    profile_table: str = env_field("profiles", "PROFILE_TABLE")
    profile_max_attempts: int = env_field(
        3,
        "PROFILE_MAX_ATTEMPTS",
        description="ensure_profile attempts before a fallback profile is used",
    )
    profile_backoff_base_ms: int = env_field(500, "PROFILE_BACKOFF_BASE_MS")
    profile_backoff_factor: float = env_field(2.0, "PROFILE_BACKOFF_FACTOR")
    profile_backoff_jitter: bool = env_field(False, "PROFILE_BACKOFF_JITTER")

    # State machine timing
    safety_timeout_seconds: float = env_field(
        10.0,
        "SAFETY_TIMEOUT_SECONDS",
        description="Upper bound on initialize() before the recovery path runs",
    )
    recovery_read_timeout_seconds: float = env_field(1.0, "RECOVERY_READ_TIMEOUT_SECONDS")
    event_debounce_seconds: float = env_field(1.0, "EVENT_DEBOUNCE_SECONDS")

    # Caches
    recovery_cache_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "RECOVERY_CACHE_TTL_SECONDS",
        description="Max age of a recovery snapshot; 0 or negative disables the cutoff",
    )
    signup_metadata_ttl_seconds: int = env_field(24 * 60 * 60, "SIGNUP_METADATA_TTL_SECONDS")
    cache_backend: CacheBackend = env_field(CacheBackend.MEMORY, "CACHE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    state_dir: str | None = env_field(
        None,
        "AUTHSYNC_STATE_DIR",
        description="Directory for file persistence of the memory backend",
    )
    cache_encryption_key: str | None = env_field(None, "CACHE_ENCRYPTION_KEY")
    key_namespace: str = env_field("authsync", "KEY_NAMESPACE")

    # Break-glass admin override
    admin_override_max_hours: float = env_field(24.0, "ADMIN_OVERRIDE_MAX_HOURS")
    admin_override_approvers: str = env_field(
        "",
        "ADMIN_OVERRIDE_APPROVERS",
        description="Comma separated identities allowed to approve an override",
    )
    admin_override_fallback_dir: str | None = env_field(
        None,
        "ADMIN_OVERRIDE_FALLBACK_DIR",
        description="Directory of the file store holding the second override copy; "
        "defaults to <state_dir>/admin_override",
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

    @field_validator("cache_backend")
    @classmethod
    def _validate_cache_backend(cls, value: CacheBackend) -> CacheBackend:
        return CacheBackend(value)

    @field_validator(
        "provider_max_attempts",
        "profile_max_attempts",
    )
    @classmethod
    def _ensure_positive_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("attempt counts must be at least 1")
        return value

    @field_validator(
        "http_timeout_seconds",
        "safety_timeout_seconds",
        "recovery_read_timeout_seconds",
        "admin_override_max_hours",
    )
    @classmethod
    def _ensure_positive_duration(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("event_debounce_seconds", "profile_backoff_base_ms", "provider_backoff_base_ms")
    @classmethod
    def _ensure_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @property
    def recovery_cache_ttl(self) -> int | None:
        """TTL in seconds, or None when staleness is unlimited."""
        if self.recovery_cache_ttl_seconds <= 0:
            return None
        return self.recovery_cache_ttl_seconds

    @property
    def approvers(self) -> list[str]:
        return [a.lower() for a in parse_csv(self.admin_override_approvers)]


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
