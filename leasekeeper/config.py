from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, model_validator

from leasekeeper.logging import get_logger

logger = get_logger(__name__)

# Idle-timeout choices offered to clients, filtered to the configured bounds.
IDLE_TIMEOUT_OPTIONS = (5, 10, 15, 30, 45, 60)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the lease core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/leasekeeper", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Shared failed-validation counters; in-process tracking when unset",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic behaviors for tests",
    )
    allow_redis_fallback_dev: bool = env_field(
        False,
        "ALLOW_REDIS_FALLBACK_DEV",
        description="Continue with in-process failure tracking if Redis is unreachable",
    )
    # Lease clocks
    lease_max_duration_minutes: int = env_field(
        60,
        "LEASE_MAX_DURATION_MINUTES",
        description="Absolute lease lifetime from creation; never extended",
        gt=0,
    )
    idle_timeout_default_minutes: int = env_field(
        30, "IDLE_TIMEOUT_DEFAULT_MINUTES", gt=0
    )
    idle_timeout_min_minutes: int = env_field(5, "IDLE_TIMEOUT_MIN_MINUTES", gt=0)
    idle_timeout_max_minutes: int = env_field(60, "IDLE_TIMEOUT_MAX_MINUTES", gt=0)
    activity_min_interval_seconds: int = env_field(
        30,
        "ACTIVITY_MIN_INTERVAL_SECONDS",
        description="Activity signals closer together than this are not persisted",
        ge=0,
    )
    # Background reclamation
    sweeper_enabled: bool = env_field(True, "SWEEPER_ENABLED")
    sweeper_interval_seconds: int = env_field(300, "SWEEPER_INTERVAL_SECONDS", gt=0)
    sweeper_batch_size: int = env_field(500, "SWEEPER_BATCH_SIZE", gt=0)
    lease_retention_days: int = env_field(7, "LEASE_RETENTION_DAYS", ge=0)
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS", gt=0)
    # Failed validation lockout
    failed_validation_limit: int = env_field(5, "FAILED_VALIDATION_LIMIT", ge=1)
    failed_validation_window_seconds: int = env_field(
        300, "FAILED_VALIDATION_WINDOW_SECONDS", gt=0
    )
    failed_validation_cooldown_seconds: int = env_field(
        900, "FAILED_VALIDATION_COOLDOWN_SECONDS", gt=0
    )
    # Storage retries for idempotent operations
    storage_retry_attempts: int = env_field(3, "STORAGE_RETRY_ATTEMPTS", ge=1)
    storage_retry_backoff_ms: int = env_field(50, "STORAGE_RETRY_BACKOFF_MS", ge=0)
    # Secrets
    token_pepper: str | None = env_field(
        None,
        "TOKEN_PEPPER",
        description="HMAC key for token hashes; plain SHA-256 when unset",
    )
    issuer_api_key: str | None = env_field(
        None,
        "ISSUER_API_KEY",
        description="Shared key the authentication layer presents to issue leases",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the source address from X-Forwarded-For",
    )
    cors_allow_origins: str | None = env_field(
        None,
        "CORS_ALLOW_ORIGINS",
        description="Comma-separated origins allowed to call the API",
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

    @model_validator(mode="after")
    def _check_idle_bounds(self) -> "Settings":
        low = self.idle_timeout_min_minutes
        high = self.idle_timeout_max_minutes
        if low > high:
            raise ValueError(
                f"IDLE_TIMEOUT_MIN_MINUTES ({low}) exceeds IDLE_TIMEOUT_MAX_MINUTES ({high})"
            )
        if not low <= self.idle_timeout_default_minutes <= high:
            raise ValueError(
                f"IDLE_TIMEOUT_DEFAULT_MINUTES must be within [{low}, {high}]"
            )
        # Coalescing must leave room for at least one persisted signal per window
        if self.activity_min_interval_seconds >= low * 60:
            raise ValueError(
                f"ACTIVITY_MIN_INTERVAL_SECONDS ({self.activity_min_interval_seconds}) must be "
                f"shorter than IDLE_TIMEOUT_MIN_MINUTES ({low}) in seconds"
            )
        if high > self.lease_max_duration_minutes:
            logger.warning(
                "idle_window_exceeds_hard_cap",
                idle_timeout_max_minutes=high,
                lease_max_duration_minutes=self.lease_max_duration_minutes,
            )
        return self

    @property
    def idle_timeout_options(self) -> list[int]:
        low = self.idle_timeout_min_minutes
        high = self.idle_timeout_max_minutes
        return [value for value in IDLE_TIMEOUT_OPTIONS if low <= value <= high]


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
