"""
Configuration management for the TDD cycle metrics hook.

This module provides centralized configuration with:
- Local storage locations for the log, cycle state and diagnostics
- Langfuse backend credentials read from the standard LANGFUSE_* variables
- Remote publisher retry, timeout and circuit breaker tuning
- Hook output and logging preferences
"""

import logging
from functools import lru_cache
from typing import Optional, Dict, Any
from pathlib import Path

from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path("~/.claude/logs")
DEFAULT_STATE_DIR = Path("~/.claude/state")


def _expand(value) -> str:
    return str(Path(value).expanduser())


class StorageSettings(BaseSettings):
    """Local file locations."""

    model_config = SettingsConfigDict(
        env_prefix="TDD_METRICS_STORAGE__", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    log_file: str = Field(
        default=str(DEFAULT_LOG_DIR / "tdd-cycle.jsonl"),
        description="Append-only cycle log (system of record)",
    )
    state_file: str = Field(
        default=str(DEFAULT_STATE_DIR / "tdd-cycle-state.json"),
        description="Per-branch cycle state",
    )
    circuit_file: str = Field(
        default=str(DEFAULT_STATE_DIR / "tdd-publish-circuit.json"),
        description="Remote publisher circuit breaker state",
    )
    diagnostics_file: str = Field(
        default=str(DEFAULT_LOG_DIR / "tdd-cycle-publish.log"),
        description="Best-effort diagnostic trail for remote publishing",
    )
    fsync: bool = Field(default=True, description="fsync the log after every append")
    remembered_hashes: int = Field(
        default=200, ge=1, description="Processed commit hashes kept for de-duplication"
    )

    @field_validator("log_file", "state_file", "circuit_file", "diagnostics_file")
    @classmethod
    def expand_user_path(cls, v):
        if not v or not str(v).strip():
            raise ValueError("Path cannot be empty")
        return _expand(v)


class CycleSettings(BaseSettings):
    """Cycle state store locking."""

    model_config = SettingsConfigDict(
        env_prefix="TDD_METRICS_CYCLE__", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    lock_timeout_seconds: float = Field(
        default=2.0, ge=0, description="Give up on the state lock after this long"
    )
    lock_poll_interval: float = Field(
        default=0.05, gt=0, description="Delay between lock attempts"
    )


class LangfuseSettings(BaseSettings):
    """Langfuse backend credentials (LANGFUSE_HOST, LANGFUSE_PUBLIC_KEY, LANGFUSE_SECRET_KEY)."""

    model_config = SettingsConfigDict(
        env_prefix="LANGFUSE_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    host: Optional[str] = Field(default=None, description="Langfuse base URL")
    public_key: Optional[str] = Field(default=None, description="Langfuse public key")
    secret_key: Optional[SecretStr] = Field(default=None, description="Langfuse secret key")
    trace_name: str = Field(default="tdd-cycle", description="Trace name used for commits")

    @field_validator("host")
    @classmethod
    def validate_host(cls, v):
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            # An unusable host leaves remote publishing disabled.
            logger.warning(f"Ignoring LANGFUSE_HOST {v!r}: must be an HTTP/HTTPS URL")
            return None
        return v.rstrip("/")

    @field_validator("public_key")
    @classmethod
    def blank_key_is_missing(cls, v):
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def is_configured(self) -> bool:
        return bool(
            self.host
            and self.public_key
            and self.secret_key is not None
            and self.secret_key.get_secret_value()
        )


class PublisherSettings(BaseSettings):
    """Remote publisher retry and circuit breaker settings."""

    model_config = SettingsConfigDict(
        env_prefix="TDD_METRICS_PUBLISHER__", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    enabled: bool = Field(default=True, description="Allow remote publishing at all")
    max_attempts: int = Field(default=3, ge=1, le=10, description="Delivery attempts per record")
    timeout_seconds: float = Field(default=5.0, gt=0, description="Per-attempt timeout")
    backoff_base_seconds: float = Field(default=0.5, ge=0, description="First retry delay")
    backoff_max_seconds: float = Field(default=8.0, ge=0, description="Retry delay cap")
    failure_threshold: int = Field(
        default=5, ge=1, description="Consecutive failed publishes before the circuit opens"
    )
    cooldown_seconds: float = Field(
        default=300.0, ge=0, description="How long an open circuit blocks publishing"
    )


class HookSettings(BaseSettings):
    """Post-commit hook output."""

    model_config = SettingsConfigDict(
        env_prefix="TDD_METRICS_HOOK__", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    show_warnings: bool = Field(default=True, description="Print stage warnings on stderr")
    announce_cycles: bool = Field(default=True, description="Print a notice when a cycle closes")


class MonitoringSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TDD_METRICS_MONITORING__", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    log_level: str = Field(default="WARNING", description="Logging level")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class Settings(BaseSettings):
    """
    Main settings for the TDD cycle metrics hook.

    Nested groups are overridden with TDD_METRICS_<GROUP>__<FIELD>, for
    example TDD_METRICS_STORAGE__LOG_FILE or TDD_METRICS_PUBLISHER__MAX_ATTEMPTS.
    Langfuse credentials use the standard LANGFUSE_* variables.
    """

    app_name: str = Field(default="tdd-cycle-metrics", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")

    storage: StorageSettings = Field(default_factory=StorageSettings)
    cycle: CycleSettings = Field(default_factory=CycleSettings)
    langfuse: LangfuseSettings = Field(default_factory=LangfuseSettings)
    publisher: PublisherSettings = Field(default_factory=PublisherSettings)
    hook: HookSettings = Field(default_factory=HookSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    model_config = SettingsConfigDict(
        env_prefix="TDD_METRICS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @property
    def remote_enabled(self) -> bool:
        return self.publisher.enabled and self.langfuse.is_configured


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings.

    Example:
        >>> settings = get_settings()
        >>> print(settings.storage.log_file)
    """
    return Settings()


def export_config(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Export configuration for display.

    Returns:
        Dict[str, Any]: Configuration export without credentials
    """
    settings = settings or get_settings()
    return {
        "app_name": settings.app_name,
        "version": settings.version,
        "storage": {
            "log_file": settings.storage.log_file,
            "state_file": settings.storage.state_file,
            "circuit_file": settings.storage.circuit_file,
            "diagnostics_file": settings.storage.diagnostics_file,
            "fsync": settings.storage.fsync,
        },
        "cycle": {
            "lock_timeout_seconds": settings.cycle.lock_timeout_seconds,
        },
        "langfuse": {
            "host": settings.langfuse.host,
            "public_key_set": bool(settings.langfuse.public_key),
            "secret_key_set": settings.langfuse.secret_key is not None,
            "configured": settings.langfuse.is_configured,
        },
        "publisher": {
            "enabled": settings.publisher.enabled,
            "remote_enabled": settings.remote_enabled,
            "max_attempts": settings.publisher.max_attempts,
            "timeout_seconds": settings.publisher.timeout_seconds,
            "backoff_base_seconds": settings.publisher.backoff_base_seconds,
            "failure_threshold": settings.publisher.failure_threshold,
            "cooldown_seconds": settings.publisher.cooldown_seconds,
        },
        "monitoring": {
            "log_level": settings.monitoring.log_level,
        },
    }
