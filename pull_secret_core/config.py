"""
Centralized configuration management for the pull secret core engine.

This module provides a unified configuration system with support for:
- Environment variables
- Database connection, lock, adapter, pool and rotation tuning
- Validation using Pydantic
"""

import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import EnvironmentVariable, LogLevel


def _env_int(name: EnvironmentVariable, default: int) -> int:
    return int(os.getenv(name.value, str(default)))


def _env_float(name: EnvironmentVariable, default: float) -> float:
    return float(os.getenv(name.value, str(default)))


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    connection_string: str = Field(
        default_factory=lambda: os.getenv(
            EnvironmentVariable.DATABASE_URL.value, "sqlite:///./pull_secrets.db"
        ),
        repr=False,
        description="SQLAlchemy URL; PostgreSQL in production, a SQLite file in development",
    )
    pool_size: int = Field(default=5, ge=1, description="Connection pool size")
    max_overflow: int = Field(default=10, ge=0, description="Maximum overflow connections")
    pool_timeout: int = Field(default=30, gt=0, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL statements")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.LOG_LEVEL.value, LogLevel.INFO.value),
        description="Logging level",
    )
    enable_logs_queue: bool = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.ENABLE_LOGS_QUEUE.value, "false").lower()
        == "true",
        description="Send structured log entries to the logs queue",
    )
    queue_connection_string: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.AZURE_STORAGE_CONNECTION.value, ""),
        description="Azure Storage connection string for the logs queue",
    )

    @field_validator("level")
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {level.value for level in LogLevel}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


class LockConfig(BaseModel):
    """Per-cluster lease lock tuning."""

    lease_seconds: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.LOCK_LEASE_SECONDS, 60),
        gt=0,
        description="How long a lease stays valid without renewal",
    )
    wait_timeout_seconds: float = Field(
        default_factory=lambda: _env_float(EnvironmentVariable.LOCK_WAIT_TIMEOUT_SECONDS, 10.0),
        ge=0,
        description="Bounded wait before LockContentionError",
    )
    poll_interval_seconds: float = Field(default=0.1, gt=0, description="Acquire retry interval")


class AdapterHttpConfig(BaseModel):
    """HTTP behaviour shared by all registry adapters."""

    timeout_seconds: float = Field(
        default_factory=lambda: _env_float(EnvironmentVariable.ADAPTER_TIMEOUT_SECONDS, 5.0),
        gt=0,
        description="Per-request timeout",
    )
    max_attempts: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.ADAPTER_MAX_ATTEMPTS, 3),
        ge=1,
        description="Attempts per adapter call before AdapterUnavailableError",
    )
    retry_backoff_base: float = Field(default=0.5, ge=0, description="Base backoff (seconds)")
    retry_backoff_max: float = Field(default=10.0, ge=0, description="Maximum backoff (seconds)")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1, description="Backoff multiplier")


class PoolConfig(BaseModel):
    """Spare credential pool watermarks."""

    high_water_mark: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.POOL_HIGH_WATER_MARK, 100), ge=0
    )
    low_water_mark: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.POOL_LOW_WATER_MARK, 25), ge=0
    )
    batch_size: int = Field(
        default_factory=lambda: _env_int(EnvironmentVariable.POOL_BATCH_SIZE, 10), ge=1
    )
    reconcile_interval_seconds: int = Field(default=60, gt=0)

    @model_validator(mode="after")
    def validate_watermarks(self) -> "PoolConfig":
        if self.low_water_mark > self.high_water_mark:
            raise ValueError("low_water_mark must not exceed high_water_mark")
        return self


class RotationConfig(BaseModel):
    """Rotation state machine tuning."""

    grace_period_hours: float = Field(
        default_factory=lambda: _env_float(EnvironmentVariable.ROTATION_GRACE_PERIOD_HOURS, 24 * 7),
        ge=0,
        description="Overlap window before superseded credentials are deleted",
    )
    max_attempts: int = Field(default=5, ge=1, description="Retryable failures before failed")
    reconcile_interval_seconds: int = Field(default=300, gt=0)


class SecurityConfig(BaseModel):
    """Security-related configuration."""

    encryption_key: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.CREDENTIAL_ENCRYPTION_KEY.value, ""),
        description="Symmetric key handed to the database encryption hook",
    )


class AppConfig(BaseModel):
    """Main application configuration."""

    environment: str = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.APP_ENV.value, "development"),
        description="Application environment",
    )
    registry_config_path: Optional[str] = Field(
        default_factory=lambda: os.getenv(EnvironmentVariable.REGISTRY_CONFIG_PATH.value),
        description="JSON document describing the configured registries",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    adapter: AdapterHttpConfig = Field(default_factory=AdapterHttpConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    custom: Dict[str, Any] = Field(default_factory=dict, description="Custom configuration values")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create configuration from environment variables."""
        return cls()

    def get_custom(self, key: str, default: Any = None) -> Any:
        """Get a custom configuration value."""
        return self.custom.get(key, default)


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration instance."""
    global _config
    _config = None
