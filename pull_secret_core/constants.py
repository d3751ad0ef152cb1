"""
Constants and enums for the pull secret core engine.

This module centralizes the magic strings used throughout the engine
to keep the storage values, configuration keys and log fields consistent.
"""

from enum import Enum


class RegistryVariant(str, Enum):
    """Account model of an external registry."""

    ROBOT_ACCOUNT = "robot_account"
    PARTNER_ACCOUNT = "partner_account"


class CredentialState(str, Enum):
    """Derived state of a credential row; never stored."""

    CURRENT = "current"
    RETIRING = "retiring"
    POOL = "pool"


class RotationStatus(str, Enum):
    """Lifecycle states of a rotation request."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def active(cls) -> tuple:
        return (cls.PENDING.value, cls.IN_PROGRESS.value)


class RotationReason(str, Enum):
    """Why a rotation was requested."""

    SCHEDULED = "scheduled"
    COMPROMISE = "compromise"
    MANUAL = "manual"


class LogLevel(str, Enum):
    """Standard logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class QueueName(str, Enum):
    """Queue names used for structured log output."""

    LOGS = "logs-queue"


class EnvironmentVariable(str, Enum):
    """Standard environment variable names."""

    AZURE_STORAGE_CONNECTION = "AzureWebJobsStorage"
    DATABASE_URL = "DATABASE_URL"
    APP_ENV = "APP_ENV"
    LOG_LEVEL = "LOG_LEVEL"
    ENABLE_LOGS_QUEUE = "ENABLE_LOGS_QUEUE"
    REGISTRY_CONFIG_PATH = "REGISTRY_CONFIG_PATH"
    CREDENTIAL_ENCRYPTION_KEY = "CREDENTIAL_ENCRYPTION_KEY"
    LOCK_LEASE_SECONDS = "LOCK_LEASE_SECONDS"
    LOCK_WAIT_TIMEOUT_SECONDS = "LOCK_WAIT_TIMEOUT_SECONDS"
    ADAPTER_TIMEOUT_SECONDS = "ADAPTER_TIMEOUT_SECONDS"
    ADAPTER_MAX_ATTEMPTS = "ADAPTER_MAX_ATTEMPTS"
    POOL_HIGH_WATER_MARK = "POOL_HIGH_WATER_MARK"
    POOL_LOW_WATER_MARK = "POOL_LOW_WATER_MARK"
    POOL_BATCH_SIZE = "POOL_BATCH_SIZE"
    ROTATION_GRACE_PERIOD_HOURS = "ROTATION_GRACE_PERIOD_HOURS"


# Robot-account naming grammar
ROBOT_NAME_MAX_LENGTH = 254
ROBOT_NAME_SEPARATOR = "_"
ROBOT_ORGANIZATION_SEPARATOR = "+"
DEFAULT_ROBOT_NAME_PREFIX = "hyperfleet"

# Partner-account naming
PARTNER_NAME_MAX_LENGTH = 49
PARTNER_ACCOUNT_SEPARATOR = "|"
DEFAULT_PARTNER_NAME_PREFIX = "hyp-cls-"
PARTNER_POOL_NAME_PREFIX = "hyp-pool-"

# Placeholder owner context for pool accounts
POOL_CLOUD_PROVIDER = "pool"
POOL_REGION = "unassigned"
