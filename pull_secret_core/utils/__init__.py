"""Utility modules for the pull secret core engine."""

from .backoff_utils import calculate_exponential_backoff
from .crud_helpers import (
    count_records,
    create_record,
    delete_record,
    get_record,
    get_record_by_id,
    list_records,
    update_record,
)
from .encryption_utils import decrypt_secret, decrypt_value, encrypt_secret, encrypt_value
from .json_utils import canonical_dumps, dumps, loads
from .logger import (
    AzureQueueHandler,
    ClusterContextFilter,
    ContextAwareLogger,
    configure_logging,
    get_logger,
)

__all__ = [
    "calculate_exponential_backoff",
    "count_records",
    "create_record",
    "delete_record",
    "get_record",
    "get_record_by_id",
    "list_records",
    "update_record",
    "decrypt_secret",
    "decrypt_value",
    "encrypt_secret",
    "encrypt_value",
    "canonical_dumps",
    "dumps",
    "loads",
    "AzureQueueHandler",
    "ClusterContextFilter",
    "ContextAwareLogger",
    "configure_logging",
    "get_logger",
]
