from .db_base import (
    Base,
    JSONDocument,
    TimestampMixin,
    UTCDateTime,
    UUIDMixin,
    as_utc,
    utc_now,
)
from .db_config import DatabaseManager, import_all_models, parse_database_url
from .db_credential_models import RegistryCredential
from .db_lock_models import ClusterLock
from .db_rotation_models import RotationRequest

__all__ = [
    "Base",
    "JSONDocument",
    "TimestampMixin",
    "UTCDateTime",
    "UUIDMixin",
    "as_utc",
    "utc_now",
    "DatabaseManager",
    "import_all_models",
    "parse_database_url",
    "RegistryCredential",
    "ClusterLock",
    "RotationRequest",
]
