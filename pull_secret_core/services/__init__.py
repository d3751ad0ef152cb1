"""
Service layer for the credential lifecycle engine.

- LockManager: cross-process per-key leases
- CredentialStore: credential and rotation-request persistence
- AccessTokenService: find-or-create pull secrets per cluster
- RotationService: dual-credential rotation state machine
- PoolService: spare credential pool between watermarks
"""

from .access_token_service import AccessTokenService, encode_auth, format_pull_secret
from .credential_store import CredentialStore
from .lock_service import LockLease, LockManager, cluster_lock_key, pool_lock_key
from .pool_service import PoolService
from .rotation_service import RotationService

__all__ = [
    "AccessTokenService",
    "encode_auth",
    "format_pull_secret",
    "CredentialStore",
    "LockLease",
    "LockManager",
    "cluster_lock_key",
    "pool_lock_key",
    "PoolService",
    "RotationService",
]
