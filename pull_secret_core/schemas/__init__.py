from .credential_schemas import (
    AuthEntry,
    ClusterContext,
    CredentialRead,
    ExternalAccount,
    OwnerContext,
    PullSecretDocument,
)
from .registry_schemas import RegistryCatalog, RegistryConfig, load_registry_catalog
from .rotation_schemas import RotationRead

__all__ = [
    "AuthEntry",
    "ClusterContext",
    "CredentialRead",
    "ExternalAccount",
    "OwnerContext",
    "PullSecretDocument",
    "RegistryCatalog",
    "RegistryConfig",
    "load_registry_catalog",
    "RotationRead",
]
