"""
Pydantic schemas for credentials and the pull secret document.

Secret material only ever appears in ``ExternalAccount.secret`` and inside
the encoded ``auth`` values of a ``PullSecretDocument``; both are excluded
from repr so they cannot leak through logging of model instances.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import POOL_CLOUD_PROVIDER, POOL_REGION, CredentialState
from ..utils.json_utils import canonical_dumps


class OwnerContext(BaseModel):
    """Context an external account is created for (a cluster or the pool)."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    cluster_id: Optional[str] = Field(None, max_length=255, description="Owning cluster")
    cloud_provider: str = Field(..., min_length=1, description="Cloud provider, e.g. gcp")
    region: str = Field(..., min_length=1, description="Cloud region, e.g. us-east-1")
    external_resource_id: Optional[str] = Field(
        None, max_length=100, description="Short discriminator for long owner ids"
    )

    @property
    def is_placeholder(self) -> bool:
        return self.cluster_id is None

    @classmethod
    def pool_placeholder(cls) -> "OwnerContext":
        """Non-cluster-specific context used for speculative pool accounts."""
        return cls(cluster_id=None, cloud_provider=POOL_CLOUD_PROVIDER, region=POOL_REGION)


class ClusterContext(OwnerContext):
    """Owner context for a concrete cluster."""

    cluster_id: str = Field(..., min_length=1, max_length=255, description="Owning cluster")

    @field_validator("cluster_id")
    @classmethod
    def validate_cluster_id(cls, v):
        if not v or v.isspace():
            raise ValueError("cluster_id cannot be empty or whitespace")
        return v


class ExternalAccount(BaseModel):
    """Account as returned by a registry adapter; never persisted by the adapter."""

    model_config = ConfigDict(frozen=True)

    external_name: str = Field(..., min_length=1, description="Name as known to the registry")
    secret: str = Field(..., min_length=1, repr=False, description="Token or password")
    description: Optional[str] = Field(None, description="Registry-side label, if any")
    deleted: bool = Field(default=False, description="Soft-deleted on the registry side")


class CredentialRead(BaseModel):
    """Credential row without its secret, with the derived state tag."""

    id: str = Field(..., description="Credential ID")
    registry_id: str = Field(..., description="Owning registry")
    external_name: str = Field(..., description="External account name")
    owner_cluster_id: Optional[str] = Field(None, description="Owning cluster, null for pool")
    external_resource_id: Optional[str] = Field(None, description="Owner discriminator")
    rotation_request_id: Optional[str] = Field(None, description="Creating rotation, if any")
    state: CredentialState = Field(..., description="Derived: current, retiring or pool")
    context: Optional[Dict[str, Any]] = Field(None, description="Creation context")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    model_config = ConfigDict(from_attributes=True)


class AuthEntry(BaseModel):
    """One hostname entry of a pull secret."""

    model_config = ConfigDict(frozen=True)

    auth: str = Field(..., repr=False, description="base64(external_name:secret)")


class PullSecretDocument(BaseModel):
    """
    Portable auth document handed to cluster tooling.

    Shape is identical across registry variants:
    ``{"auths": {hostname: {"auth": "<base64>"}}}``.
    """

    model_config = ConfigDict(frozen=True)

    auths: Dict[str, AuthEntry] = Field(default_factory=dict, repr=False)

    @property
    def hostnames(self):
        return sorted(self.auths)

    def to_dict(self) -> Dict[str, Any]:
        return {"auths": {host: {"auth": entry.auth} for host, entry in self.auths.items()}}

    def to_json(self) -> str:
        """Deterministic serialization; repeated calls are byte-identical."""
        return canonical_dumps(self.to_dict())
