"""
Registry credential model.

Just the data structure - no business logic or class methods. Whether a
row is current, retiring or a pool member is derived from
(owner_cluster_id, registry_id, max created_at) by the credential store.
"""

from sqlalchemy import Column, Index, LargeBinary, String

from .db_base import Base, JSONDocument, TimestampMixin, UUIDMixin


class RegistryCredential(Base, UUIDMixin, TimestampMixin):
    """One issued, externally-backed registry account."""

    __tablename__ = "registry_credentials"

    registry_id = Column(String(100), nullable=False)
    external_name = Column(String(300), nullable=False)
    secret = Column(LargeBinary, nullable=False)  # pgcrypto ciphertext on PostgreSQL

    # Null means unassigned pool member
    owner_cluster_id = Column(String(255), nullable=True)
    external_resource_id = Column(String(100), nullable=True)

    # Set on rows created by a rotation, used to resume without re-creating
    rotation_request_id = Column(String(36), nullable=True, index=True)

    # Non-sensitive creation context (provider, region, labels)
    context = Column(JSONDocument, nullable=True)

    __table_args__ = (
        Index("ix_credential_owner_lookup", "owner_cluster_id", "registry_id", "created_at"),
        Index("ix_credential_pool_lookup", "registry_id", "owner_cluster_id"),
    )
