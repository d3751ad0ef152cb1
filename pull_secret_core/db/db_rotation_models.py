"""
Rotation request model.

Just the data structure - the state machine lives in the rotation service.
"""

from sqlalchemy import Boolean, Column, Index, Integer, String, Text

from .db_base import Base, TimestampMixin, UTCDateTime, UUIDMixin


class RotationRequest(Base, UUIDMixin, TimestampMixin):
    """One in-flight or finished credential rotation for a cluster."""

    __tablename__ = "rotation_requests"

    cluster_id = Column(String(255), nullable=False, index=True)

    # Cluster context needed to create replacement accounts
    cloud_provider = Column(String(50), nullable=True)
    region = Column(String(100), nullable=True)
    external_resource_id = Column(String(100), nullable=True)

    status = Column(String(20), nullable=False, default="pending")
    reason = Column(String(20), nullable=False, default="scheduled")
    force_immediate = Column(Boolean, nullable=False, default=False)

    # Equals cluster_id while pending/in_progress, null once terminal.
    # The unique constraint allows one active request per cluster.
    active_cluster_id = Column(String(255), nullable=True, unique=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    started_at = Column(UTCDateTime, nullable=True)
    confirmed_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (Index("ix_rotation_status_lookup", "status", "created_at"),)
