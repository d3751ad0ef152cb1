"""Pydantic schemas for rotation requests."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import RotationReason, RotationStatus
from ..db.db_base import as_utc


class RotationRead(BaseModel):
    """Schema for reading a rotation request."""

    id: str = Field(..., description="Rotation ID")
    cluster_id: str = Field(..., description="Cluster being rotated")
    status: RotationStatus = Field(..., description="State machine position")
    reason: RotationReason = Field(..., description="Why the rotation was started")
    force_immediate: bool = Field(default=False, description="Skip the grace period")
    attempt_count: int = Field(default=0, description="Retryable failures so far")
    last_error: Optional[str] = Field(None, description="Last failure message")
    started_at: Optional[datetime] = Field(None, description="Entered in_progress")
    confirmed_at: Optional[datetime] = Field(None, description="Health confirmation received")
    completed_at: Optional[datetime] = Field(None, description="Reached a terminal state")
    created_at: datetime = Field(..., description="Creation timestamp")
    updated_at: datetime = Field(..., description="Last update timestamp")

    model_config = ConfigDict(from_attributes=True)

    @field_validator("started_at", "confirmed_at", "completed_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v):
        """SQLite hands back naive datetimes; every stored timestamp is UTC."""
        return as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status in (RotationStatus.PENDING, RotationStatus.IN_PROGRESS)
