"""
Lease table backing the cross-process cluster lock.

A row exists while a lock is held; an expired row may be taken over by
another holder, so a crashed process never blocks a cluster forever.
"""

from sqlalchemy import Column, Integer, String

from .db_base import Base, UTCDateTime, utc_now


class ClusterLock(Base):
    """Lease held on an arbitrary lock key."""

    __tablename__ = "cluster_locks"

    lock_key = Column(String(300), primary_key=True)
    holder = Column(String(100), nullable=False)
    acquired_at = Column(UTCDateTime, nullable=False, default=utc_now)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    # Successful acquisitions of this key, kept for contention monitoring
    acquisition_count = Column(Integer, nullable=False, default=1)
