"""
Cross-process lock manager backed by the ``cluster_locks`` lease table.

A lock is a row keyed by an arbitrary string. Acquisition either inserts the
row or takes over a row whose lease has expired; release deletes the row
only while this holder still owns it. Because the lease expires on its own,
a crashed replica can never block a key forever.
"""

import os
import socket
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Generator, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..config import LockConfig
from ..db.db_base import as_utc, utc_now
from ..db.db_lock_models import ClusterLock
from ..exceptions import LockContentionError
from ..utils.logger import get_logger


def cluster_lock_key(cluster_id: str) -> str:
    """Lock key shared by every operation that writes a cluster's credentials."""
    return f"cluster:{cluster_id}"


def pool_lock_key(registry_id: str) -> str:
    """Lock key held by the replica replenishing a registry's pool."""
    return f"pool:{registry_id}"


def _new_holder_id() -> str:
    host = socket.gethostname()[:60]
    return f"{host}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


class LockLease:
    """A held lease. Obtained from ``LockManager.acquire``."""

    def __init__(self, manager: "LockManager", key: str, holder: str, expires_at: datetime):
        self.manager = manager
        self.key = key
        self.holder = holder
        self.expires_at = expires_at
        self.released = False

    def renew(self) -> None:
        """
        Extend the lease by another lease period.

        Raises:
            LockContentionError: The lease expired and was taken over
        """
        self.expires_at = self.manager._renew(self)

    def __repr__(self) -> str:
        return f"LockLease(key={self.key!r}, holder={self.holder!r}, expires_at={self.expires_at})"


class LockManager:
    """
    Per-key mutual exclusion across every replica sharing the database.

    Each acquisition attempt uses its own short-lived session so lease rows
    are committed independently of the caller's unit of work.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: Optional[LockConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.config = config or LockConfig()
        self.logger = get_logger()
        self._sleep = sleep

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(seconds=self.config.lease_seconds)

    @contextmanager
    def acquire(
        self, key: str, wait_timeout: Optional[float] = None
    ) -> Generator[LockLease, None, None]:
        """
        Hold ``key`` for the duration of the ``with`` block.

        Waits up to ``wait_timeout`` seconds (default from config) and then
        fails; release happens on every exit path.

        Raises:
            LockContentionError: The key stayed held past the bounded wait
        """
        timeout = self.config.wait_timeout_seconds if wait_timeout is None else wait_timeout
        deadline = time.monotonic() + timeout
        holder = _new_holder_id()
        attempts = 0

        while True:
            attempts += 1
            lease = self.try_acquire(key, holder)
            if lease is not None:
                break
            if time.monotonic() >= deadline:
                raise LockContentionError(
                    f"Lock {key} is held by another operation",
                    lock_key=key,
                    wait_timeout_seconds=timeout,
                    attempts=attempts,
                )
            self._sleep(self.config.poll_interval_seconds)

        self.logger.debug(
            "Acquired lock", extra={"lock_key": key, "holder": holder, "attempts": attempts}
        )
        try:
            yield lease
        finally:
            self.release(lease)

    def try_acquire(self, key: str, holder: Optional[str] = None) -> Optional[LockLease]:
        """Single non-blocking acquisition attempt; None when the key is held."""
        holder = holder or _new_holder_id()
        now = utc_now()
        expires_at = now + self.lease_duration

        with self.session_factory() as session:
            try:
                session.add(
                    ClusterLock(lock_key=key, holder=holder, acquired_at=now, expires_at=expires_at)
                )
                session.commit()
                return LockLease(self, key, holder, expires_at)
            except IntegrityError:
                session.rollback()
            except OperationalError as e:
                # Write contention on the lock table itself; treat as held
                session.rollback()
                self.logger.debug(
                    "Lock insert contended", extra={"lock_key": key, "error": str(e)}
                )
                return None

            try:
                taken_over = session.execute(
                    update(ClusterLock)
                    .where(ClusterLock.lock_key == key, ClusterLock.expires_at < now)
                    .values(
                        holder=holder,
                        acquired_at=now,
                        expires_at=expires_at,
                        acquisition_count=ClusterLock.acquisition_count + 1,
                    )
                ).rowcount
                session.commit()
            except OperationalError as e:
                session.rollback()
                self.logger.debug(
                    "Lock takeover contended", extra={"lock_key": key, "error": str(e)}
                )
                return None

        if taken_over:
            self.logger.warning(
                "Took over expired lock lease", extra={"lock_key": key, "holder": holder}
            )
            return LockLease(self, key, holder, expires_at)
        return None

    def _renew(self, lease: LockLease) -> datetime:
        expires_at = utc_now() + self.lease_duration
        with self.session_factory() as session:
            renewed = session.execute(
                update(ClusterLock)
                .where(ClusterLock.lock_key == lease.key, ClusterLock.holder == lease.holder)
                .values(expires_at=expires_at)
            ).rowcount
            session.commit()

        if not renewed:
            raise LockContentionError(
                f"Lease on {lease.key} was lost before renewal",
                lock_key=lease.key,
                holder=lease.holder,
            )
        return expires_at

    def release(self, lease: LockLease) -> bool:
        """
        Release a lease if this holder still owns it.

        Failures are logged rather than raised; the lease then simply expires.
        """
        if lease.released:
            return False
        lease.released = True

        try:
            with self.session_factory() as session:
                deleted = session.execute(
                    delete(ClusterLock).where(
                        ClusterLock.lock_key == lease.key, ClusterLock.holder == lease.holder
                    )
                ).rowcount
                session.commit()
        except Exception as e:
            self.logger.error(
                "Failed to release lock; lease will expire",
                extra={"lock_key": lease.key, "holder": lease.holder, "error": str(e)},
            )
            return False

        if not deleted:
            self.logger.warning(
                "Lock was no longer held at release",
                extra={"lock_key": lease.key, "holder": lease.holder},
            )
            return False

        self.logger.debug("Released lock", extra={"lock_key": lease.key, "holder": lease.holder})
        return True

    def is_locked(self, key: str) -> bool:
        with self.session_factory() as session:
            row = session.get(ClusterLock, key)
            return row is not None and as_utc(row.expires_at) > utc_now()

    def cleanup_expired_locks(self) -> int:
        """Delete expired lease rows; returns how many were removed."""
        with self.session_factory() as session:
            deleted = session.execute(
                delete(ClusterLock).where(ClusterLock.expires_at < utc_now())
            ).rowcount
            session.commit()

        if deleted:
            self.logger.info("Cleaned up expired locks", extra={"expired_locks_cleaned": deleted})
        return deleted
