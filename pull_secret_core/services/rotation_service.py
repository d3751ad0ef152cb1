"""
Rotation reconciler.

Drives each rotation request through its state machine:

    pending -> in_progress -> completed
        \\            \\
         +-> failed    +-> failed

Entering ``in_progress`` means a full replacement set exists (one new row
per rotated registry, tagged with the request id) while the old rows stay
valid. The overlap window closes when the request is forced, confirmed or
its grace period elapses; only then are superseded rows deleted, externally
first. Every step is idempotent so an interrupted pass can resume at any
state.
"""

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import RotationConfig
from ..constants import RotationReason, RotationStatus
from ..context.operation_context import cluster_scope, operation
from ..db.db_base import as_utc, utc_now
from ..db.db_credential_models import RegistryCredential
from ..db.db_rotation_models import RotationRequest
from ..exceptions import (
    BaseError,
    ErrorCode,
    InvariantViolationError,
    LockContentionError,
    NotFoundError,
    RotationConflictError,
    ServiceError,
    not_found,
)
from ..schemas.credential_schemas import ClusterContext
from ..schemas.registry_schemas import RegistryCatalog
from ..schemas.rotation_schemas import RotationRead
from ..utils.logger import get_logger
from .access_token_service import AccessTokenService
from .credential_store import CredentialStore
from .lock_service import LockLease, LockManager, cluster_lock_key

# Stored when a request predates provider/region context
_UNKNOWN_CONTEXT = "unknown"


class RotationService:
    """Starts rotations and advances them from a periodic reconciliation pass."""

    def __init__(
        self,
        session: Session,
        catalog: RegistryCatalog,
        access_token_service: AccessTokenService,
        lock_manager: LockManager,
        config: Optional[RotationConfig] = None,
        store: Optional[CredentialStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.catalog = catalog
        self.access_token_service = access_token_service
        self.lock_manager = lock_manager
        self.config = config or RotationConfig()
        self.store = store or access_token_service.store
        self.logger = get_logger()
        self._clock = clock

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=self.config.grace_period_hours)

    @staticmethod
    def _to_read(rotation: RotationRequest) -> RotationRead:
        return RotationRead.model_validate(rotation)

    # Caller-facing operations

    @operation(name="rotation.start_rotation")
    def start_rotation(
        self,
        cluster: ClusterContext,
        reason: RotationReason = RotationReason.MANUAL,
        force_immediate: bool = False,
    ) -> RotationRead:
        """
        Create a pending rotation for the cluster.

        Raises:
            RotationConflictError: A rotation is already pending or in progress
            InvariantViolationError: More than one active rotation was found
            LockContentionError: The cluster lock stayed busy
        """
        with cluster_scope(cluster.cluster_id):
            with self.lock_manager.acquire(cluster_lock_key(cluster.cluster_id)):
                active = self.store.list_active_rotations(cluster.cluster_id)
                if len(active) > 1:
                    raise InvariantViolationError(
                        f"Cluster {cluster.cluster_id} has {len(active)} active rotations",
                        cluster_id=cluster.cluster_id,
                        rotation_ids=[rotation.id for rotation in active],
                    )
                if active:
                    raise RotationConflictError(
                        f"Rotation {active[0].id} is already active for cluster {cluster.cluster_id}",
                        cluster_id=cluster.cluster_id,
                        rotation_id=active[0].id,
                    )
                rotation = self.store.create_rotation_request(cluster, reason, force_immediate)

            return self._to_read(rotation)

    def get_rotation_status(self, rotation_id: str) -> RotationRead:
        """Raises NotFoundError when the rotation does not exist."""
        return self._to_read(self.store.get_rotation_request(rotation_id))

    def list_rotations(self, cluster_id: str) -> List[RotationRead]:
        return [self._to_read(rotation) for rotation in self.store.list_rotations(cluster_id)]

    @operation(name="rotation.confirm_rotation")
    def confirm_rotation(self, rotation_id: str) -> RotationRead:
        """
        Record the external health confirmation that new credentials work.

        The overlap window then closes on the next reconciliation pass
        without waiting for the grace period. Only an in-progress rotation
        has replacement credentials that can be confirmed.

        Raises:
            ServiceError: The rotation is pending or already finished
        """
        rotation = self.store.get_rotation_request(rotation_id)
        if rotation.status == RotationStatus.PENDING.value:
            raise ServiceError(
                f"Rotation {rotation_id} has no replacement credentials to confirm yet",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                operation="confirm_rotation",
                rotation_id=rotation_id,
                status=rotation.status,
            )
        if rotation.status not in RotationStatus.active():
            raise ServiceError(
                f"Rotation {rotation_id} is already {rotation.status}",
                error_code=ErrorCode.INVALID_STATE_TRANSITION,
                operation="confirm_rotation",
                rotation_id=rotation_id,
                status=rotation.status,
            )
        if rotation.confirmed_at is None:
            rotation = self.store.save_rotation_request(rotation, confirmed_at=self._clock())
        return self._to_read(rotation)

    # Reconciliation

    @operation(name="rotation.reconcile")
    def reconcile(self) -> Dict[str, int]:
        """
        One pass over every pending and in-progress request.

        Returns:
            Counters for the pass
        """
        stats = {
            "examined": 0,
            "advanced": 0,
            "completed": 0,
            "failed": 0,
            "skipped": 0,
            "invariant_violations": 0,
        }

        by_cluster: Dict[str, List[RotationRequest]] = defaultdict(list)
        for rotation in self.store.list_active_rotations():
            by_cluster[rotation.cluster_id].append(rotation)

        for cluster_id, rotations in by_cluster.items():
            stats["examined"] += len(rotations)

            if len(rotations) > 1:
                self._fail_overlapping(cluster_id, rotations)
                stats["invariant_violations"] += 1
                stats["failed"] += len(rotations)
                continue

            rotation = rotations[0]
            before = rotation.status
            try:
                status = self.advance(rotation)
            except LockContentionError:
                stats["skipped"] += 1
                continue
            except InvariantViolationError:
                self.store.save_rotation_request(
                    rotation, status=RotationStatus.FAILED, last_error="Invariant violation"
                )
                stats["invariant_violations"] += 1
                stats["failed"] += 1
                continue

            if status.value != before:
                stats["advanced"] += 1
            if status == RotationStatus.COMPLETED:
                stats["completed"] += 1
            elif status == RotationStatus.FAILED:
                stats["failed"] += 1

        if stats["examined"]:
            self.logger.info("Rotation reconciliation pass finished", extra=stats)
        return stats

    def _fail_overlapping(self, cluster_id: str, rotations: List[RotationRequest]) -> None:
        error = InvariantViolationError(
            f"Cluster {cluster_id} has {len(rotations)} active rotations",
            cluster_id=cluster_id,
            rotation_ids=[rotation.id for rotation in rotations],
        )
        for rotation in rotations:
            self.store.save_rotation_request(
                rotation, status=RotationStatus.FAILED, last_error=error.message
            )

    def advance(self, rotation: RotationRequest) -> RotationStatus:
        """
        Move one request forward as far as it can go right now.

        Runs under the cluster lock and loops until no further transition
        applies (for example a forced rotation goes from pending straight to
        completed in one call).

        Raises:
            LockContentionError: The cluster lock stayed busy
        """
        with cluster_scope(rotation.cluster_id):
            with self.lock_manager.acquire(cluster_lock_key(rotation.cluster_id)) as lease:
                self.store.session.refresh(rotation)

                previous = None
                while rotation.status != previous and rotation.status in RotationStatus.active():
                    previous = rotation.status
                    if rotation.status == RotationStatus.PENDING.value:
                        self._create_replacements(rotation, lease)
                    else:
                        self._retire_superseded(rotation, lease)

            return RotationStatus(rotation.status)

    def _cluster_context(self, rotation: RotationRequest) -> ClusterContext:
        return ClusterContext(
            cluster_id=rotation.cluster_id,
            cloud_provider=rotation.cloud_provider or _UNKNOWN_CONTEXT,
            region=rotation.region or _UNKNOWN_CONTEXT,
            external_resource_id=rotation.external_resource_id,
        )

    def _rotated_registry_ids(self, rotation: RotationRequest) -> List[str]:
        """Configured registries the cluster holds credentials for."""
        held = {c.registry_id for c in self.store.list_cluster_credentials(rotation.cluster_id)}
        return [registry_id for registry_id in self.catalog.ids if registry_id in held]

    def _rotation_row(
        self, rotation: RotationRequest, registry_id: str
    ) -> Optional[RegistryCredential]:
        rows = [
            credential
            for credential in self.store.list_cluster_credentials(rotation.cluster_id, registry_id)
            if credential.rotation_request_id == rotation.id
        ]
        return rows[-1] if rows else None

    def _create_replacements(self, rotation: RotationRequest, lease: LockLease) -> None:
        """pending -> in_progress: one new credential per rotated registry."""
        registry_ids = self._rotated_registry_ids(rotation)
        if not registry_ids:
            self._fail(rotation, not_found("RegistryCredential", cluster_id=rotation.cluster_id))
            return

        cluster = self._cluster_context(rotation)
        created = 0
        try:
            for index, registry_id in enumerate(registry_ids):
                if index:
                    lease.renew()
                if self._rotation_row(rotation, registry_id) is not None:
                    continue
                self.access_token_service.create_credential(
                    cluster, self.catalog.get(registry_id), rotation_request_id=rotation.id
                )
                created += 1
        except InvariantViolationError:
            raise
        except BaseError as e:
            self._record_failure(rotation, e)
            return

        self.store.save_rotation_request(
            rotation,
            status=RotationStatus.IN_PROGRESS,
            started_at=self._clock(),
            last_error=None,
        )
        self.logger.info(
            "Rotation replacement credentials in place",
            extra={
                "rotation_id": rotation.id,
                "cluster_id": rotation.cluster_id,
                "registries": len(registry_ids),
                "credentials_created": created,
            },
        )

    def _overlap_closed(self, rotation: RotationRequest) -> bool:
        if rotation.force_immediate:
            return True
        started_at = as_utc(rotation.started_at) or as_utc(rotation.created_at)
        confirmed_at = as_utc(rotation.confirmed_at)
        # A confirmation recorded before the replacements existed confirms nothing
        if confirmed_at is not None and confirmed_at >= started_at:
            return True
        return self._clock() >= started_at + self.grace_period

    def _retire_superseded(self, rotation: RotationRequest, lease: LockLease) -> None:
        """in_progress -> completed: delete rows older than the rotation's rows."""
        if not self._overlap_closed(rotation):
            return

        deleted = 0
        try:
            for registry_id in self._rotated_registry_ids(rotation):
                replacement = self._rotation_row(rotation, registry_id)
                if replacement is None:
                    continue
                current = self.store.get_current(rotation.cluster_id, registry_id)
                superseded = self.store.list_superseded(
                    rotation.cluster_id, registry_id, replacement.created_at
                )
                for credential in superseded:
                    if current is not None and credential.id == current.id:
                        raise InvariantViolationError(
                            "Current credential is older than its rotation replacement",
                            cluster_id=rotation.cluster_id,
                            registry_id=registry_id,
                            credential_id=credential.id,
                        )
                    lease.renew()
                    self._delete_superseded(credential)
                    deleted += 1
        except InvariantViolationError:
            raise
        except BaseError as e:
            self._record_failure(rotation, e)
            return

        self.store.save_rotation_request(rotation, status=RotationStatus.COMPLETED, last_error=None)
        self.logger.info(
            "Rotation completed",
            extra={
                "rotation_id": rotation.id,
                "cluster_id": rotation.cluster_id,
                "credentials_retired": deleted,
            },
        )

    def _delete_superseded(self, credential: RegistryCredential) -> None:
        adapter = self.access_token_service.adapter_for(credential.registry_id)
        try:
            adapter.delete_account(credential.external_name)
        except NotFoundError:
            self.logger.warning(
                "Superseded external account already absent",
                extra={
                    "credential_id": credential.id,
                    "registry_id": credential.registry_id,
                    "external_name": credential.external_name,
                },
            )
        self.store.delete_credential(credential.id)

    def _record_failure(self, rotation: RotationRequest, error: BaseError) -> None:
        """Retryable errors count against max_attempts; anything else fails at once."""
        attempts = (rotation.attempt_count or 0) + 1
        if error.retryable and attempts < self.config.max_attempts:
            self.store.save_rotation_request(
                rotation, attempt_count=attempts, last_error=error.message
            )
            self.logger.warning(
                "Rotation step failed, will retry",
                extra={
                    "rotation_id": rotation.id,
                    "cluster_id": rotation.cluster_id,
                    "attempt_count": attempts,
                    "max_attempts": self.config.max_attempts,
                    "error_code": error.error_code.value,
                },
            )
            return

        self.store.save_rotation_request(rotation, attempt_count=attempts)
        self._fail(rotation, error)

    def _fail(self, rotation: RotationRequest, error: BaseError) -> None:
        self.store.save_rotation_request(
            rotation, status=RotationStatus.FAILED, last_error=error.message
        )
        self.logger.error(
            "Rotation failed; existing credentials left in place",
            extra={
                "rotation_id": rotation.id,
                "cluster_id": rotation.cluster_id,
                "error_code": error.error_code.value,
            },
        )

    def run_periodically(self, stop_event: threading.Event) -> None:
        """Run reconciliation passes until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                self.reconcile()
            except Exception:
                self.logger.exception("Rotation reconciliation pass failed")
            stop_event.wait(self.config.reconcile_interval_seconds)
