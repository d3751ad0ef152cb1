"""
Credential store: exclusive owner of credential and rotation-request rows.

Credentials are never mutated to rotate them. Several rows may exist per
(cluster, registry); the one with the latest ``created_at`` is current and
the rest are retiring. Rows with no owner are pool members. The state tag is
always derived here, never stored.
"""

from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import get_config
from ..constants import CredentialState, RotationReason, RotationStatus
from ..db.db_base import as_utc, utc_now
from ..db.db_credential_models import RegistryCredential
from ..db.db_rotation_models import RotationRequest
from ..exceptions import ErrorCode, RepositoryError, RotationConflictError, not_found
from ..schemas.credential_schemas import ClusterContext, CredentialRead
from ..utils.crud_helpers import (
    create_record,
    delete_record,
    get_record_by_id,
    list_records,
    update_record,
)
from ..utils.encryption_utils import decrypt_secret, encrypt_secret
from ..utils.logger import get_logger

# Candidates tried when concurrent claimers keep winning the same pool row
_CLAIM_ATTEMPTS = 5


class CredentialStore:
    """Persistence for credentials and rotation requests on one session."""

    def __init__(self, session: Session, encryption_key: Optional[str] = None):
        self.session = session
        self.encryption_key = (
            encryption_key if encryption_key is not None else get_config().security.encryption_key
        )
        self.logger = get_logger()

    @property
    def _is_postgres(self) -> bool:
        return self.session.bind.dialect.name == "postgresql"

    # Credentials

    def _next_created_at(self, cluster_id: Optional[str], registry_id: str):
        """
        Timestamp for a row that must become current for the pair.

        Bumps past the existing maximum so two rows never tie on created_at.
        """
        now = utc_now()
        if cluster_id is None:
            return now
        latest = self.get_current(cluster_id, registry_id)
        if latest is not None:
            latest_at = as_utc(latest.created_at)
            if latest_at >= now:
                return latest_at + timedelta(microseconds=1)
        return now

    def create_credential(
        self,
        registry_id: str,
        external_name: str,
        secret: str,
        owner_cluster_id: Optional[str] = None,
        external_resource_id: Optional[str] = None,
        rotation_request_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RegistryCredential:
        """Persist a new credential row; a null owner makes it a pool member."""
        created_at = self._next_created_at(owner_cluster_id, registry_id)
        data = {
            "registry_id": registry_id,
            "external_name": external_name,
            "secret": encrypt_secret(self.session, secret, self.encryption_key, registry_id),
            "owner_cluster_id": owner_cluster_id,
            "external_resource_id": external_resource_id,
            "rotation_request_id": rotation_request_id,
            "context": context,
            "created_at": created_at,
            "updated_at": created_at,
        }
        credential = create_record(self.session, RegistryCredential, data)

        self.logger.info(
            "Stored registry credential",
            extra={
                "credential_id": credential.id,
                "registry_id": registry_id,
                "external_name": external_name,
                "owner_cluster_id": owner_cluster_id,
                "rotation_request_id": rotation_request_id,
            },
        )
        return credential

    def get_credential(self, credential_id: str) -> RegistryCredential:
        credential = get_record_by_id(self.session, RegistryCredential, credential_id)
        if credential is None:
            raise not_found("RegistryCredential", credential_id=credential_id)
        return credential

    def get_current(self, cluster_id: str, registry_id: str) -> Optional[RegistryCredential]:
        """Latest row for (cluster, registry), or None."""
        return (
            self.session.query(RegistryCredential)
            .filter(
                RegistryCredential.owner_cluster_id == cluster_id,
                RegistryCredential.registry_id == registry_id,
            )
            .order_by(RegistryCredential.created_at.desc(), RegistryCredential.id.desc())
            .first()
        )

    def list_cluster_credentials(
        self, cluster_id: str, registry_id: Optional[str] = None
    ) -> List[RegistryCredential]:
        """Every row owned by the cluster, oldest first per registry."""
        query = self.session.query(RegistryCredential).filter(
            RegistryCredential.owner_cluster_id == cluster_id
        )
        if registry_id is not None:
            query = query.filter(RegistryCredential.registry_id == registry_id)
        return query.order_by(
            RegistryCredential.registry_id, RegistryCredential.created_at, RegistryCredential.id
        ).all()

    def list_superseded(
        self, cluster_id: str, registry_id: str, before
    ) -> List[RegistryCredential]:
        """Rows of the pair created strictly before ``before``."""
        return (
            self.session.query(RegistryCredential)
            .filter(
                RegistryCredential.owner_cluster_id == cluster_id,
                RegistryCredential.registry_id == registry_id,
                RegistryCredential.created_at < before,
            )
            .order_by(RegistryCredential.created_at)
            .all()
        )

    def credential_state(self, credential: RegistryCredential) -> CredentialState:
        if credential.owner_cluster_id is None:
            return CredentialState.POOL
        current = self.get_current(credential.owner_cluster_id, credential.registry_id)
        if current is not None and current.id == credential.id:
            return CredentialState.CURRENT
        return CredentialState.RETIRING

    def to_read(self, credential: RegistryCredential) -> CredentialRead:
        return CredentialRead(
            id=credential.id,
            registry_id=credential.registry_id,
            external_name=credential.external_name,
            owner_cluster_id=credential.owner_cluster_id,
            external_resource_id=credential.external_resource_id,
            rotation_request_id=credential.rotation_request_id,
            state=self.credential_state(credential),
            context=credential.context,
            created_at=as_utc(credential.created_at),
            updated_at=as_utc(credential.updated_at),
        )

    def get_secret(self, credential: RegistryCredential) -> str:
        secret = decrypt_secret(
            self.session, credential.secret, self.encryption_key, credential.registry_id
        )
        if secret is None:
            raise RepositoryError(
                "Credential secret could not be decrypted",
                error_code=ErrorCode.DATABASE_ERROR,
                credential_id=credential.id,
                registry_id=credential.registry_id,
            )
        return secret

    def delete_credential(self, credential_id: str) -> bool:
        deleted = delete_record(self.session, RegistryCredential, credential_id)
        if deleted:
            self.logger.info("Deleted registry credential", extra={"credential_id": credential_id})
        return deleted

    # Pool

    def _pool_query(self, registry_id: str):
        return self.session.query(RegistryCredential).filter(
            RegistryCredential.registry_id == registry_id,
            RegistryCredential.owner_cluster_id.is_(None),
        )

    def count_pool(self, registry_id: str) -> int:
        return self._pool_query(registry_id).count()

    def list_pool(self, registry_id: str) -> List[RegistryCredential]:
        return self._pool_query(registry_id).order_by(RegistryCredential.created_at).all()

    def claim_pool_credential(
        self,
        registry_id: str,
        cluster_id: str,
        external_resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        rotation_request_id: Optional[str] = None,
    ) -> Optional[RegistryCredential]:
        """
        Bind the oldest unassigned row of the registry to ``cluster_id``.

        The claim is a conditional update on ``owner_cluster_id IS NULL`` so
        two claimers never bind the same row; on PostgreSQL candidates are
        also picked with ``FOR UPDATE SKIP LOCKED``. The bound row gets a
        fresh ``created_at`` so it becomes current for the cluster.

        Returns:
            The bound credential, or None when the pool is empty
        """
        for _ in range(_CLAIM_ATTEMPTS):
            query = self._pool_query(registry_id).order_by(RegistryCredential.created_at)
            if self._is_postgres:
                query = query.with_for_update(skip_locked=True)
            candidate = query.first()
            if candidate is None:
                return None

            bound_at = self._next_created_at(cluster_id, registry_id)
            bound_context = {
                **(candidate.context or {}),
                **(context or {}),
                "pooled_at": as_utc(candidate.created_at).isoformat(),
            }
            try:
                claimed = self.session.execute(
                    update(RegistryCredential)
                    .where(
                        RegistryCredential.id == candidate.id,
                        RegistryCredential.owner_cluster_id.is_(None),
                    )
                    .values(
                        owner_cluster_id=cluster_id,
                        external_resource_id=external_resource_id,
                        rotation_request_id=rotation_request_id,
                        context=bound_context,
                        created_at=bound_at,
                        updated_at=bound_at,
                    )
                    .execution_options(synchronize_session=False)
                ).rowcount
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                raise RepositoryError(
                    f"Failed to claim pool credential: {str(e)}",
                    error_code=ErrorCode.DATABASE_ERROR,
                    cause=e,
                    registry_id=registry_id,
                ) from e

            if claimed:
                self.session.refresh(candidate)
                self.logger.info(
                    "Bound pool credential to cluster",
                    extra={
                        "credential_id": candidate.id,
                        "registry_id": registry_id,
                        "external_name": candidate.external_name,
                        "owner_cluster_id": cluster_id,
                    },
                )
                return candidate

            self.session.expire(candidate)

        return None

    # Rotation requests

    def create_rotation_request(
        self, cluster: ClusterContext, reason: RotationReason, force_immediate: bool = False
    ) -> RotationRequest:
        """
        Create a pending rotation request.

        Raises:
            RotationConflictError: An active request already occupies the
                cluster's unique active slot
        """
        now = utc_now()
        rotation = RotationRequest(
            cluster_id=cluster.cluster_id,
            cloud_provider=cluster.cloud_provider,
            region=cluster.region,
            external_resource_id=cluster.external_resource_id,
            status=RotationStatus.PENDING.value,
            reason=RotationReason(reason).value,
            force_immediate=force_immediate,
            active_cluster_id=cluster.cluster_id,
            attempt_count=0,
            created_at=now,
            updated_at=now,
        )
        self.session.add(rotation)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise RotationConflictError(
                f"An active rotation already exists for cluster {cluster.cluster_id}",
                cluster_id=cluster.cluster_id,
            ) from e

        self.logger.info(
            "Created rotation request",
            extra={
                "rotation_id": rotation.id,
                "cluster_id": cluster.cluster_id,
                "reason": rotation.reason,
                "force_immediate": force_immediate,
            },
        )
        return rotation

    def get_rotation_request(self, rotation_id: str) -> RotationRequest:
        rotation = get_record_by_id(self.session, RotationRequest, rotation_id)
        if rotation is None:
            raise not_found("RotationRequest", rotation_id=rotation_id)
        return rotation

    def list_active_rotations(self, cluster_id: Optional[str] = None) -> List[RotationRequest]:
        """Pending and in-progress requests, oldest first."""
        query = self.session.query(RotationRequest).filter(
            RotationRequest.status.in_(RotationStatus.active())
        )
        if cluster_id is not None:
            query = query.filter(RotationRequest.cluster_id == cluster_id)
        return query.order_by(RotationRequest.created_at, RotationRequest.id).all()

    def list_rotations(self, cluster_id: str, limit: Optional[int] = None) -> List[RotationRequest]:
        """Every request for the cluster, newest first."""
        return list_records(
            self.session, RotationRequest, filters={"cluster_id": cluster_id}, limit=limit
        )

    def save_rotation_request(self, rotation: RotationRequest, **changes: Any) -> RotationRequest:
        """
        Apply ``changes`` to a rotation request.

        Moving to a terminal status frees the cluster's active slot and
        stamps ``completed_at``.
        """
        status = changes.get("status")
        if isinstance(status, RotationStatus):
            changes["status"] = status = status.value
        if status in (RotationStatus.COMPLETED.value, RotationStatus.FAILED.value):
            changes.setdefault("active_cluster_id", None)
            changes.setdefault("completed_at", utc_now())
        return update_record(self.session, RotationRequest, rotation.id, changes)
