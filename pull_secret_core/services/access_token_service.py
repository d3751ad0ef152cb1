"""
Access-token service: find-or-create entry point for cluster pull secrets.

Every write of a cluster-owned credential happens while holding that
cluster's lock, which is what keeps concurrent requests from binding two
external accounts to the same (cluster, registry) pair. Formatting and
decryption happen after the lock is released.
"""

import base64
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..constants import RotationStatus
from ..context.operation_context import cluster_scope, operation
from ..db.db_credential_models import RegistryCredential
from ..exceptions import AdapterRejectedError, AdapterUnavailableError, NotFoundError, not_found
from ..registries.base import RegistryAdapter
from ..schemas.credential_schemas import (
    AuthEntry,
    ClusterContext,
    CredentialRead,
    PullSecretDocument,
)
from ..schemas.registry_schemas import RegistryCatalog, RegistryConfig
from ..utils.logger import get_logger
from .credential_store import CredentialStore
from .lock_service import LockManager, cluster_lock_key

# Pool rows tried before falling back to a fresh account
_POOL_CLAIM_ATTEMPTS = 3


def encode_auth(external_name: str, secret: str) -> str:
    return base64.b64encode(f"{external_name}:{secret}".encode("utf-8")).decode("ascii")


def format_pull_secret(entries: Iterable[Tuple[RegistryConfig, str, str]]) -> PullSecretDocument:
    """
    Assemble the auth document from (registry, external name, secret) entries.

    Each registry contributes one entry per hostname, including its alias
    when the registry is flagged to emit one.
    """
    auths: Dict[str, AuthEntry] = {}
    for registry, external_name, secret in entries:
        entry = AuthEntry(auth=encode_auth(external_name, secret))
        for hostname in registry.auth_hostnames():
            auths[hostname] = entry
    return PullSecretDocument(auths=auths)


class AccessTokenService:
    """Issues, serves and tears down cluster pull secrets."""

    def __init__(
        self,
        session: Session,
        catalog: RegistryCatalog,
        adapters: Dict[str, RegistryAdapter],
        lock_manager: LockManager,
        store: Optional[CredentialStore] = None,
    ):
        self.session = session
        self.catalog = catalog
        self.adapters = adapters
        self.lock_manager = lock_manager
        self.store = store or CredentialStore(session)
        self.logger = get_logger()

    def adapter_for(self, registry_id: str) -> RegistryAdapter:
        adapter = self.adapters.get(registry_id)
        if adapter is None:
            raise not_found("RegistryAdapter", registry_id=registry_id)
        return adapter

    @staticmethod
    def _owner_context(cluster: ClusterContext) -> Dict[str, str]:
        return {"cloud_provider": cluster.cloud_provider, "region": cluster.region}

    @operation(name="access_token.generate_pull_secret")
    def generate_pull_secret(
        self,
        cluster: ClusterContext,
        registry_ids: Optional[Iterable[str]] = None,
        force_new: bool = False,
    ) -> PullSecretDocument:
        """
        Return the cluster's pull secret, creating missing credentials.

        Idempotent while credentials exist: repeated calls serialize to the
        same document. ``force_new`` creates a fresh credential per registry;
        older rows stay valid as retiring credentials.

        Raises:
            LockContentionError: Another operation holds the cluster lock
            AdapterUnavailableError / AdapterRejectedError: A registry call
                failed; no partial document is returned
        """
        registries = self.catalog.select(registry_ids)

        with cluster_scope(cluster.cluster_id):
            resolved: List[Tuple[RegistryConfig, RegistryCredential]] = []
            created = 0

            with self.lock_manager.acquire(cluster_lock_key(cluster.cluster_id)) as lease:
                for index, registry in enumerate(registries):
                    if index:
                        lease.renew()

                    credential = (
                        None if force_new else self.store.get_current(cluster.cluster_id, registry.id)
                    )
                    if credential is None:
                        credential = self.create_credential(cluster, registry)
                        created += 1
                    resolved.append((registry, credential))

            if created:
                self.logger.info(
                    "Resolved pull secret credentials",
                    extra={
                        "cluster_id": cluster.cluster_id,
                        "registries": len(resolved),
                        "credentials_created": created,
                        "force_new": force_new,
                    },
                )

            return self._format(resolved)

    def create_credential(
        self,
        cluster: ClusterContext,
        registry: RegistryConfig,
        rotation_request_id: Optional[str] = None,
    ) -> RegistryCredential:
        """
        Always-new creation path; the caller must hold the cluster lock.

        Binds a pool credential when the registry uses the pool and its
        adapter can re-label accounts, otherwise creates a fresh account.
        """
        adapter = self.adapter_for(registry.id)

        if registry.pool_enabled and adapter.supports_relabel:
            credential = self._bind_pool_credential(cluster, registry, adapter, rotation_request_id)
            if credential is not None:
                return credential

        account = adapter.create_account(cluster)
        return self.store.create_credential(
            registry_id=registry.id,
            external_name=account.external_name,
            secret=account.secret,
            owner_cluster_id=cluster.cluster_id,
            external_resource_id=cluster.external_resource_id,
            rotation_request_id=rotation_request_id,
            context=self._owner_context(cluster),
        )

    def _bind_pool_credential(
        self,
        cluster: ClusterContext,
        registry: RegistryConfig,
        adapter: RegistryAdapter,
        rotation_request_id: Optional[str],
    ) -> Optional[RegistryCredential]:
        for _ in range(_POOL_CLAIM_ATTEMPTS):
            credential = self.store.claim_pool_credential(
                registry.id,
                cluster.cluster_id,
                external_resource_id=cluster.external_resource_id,
                context=self._owner_context(cluster),
                rotation_request_id=rotation_request_id,
            )
            if credential is None:
                return None

            try:
                adapter.relabel_account(credential.external_name, cluster)
            except NotFoundError:
                # The pool account is gone on the registry side
                self.logger.warning(
                    "Discarding pool credential missing from registry",
                    extra={
                        "credential_id": credential.id,
                        "registry_id": registry.id,
                        "external_name": credential.external_name,
                    },
                )
                self.store.delete_credential(credential.id)
                continue
            except (AdapterUnavailableError, AdapterRejectedError) as e:
                # The label is informational; the account itself is usable
                self.logger.warning(
                    "Could not re-label pool credential, keeping binding",
                    extra={
                        "credential_id": credential.id,
                        "registry_id": registry.id,
                        "error_code": e.error_code.value,
                    },
                )
            return credential

        return None

    @operation(name="access_token.get_current_pull_secret")
    def get_current_pull_secret(
        self, cluster_id: str, registry_ids: Optional[Iterable[str]] = None
    ) -> PullSecretDocument:
        """
        Return the current pull secret without creating anything.

        Raises:
            NotFoundError: A registry in scope has no current credential
        """
        resolved = []
        for registry in self.catalog.select(registry_ids):
            credential = self.store.get_current(cluster_id, registry.id)
            if credential is None:
                raise not_found("PullSecret", cluster_id=cluster_id, registry_id=registry.id)
            resolved.append((registry, credential))
        return self._format(resolved)

    def list_credentials(self, cluster_id: str) -> List[CredentialRead]:
        """Every credential of the cluster with its derived state, secrets omitted."""
        return [
            self.store.to_read(credential)
            for credential in self.store.list_cluster_credentials(cluster_id)
        ]

    @operation(name="access_token.delete_pull_secret")
    def delete_pull_secret(self, cluster_id: str) -> int:
        """
        Delete every credential of the cluster, externally and in the store.

        Accounts already gone from the registry are tolerated. Active
        rotations for the cluster are failed since nothing is left to rotate.

        Returns:
            Number of credentials deleted

        Raises:
            NotFoundError: The cluster has no credentials
        """
        with cluster_scope(cluster_id):
            with self.lock_manager.acquire(cluster_lock_key(cluster_id)) as lease:
                credentials = self.store.list_cluster_credentials(cluster_id)
                if not credentials:
                    raise not_found("PullSecret", cluster_id=cluster_id)

                for index, credential in enumerate(credentials):
                    if index:
                        lease.renew()
                    self._delete_external(credential)
                    self.store.delete_credential(credential.id)

                for rotation in self.store.list_active_rotations(cluster_id):
                    self.store.save_rotation_request(
                        rotation,
                        status=RotationStatus.FAILED,
                        last_error="Cluster pull secret deleted",
                    )

            self.logger.info(
                "Deleted cluster pull secret",
                extra={"cluster_id": cluster_id, "credentials_deleted": len(credentials)},
            )
            return len(credentials)

    def _delete_external(self, credential: RegistryCredential) -> None:
        adapter = self.adapter_for(credential.registry_id)
        try:
            adapter.delete_account(credential.external_name)
        except NotFoundError:
            self.logger.warning(
                "External account already absent",
                extra={
                    "credential_id": credential.id,
                    "registry_id": credential.registry_id,
                    "external_name": credential.external_name,
                },
            )

    @operation(name="access_token.recover_credential")
    def recover_credential(
        self, cluster: ClusterContext, registry_id: str, external_name: str
    ) -> CredentialRead:
        """
        Recover a soft-deleted account and bind it as the cluster's current credential.

        Raises:
            AdapterRejectedError: The registry variant has no soft delete
            NotFoundError: The account does not exist on the registry
        """
        registry = self.catalog.get(registry_id)
        adapter = self.adapter_for(registry_id)
        if not adapter.supports_recover:
            raise AdapterRejectedError(
                f"Registry {registry_id} does not support account recovery",
                service_name=registry_id,
                external_name=external_name,
            )

        with cluster_scope(cluster.cluster_id):
            with self.lock_manager.acquire(cluster_lock_key(cluster.cluster_id)):
                account = adapter.recover_account(external_name)
                credential = self.store.create_credential(
                    registry_id=registry.id,
                    external_name=account.external_name,
                    secret=account.secret,
                    owner_cluster_id=cluster.cluster_id,
                    external_resource_id=cluster.external_resource_id,
                    context={**self._owner_context(cluster), "recovered": True},
                )
            return self.store.to_read(credential)

    def _format(
        self, resolved: List[Tuple[RegistryConfig, RegistryCredential]]
    ) -> PullSecretDocument:
        return format_pull_secret(
            (registry, credential.external_name, self.store.get_secret(credential))
            for registry, credential in resolved
        )
