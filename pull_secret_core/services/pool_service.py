"""
Pool manager: keeps a buffer of unassigned credentials per registry.

Only registries flagged ``pool_enabled`` whose adapter can re-label
accounts take part; everything else relies on on-demand creation. Pool
rows have no owner, so they never take a cluster lock. Each registry's
tick runs under its own ``pool:{registry_id}`` lease instead, so replicas
ticking at the same moment cannot both fill the same gap. Binding a pool
row to a cluster is done by the access-token service.
"""

import threading
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import PoolConfig
from ..context.operation_context import operation
from ..exceptions import BaseError
from ..registries.base import RegistryAdapter
from ..schemas.credential_schemas import OwnerContext
from ..schemas.registry_schemas import RegistryCatalog, RegistryConfig
from ..utils.logger import get_logger
from .credential_store import CredentialStore
from .lock_service import LockLease, LockManager, pool_lock_key


class PoolService:
    """Replenishes the spare credential pool between watermarks."""

    def __init__(
        self,
        session: Session,
        catalog: RegistryCatalog,
        adapters: Dict[str, RegistryAdapter],
        lock_manager: LockManager,
        config: Optional[PoolConfig] = None,
        store: Optional[CredentialStore] = None,
    ):
        self.session = session
        self.catalog = catalog
        self.adapters = adapters
        self.lock_manager = lock_manager
        self.config = config or PoolConfig()
        self.store = store or CredentialStore(session)
        self.logger = get_logger()

    def pooled_registries(self) -> List[RegistryConfig]:
        """Registries that use the pool and whose accounts can be re-labeled."""
        registries = []
        for registry in self.catalog.pool_registries():
            adapter = self.adapters.get(registry.id)
            if adapter is None:
                continue
            if not adapter.supports_relabel:
                self.logger.warning(
                    "Pool enabled for a registry that cannot re-label accounts; ignoring",
                    extra={"registry_id": registry.id},
                )
                continue
            registries.append(registry)
        return registries

    def replenish_count(self, current: int) -> int:
        """Accounts to create this tick for a pool holding ``current`` rows."""
        if current >= self.config.low_water_mark:
            return 0
        return max(0, min(self.config.batch_size, self.config.high_water_mark - current))

    @operation(name="pool.reconcile")
    def reconcile(self) -> Dict[str, int]:
        """
        One replenishment tick.

        A registry whose pool lease is held by another replica is skipped.
        An adapter failure stops that registry's batch for this tick; other
        registries continue.

        Returns:
            Accounts created per registry id
        """
        created: Dict[str, int] = {}
        for registry in self.pooled_registries():
            lease = self.lock_manager.try_acquire(pool_lock_key(registry.id))
            if lease is None:
                self.logger.debug(
                    "Pool tick already running on another replica",
                    extra={"registry_id": registry.id},
                )
                created[registry.id] = 0
                continue
            try:
                created[registry.id] = self._replenish(registry, lease)
            finally:
                self.lock_manager.release(lease)
        return created

    def _replenish(self, registry: RegistryConfig, lease: LockLease) -> int:
        # Counted under the lease so a tick that just finished elsewhere is seen
        current = self.store.count_pool(registry.id)
        wanted = self.replenish_count(current)
        if not wanted:
            return 0

        adapter = self.adapters[registry.id]
        placeholder = OwnerContext.pool_placeholder()
        created = 0

        for _ in range(wanted):
            try:
                if created:
                    lease.renew()
                account = adapter.create_account(placeholder)
            except BaseError as e:
                self.logger.warning(
                    "Pool replenishment stopped for this tick",
                    extra={
                        "registry_id": registry.id,
                        "accounts_created": created,
                        "wanted": wanted,
                        "error_code": e.error_code.value,
                    },
                )
                break

            self.store.create_credential(
                registry_id=registry.id,
                external_name=account.external_name,
                secret=account.secret,
                owner_cluster_id=None,
                context={"cloud_provider": placeholder.cloud_provider, "region": placeholder.region},
            )
            created += 1

        self.logger.info(
            "Replenished credential pool",
            extra={
                "registry_id": registry.id,
                "pool_size_before": current,
                "accounts_created": created,
                "low_water_mark": self.config.low_water_mark,
                "high_water_mark": self.config.high_water_mark,
            },
        )
        return created

    def pool_status(self) -> Dict[str, Dict[str, int]]:
        """Pool size and watermarks for every pooled registry."""
        status = {}
        for registry in self.pooled_registries():
            size = self.store.count_pool(registry.id)
            status[registry.id] = {
                "unassigned": size,
                "low_water_mark": self.config.low_water_mark,
                "high_water_mark": self.config.high_water_mark,
                "below_low_water": int(size < self.config.low_water_mark),
            }
        return status

    def run_periodically(self, stop_event: threading.Event) -> None:
        """Run replenishment ticks until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                self.reconcile()
            except Exception:
                self.logger.exception("Pool reconciliation tick failed")
            stop_event.wait(self.config.reconcile_interval_seconds)
