"""
Concurrency tests: several simulated replicas, each with its own session and
service instances, share one database and one set of registries.

The registries are in-memory fakes with a small creation delay so that
racing callers overlap inside the critical section.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from pull_secret_core.config import LockConfig, PoolConfig, RotationConfig
from pull_secret_core.constants import RotationStatus
from pull_secret_core.schemas import ClusterContext
from pull_secret_core.services import (
    AccessTokenService,
    CredentialStore,
    LockManager,
    PoolService,
    RotationService,
    cluster_lock_key,
)
from tests.fixtures.fake_registry import FakeRegistryAdapter

pytestmark = pytest.mark.integration

REPLICAS = 8
ENCRYPTION_KEY = "test-encryption-key"


@pytest.fixture
def slow_adapters(catalog):
    return {
        "quay": FakeRegistryAdapter(catalog.get("quay"), create_delay=0.05),
        "redhat": FakeRegistryAdapter(
            catalog.get("redhat"), supports_relabel=True, supports_recover=True, create_delay=0.05
        ),
    }


@pytest.fixture
def patient_lock_config():
    return LockConfig(lease_seconds=30, wait_timeout_seconds=20, poll_interval_seconds=0.01)


class Replica:
    """One process' worth of wiring on top of the shared database."""

    def __init__(self, db_manager, catalog, adapters, lock_config):
        self.session = db_manager.session_factory()
        self.lock_manager = LockManager(db_manager.session_factory, lock_config)
        self.store = CredentialStore(self.session, encryption_key=ENCRYPTION_KEY)
        self.access_tokens = AccessTokenService(
            self.session, catalog, adapters, self.lock_manager, store=self.store
        )
        self.rotations = RotationService(
            self.session,
            catalog,
            self.access_tokens,
            self.lock_manager,
            config=RotationConfig(grace_period_hours=24, max_attempts=3),
            store=self.store,
        )
        self.pool = PoolService(
            self.session,
            catalog,
            adapters,
            self.lock_manager,
            config=PoolConfig(high_water_mark=5, low_water_mark=5, batch_size=5),
            store=self.store,
        )

    def close(self):
        self.session.close()


@pytest.fixture
def replica_factory(db_manager, catalog, slow_adapters, patient_lock_config):
    replicas = []
    guard = threading.Lock()

    def _make():
        replica = Replica(db_manager, catalog, slow_adapters, patient_lock_config)
        with guard:
            replicas.append(replica)
        return replica

    yield _make

    for replica in replicas:
        replica.close()


def _run_concurrently(count, target):
    barrier = threading.Barrier(count)

    def _wrapped(index):
        barrier.wait()
        return target(index)

    with ThreadPoolExecutor(max_workers=count) as executor:
        return list(executor.map(_wrapped, range(count)))


class TestConcurrentGeneration:
    """Racing callers for the same cluster must converge on one credential set."""

    def test_thundering_herd_creates_one_account_per_registry(
        self, replica_factory, slow_adapters, cluster
    ):
        def generate(_):
            return replica_factory().access_tokens.generate_pull_secret(cluster).to_json()

        documents = _run_concurrently(REPLICAS, generate)

        assert len(set(documents)) == 1
        assert len(slow_adapters["quay"].created) == 1
        assert len(slow_adapters["redhat"].created) == 1

        check = replica_factory()
        assert len(check.store.list_cluster_credentials(cluster.cluster_id)) == 2
        assert check.lock_manager.is_locked(cluster_lock_key(cluster.cluster_id)) is False

    def test_different_clusters_do_not_interfere(self, replica_factory, slow_adapters):
        clusters = [
            ClusterContext(cluster_id=f"cluster-{index}", cloud_provider="aws", region="us-east-1")
            for index in range(4)
        ]

        def generate(index):
            return replica_factory().access_tokens.generate_pull_secret(clusters[index]).to_json()

        documents = _run_concurrently(len(clusters), generate)

        assert len(set(documents)) == len(clusters)
        assert len(slow_adapters["quay"].created) == len(clusters)

        check = replica_factory()
        for target in clusters:
            assert len(check.store.list_cluster_credentials(target.cluster_id)) == 2


class TestConcurrentPoolClaims:
    def test_pool_rows_bound_at_most_once(self, replica_factory, slow_adapters):
        seed = replica_factory()
        for index in range(3):
            name = f"|hyp-pool-{index}"
            seed.store.create_credential("redhat", name, f"pool-secret-{index}")
            slow_adapters["redhat"].accounts[name] = {
                "secret": f"pool-secret-{index}",
                "deleted": False,
                "owner": None,
            }

        clusters = [
            ClusterContext(cluster_id=f"cluster-{index}", cloud_provider="gcp", region="us-east-1")
            for index in range(3)
        ]

        def generate(index):
            replica = replica_factory()
            replica.access_tokens.generate_pull_secret(clusters[index], registry_ids=["redhat"])
            return replica.store.get_current(clusters[index].cluster_id, "redhat").external_name

        bound = _run_concurrently(len(clusters), generate)

        assert sorted(bound) == ["|hyp-pool-0", "|hyp-pool-1", "|hyp-pool-2"]
        assert slow_adapters["redhat"].created == []
        assert replica_factory().store.count_pool("redhat") == 0


class TestRotationRaces:
    def test_rotation_and_generation_interleave_safely(
        self, replica_factory, slow_adapters, cluster
    ):
        setup = replica_factory()
        setup.access_tokens.generate_pull_secret(cluster)
        rotation = setup.rotations.start_rotation(cluster, force_immediate=True)

        def work(index):
            replica = replica_factory()
            if index == 0:
                return replica.rotations.reconcile()
            return replica.access_tokens.generate_pull_secret(cluster).to_json()

        _run_concurrently(4, work)

        check = replica_factory()
        assert check.rotations.get_rotation_status(rotation.id).status == RotationStatus.COMPLETED
        # Generation never creates while a current credential exists
        assert len(slow_adapters["quay"].created) == 2
        assert slow_adapters["quay"].live_accounts == [slow_adapters["quay"].created[-1]]
        assert len(check.store.list_cluster_credentials(cluster.cluster_id)) == 2

    def test_concurrent_start_rotation_yields_one_active(self, replica_factory, cluster):
        replica_factory().access_tokens.generate_pull_secret(cluster)

        def start(_):
            try:
                return replica_factory().rotations.start_rotation(cluster).id
            except Exception as e:
                return type(e).__name__

        outcomes = _run_concurrently(4, start)

        conflicts = [o for o in outcomes if o == "RotationConflictError"]
        assert len(conflicts) == 3
        assert len(replica_factory().store.list_active_rotations(cluster.cluster_id)) == 1


class TestLeaseTakeover:
    def test_crashed_holder_lease_expires(self, db_manager, replica_factory, cluster):
        crashed = LockManager(
            db_manager.session_factory,
            LockConfig(lease_seconds=1, wait_timeout_seconds=0, poll_interval_seconds=0.01),
        )
        # Acquired and never released, as if the process died
        assert crashed.try_acquire(cluster_lock_key(cluster.cluster_id)) is not None

        document = replica_factory().access_tokens.generate_pull_secret(cluster)

        assert document.hostnames
        assert crashed.is_locked(cluster_lock_key(cluster.cluster_id)) is False


class TestConcurrentPoolTicks:
    """Replicas ticking together must fill the pool only once."""

    def test_replica_ticks_never_overshoot_high_water_mark(self, replica_factory, slow_adapters):
        created = _run_concurrently(2, lambda _: replica_factory().pool.reconcile()["redhat"])

        assert sum(created) == 5
        assert replica_factory().store.count_pool("redhat") == 5
        assert len(slow_adapters["redhat"].created) == 5

    def test_follow_up_tick_sees_filled_pool(self, replica_factory, slow_adapters):
        _run_concurrently(2, lambda _: replica_factory().pool.reconcile())

        assert replica_factory().pool.reconcile() == {"redhat": 0}
        assert len(slow_adapters["redhat"].created) == 5
