"""
Shared test fixtures for the pull secret core engine.

Every test gets its own file-backed SQLite database so the lock manager's
short-lived sessions and the service session use separate connections, the
same way separate replicas would.
"""

import pytest
from sqlalchemy.orm import Session

from pull_secret_core.config import (
    DatabaseConfig,
    LockConfig,
    PoolConfig,
    RotationConfig,
    reset_config,
)
from pull_secret_core.db import DatabaseManager
from pull_secret_core.exceptions import clear_correlation_id
from pull_secret_core.schemas import ClusterContext, RegistryCatalog
from pull_secret_core.services import (
    AccessTokenService,
    CredentialStore,
    LockManager,
    PoolService,
    RotationService,
)
from pull_secret_core.utils.logger import reset_logging
from tests.fixtures.clock import MutableClock
from tests.fixtures.factories import bind_factories
from tests.fixtures.fake_registry import FakeRegistryAdapter

TEST_ENCRYPTION_KEY = "test-encryption-key"


@pytest.fixture(autouse=True)
def reset_global_state():
    """Forget cached configuration, loggers and correlation ids between tests."""
    reset_config()
    reset_logging()
    clear_correlation_id()
    yield
    reset_config()
    reset_logging()
    clear_correlation_id()


@pytest.fixture(scope="function")
def db_config(tmp_path) -> DatabaseConfig:
    """SQLite database file private to the test."""
    return DatabaseConfig(connection_string=f"sqlite:///{tmp_path / 'pull_secrets.db'}")


@pytest.fixture(scope="function")
def db_manager(db_config: DatabaseConfig) -> DatabaseManager:
    """Database manager with every table created."""
    manager = DatabaseManager(db_config)
    manager.create_tables()

    yield manager

    manager.close()


@pytest.fixture(scope="function")
def db_session(db_manager: DatabaseManager) -> Session:
    """Service session; factories write through it as well."""
    session = db_manager.session_factory()
    bind_factories(session)

    yield session

    session.rollback()
    session.close()


@pytest.fixture
def catalog() -> RegistryCatalog:
    """One robot-account registry and one pooled partner registry with an alias."""
    return RegistryCatalog.from_dicts(
        [
            {
                "id": "quay",
                "name": "Quay",
                "variant": "robot_account",
                "base_url": "https://quay.example.com",
                "organization": "hyperfleet",
                "token": "test-token",
            },
            {
                "id": "redhat",
                "name": "Red Hat registry",
                "variant": "partner_account",
                "base_url": "https://api.partner.example.com",
                "registry_hostname": "registry.redhat.io",
                "alias_hostname": "registry.connect.redhat.com",
                "emit_alias": True,
                "pool_enabled": True,
            },
        ]
    )


@pytest.fixture
def fake_adapters(catalog):
    return {
        "quay": FakeRegistryAdapter(catalog.get("quay")),
        "redhat": FakeRegistryAdapter(
            catalog.get("redhat"), supports_relabel=True, supports_recover=True
        ),
    }


@pytest.fixture
def lock_config() -> LockConfig:
    return LockConfig(lease_seconds=30, wait_timeout_seconds=0.5, poll_interval_seconds=0.01)


@pytest.fixture
def lock_manager(db_manager, lock_config) -> LockManager:
    return LockManager(db_manager.session_factory, lock_config)


@pytest.fixture
def store(db_session) -> CredentialStore:
    return CredentialStore(db_session, encryption_key=TEST_ENCRYPTION_KEY)


@pytest.fixture
def access_token_service(db_session, catalog, fake_adapters, lock_manager, store):
    return AccessTokenService(db_session, catalog, fake_adapters, lock_manager, store=store)


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def rotation_config() -> RotationConfig:
    return RotationConfig(grace_period_hours=24, max_attempts=3, reconcile_interval_seconds=1)


@pytest.fixture
def rotation_service(
    db_session, catalog, access_token_service, lock_manager, rotation_config, store, clock
):
    return RotationService(
        db_session,
        catalog,
        access_token_service,
        lock_manager,
        config=rotation_config,
        store=store,
        clock=clock,
    )


@pytest.fixture
def pool_config() -> PoolConfig:
    return PoolConfig(
        high_water_mark=5, low_water_mark=2, batch_size=3, reconcile_interval_seconds=1
    )


@pytest.fixture
def pool_service(db_session, catalog, fake_adapters, lock_manager, pool_config, store):
    return PoolService(
        db_session, catalog, fake_adapters, lock_manager, config=pool_config, store=store
    )


@pytest.fixture
def cluster() -> ClusterContext:
    """Standard cluster used across tests."""
    return ClusterContext(cluster_id="cluster-abc123", cloud_provider="gcp", region="us-east-1")


@pytest.fixture
def other_cluster() -> ClusterContext:
    return ClusterContext(cluster_id="cluster-def456", cloud_provider="aws", region="eu-west-1")
