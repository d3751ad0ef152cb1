"""
Tests for the rotation state machine and its reconciliation pass.
"""

import threading
from unittest.mock import patch

import pytest

from pull_secret_core.constants import CredentialState, RotationReason, RotationStatus
from pull_secret_core.exceptions import (
    AdapterRejectedError,
    AdapterUnavailableError,
    ErrorCode,
    InvariantViolationError,
    LockContentionError,
    NotFoundError,
    RotationConflictError,
    ServiceError,
)
from tests.fixtures.factories import ClusterLockFactory, RotationRequestFactory


@pytest.fixture
def provisioned(access_token_service, cluster):
    """Cluster holding one credential per registry."""
    return access_token_service.generate_pull_secret(cluster)


def _states(access_token_service, cluster_id, registry_id):
    return [
        c.state
        for c in access_token_service.list_credentials(cluster_id)
        if c.registry_id == registry_id
    ]


class TestStartRotation:
    """Test creating rotation requests."""

    def test_start_creates_pending(self, rotation_service, cluster):
        rotation = rotation_service.start_rotation(cluster, RotationReason.SCHEDULED)

        assert rotation.status == RotationStatus.PENDING
        assert rotation.reason == RotationReason.SCHEDULED
        assert rotation.is_active is True
        assert rotation.created_at.tzinfo is not None

    def test_second_start_conflicts(self, rotation_service, cluster):
        rotation_service.start_rotation(cluster)
        with pytest.raises(RotationConflictError):
            rotation_service.start_rotation(cluster, RotationReason.COMPROMISE)

    def test_start_after_completion(self, rotation_service, store, cluster):
        first = rotation_service.start_rotation(cluster)
        store.save_rotation_request(
            store.get_rotation_request(first.id), status=RotationStatus.COMPLETED
        )

        second = rotation_service.start_rotation(cluster)
        assert second.id != first.id

    def test_overlapping_actives_are_an_invariant_violation(
        self, rotation_service, cluster, db_session
    ):
        RotationRequestFactory(cluster_id=cluster.cluster_id)
        RotationRequestFactory(cluster_id=cluster.cluster_id, active_cluster_id=None)

        with pytest.raises(InvariantViolationError):
            rotation_service.start_rotation(cluster)

    def test_lock_contention(self, rotation_service, cluster, db_session):
        ClusterLockFactory(lock_key=f"cluster:{cluster.cluster_id}")
        with pytest.raises(LockContentionError):
            rotation_service.start_rotation(cluster)


class TestQueries:
    """Test status lookups and confirmation."""

    def test_get_status(self, rotation_service, cluster):
        started = rotation_service.start_rotation(cluster)
        assert rotation_service.get_rotation_status(started.id).id == started.id

    def test_get_unknown(self, rotation_service):
        with pytest.raises(NotFoundError):
            rotation_service.get_rotation_status("missing")

    def test_list_rotations(self, rotation_service, cluster, db_session):
        RotationRequestFactory(cluster_id=cluster.cluster_id, status="failed")
        rotation_service.start_rotation(cluster)
        assert len(rotation_service.list_rotations(cluster.cluster_id)) == 2

    def test_confirm_sets_timestamp_once(self, rotation_service, cluster, clock, provisioned):
        started = rotation_service.start_rotation(cluster)
        rotation_service.reconcile()
        clock.advance(minutes=1)

        confirmed_at = clock.now
        confirmed = rotation_service.confirm_rotation(started.id)
        clock.advance(minutes=5)
        again = rotation_service.confirm_rotation(started.id)

        assert confirmed.confirmed_at == confirmed_at
        assert again.confirmed_at == confirmed_at

    def test_confirm_terminal_rotation(self, rotation_service, store, cluster):
        started = rotation_service.start_rotation(cluster)
        store.save_rotation_request(
            store.get_rotation_request(started.id), status=RotationStatus.FAILED
        )

        with pytest.raises(ServiceError) as exc_info:
            rotation_service.confirm_rotation(started.id)
        assert exc_info.value.error_code == ErrorCode.INVALID_STATE_TRANSITION

    def test_confirm_pending_rotation(self, rotation_service, cluster, provisioned):
        started = rotation_service.start_rotation(cluster)

        with pytest.raises(ServiceError) as exc_info:
            rotation_service.confirm_rotation(started.id)

        assert exc_info.value.error_code == ErrorCode.INVALID_STATE_TRANSITION
        assert rotation_service.get_rotation_status(started.id).confirmed_at is None


class TestAdvance:
    """Test the state machine transitions."""

    def test_pending_to_in_progress(
        self, rotation_service, access_token_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)

        stats = rotation_service.reconcile()

        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.IN_PROGRESS
        assert status.started_at is not None
        assert stats["advanced"] == 1
        assert len(fake_adapters["quay"].created) == 2
        assert len(fake_adapters["redhat"].created) == 2
        # Old and new credentials are both valid during the overlap window
        assert _states(access_token_service, cluster.cluster_id, "quay") == [
            CredentialState.RETIRING,
            CredentialState.CURRENT,
        ]
        assert fake_adapters["quay"].deleted == []

    def test_document_switches_to_new_credentials(
        self, rotation_service, access_token_service, cluster, provisioned
    ):
        rotation_service.start_rotation(cluster)
        rotation_service.reconcile()

        current = access_token_service.get_current_pull_secret(cluster.cluster_id)
        assert current.to_json() != provisioned.to_json()

    def test_grace_period_keeps_old_rows(
        self, rotation_service, access_token_service, fake_adapters, cluster, provisioned, clock
    ):
        started = rotation_service.start_rotation(cluster)
        rotation_service.reconcile()
        clock.advance(hours=23)
        rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.IN_PROGRESS
        assert fake_adapters["quay"].deleted == []

    def test_grace_period_elapsed_completes(
        self, rotation_service, access_token_service, fake_adapters, cluster, provisioned, clock
    ):
        started = rotation_service.start_rotation(cluster)
        rotation_service.reconcile()
        clock.advance(hours=25)

        stats = rotation_service.reconcile()

        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.COMPLETED
        assert status.completed_at is not None
        assert stats["completed"] == 1
        assert fake_adapters["quay"].deleted == ["quay+account_1"]
        assert fake_adapters["redhat"].deleted == ["redhat+account_1"]
        assert _states(access_token_service, cluster.cluster_id, "quay") == [
            CredentialState.CURRENT
        ]

    def test_confirmation_closes_overlap(
        self, rotation_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        rotation_service.reconcile()
        rotation_service.confirm_rotation(started.id)

        rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.COMPLETED
        assert len(fake_adapters["quay"].deleted) == 1

    def test_early_confirmation_keeps_overlap_window(
        self, rotation_service, access_token_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        with pytest.raises(ServiceError):
            rotation_service.confirm_rotation(started.id)

        stats = rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.IN_PROGRESS
        assert stats["completed"] == 0
        assert fake_adapters["quay"].deleted == []
        assert fake_adapters["redhat"].deleted == []
        assert _states(access_token_service, cluster.cluster_id, "quay") == [
            CredentialState.RETIRING,
            CredentialState.CURRENT,
        ]

    def test_confirmation_older_than_replacements_ignored(
        self, rotation_service, store, fake_adapters, cluster, provisioned, clock
    ):
        started = rotation_service.start_rotation(cluster)
        store.save_rotation_request(
            store.get_rotation_request(started.id), confirmed_at=clock.now
        )
        clock.advance(minutes=1)

        rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.IN_PROGRESS
        assert fake_adapters["quay"].deleted == []

    def test_force_immediate_completes_in_one_pass(
        self, rotation_service, access_token_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(
            cluster, RotationReason.COMPROMISE, force_immediate=True
        )

        stats = rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.COMPLETED
        assert stats["completed"] == 1
        assert fake_adapters["quay"].live_accounts == ["quay+account_2"]
        new_document = access_token_service.get_current_pull_secret(cluster.cluster_id)
        assert new_document.to_json() != provisioned.to_json()

    def test_only_held_registries_rotated(
        self, rotation_service, access_token_service, fake_adapters, cluster
    ):
        access_token_service.generate_pull_secret(cluster, registry_ids=["quay"])
        rotation_service.start_rotation(cluster, force_immediate=True)

        rotation_service.reconcile()

        assert len(fake_adapters["quay"].created) == 2
        assert fake_adapters["redhat"].created == []

    def test_cluster_without_credentials_fails(self, rotation_service, cluster):
        started = rotation_service.start_rotation(cluster)

        stats = rotation_service.reconcile()

        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.FAILED
        assert "not found" in status.last_error
        assert stats["failed"] == 1

    def test_superseded_account_already_gone(
        self, rotation_service, access_token_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster, force_immediate=True)
        fake_adapters["quay"].accounts.pop("quay+account_1")

        rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.COMPLETED
        assert _states(access_token_service, cluster.cluster_id, "quay") == [
            CredentialState.CURRENT
        ]

    def test_force_new_during_rotation_is_not_deleted(
        self, rotation_service, access_token_service, store, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        rotation_service.reconcile()
        access_token_service.generate_pull_secret(cluster, registry_ids=["quay"], force_new=True)
        newest = store.get_current(cluster.cluster_id, "quay")

        rotation_service.confirm_rotation(started.id)
        rotation_service.reconcile()

        remaining = store.list_cluster_credentials(cluster.cluster_id, "quay")
        assert newest.id in [c.id for c in remaining]
        assert len(remaining) == 2

    def test_rotation_draws_from_pool(
        self, rotation_service, store, fake_adapters, cluster, provisioned
    ):
        store.create_credential("redhat", "|hyp-pool-1", "pool-secret")
        fake_adapters["redhat"].accounts["|hyp-pool-1"] = {
            "secret": "pool-secret",
            "deleted": False,
            "owner": None,
        }
        started = rotation_service.start_rotation(cluster)

        rotation_service.reconcile()

        current = store.get_current(cluster.cluster_id, "redhat")
        assert current.external_name == "|hyp-pool-1"
        assert current.rotation_request_id == started.id


class TestFailures:
    """Test retry accounting and failure handling."""

    def test_retryable_failure_counts_attempt(
        self, rotation_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        fake_adapters["redhat"].create_errors.append(
            AdapterUnavailableError("down", service_name="redhat")
        )

        rotation_service.reconcile()

        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.PENDING
        assert status.attempt_count == 1
        assert "down" in status.last_error

    def test_resume_does_not_duplicate(
        self, rotation_service, fake_adapters, store, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        fake_adapters["redhat"].create_errors.append(
            AdapterUnavailableError("down", service_name="redhat")
        )
        rotation_service.reconcile()

        rotation_service.reconcile()

        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.IN_PROGRESS
        # quay's replacement was made on the first pass and reused on the second
        assert len(fake_adapters["quay"].created) == 2
        assert len(fake_adapters["redhat"].created) == 2
        tagged = [
            c for c in store.list_cluster_credentials(cluster.cluster_id)
            if c.rotation_request_id == started.id
        ]
        assert len(tagged) == 2

    def test_exhausted_attempts_fail(
        self, rotation_service, fake_adapters, store, cluster, provisioned, rotation_config
    ):
        started = rotation_service.start_rotation(cluster)
        fake_adapters["redhat"].create_errors.extend(
            AdapterUnavailableError("down", service_name="redhat")
            for _ in range(rotation_config.max_attempts)
        )

        for _ in range(rotation_config.max_attempts):
            rotation_service.reconcile()

        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.FAILED
        assert status.attempt_count == rotation_config.max_attempts
        # Old credentials stay valid after a failed rotation
        assert fake_adapters["quay"].deleted == []
        assert fake_adapters["redhat"].deleted == []
        assert store.get_current(cluster.cluster_id, "redhat").external_name == "redhat+account_1"

    def test_permanent_failure_fails_immediately(
        self, rotation_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        fake_adapters["quay"].create_errors.append(
            AdapterRejectedError("quota exceeded", service_name="quay")
        )

        rotation_service.reconcile()

        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.FAILED
        assert status.attempt_count == 1

    def test_delete_failure_retried(
        self, rotation_service, fake_adapters, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster, force_immediate=True)
        fake_adapters["quay"].delete_errors.append(
            AdapterUnavailableError("down", service_name="quay")
        )

        rotation_service.reconcile()
        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.IN_PROGRESS

        rotation_service.reconcile()
        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.COMPLETED
        assert fake_adapters["quay"].deleted == ["quay+account_1"]

    def test_locked_cluster_skipped(self, rotation_service, cluster, provisioned, db_session):
        started = rotation_service.start_rotation(cluster)
        ClusterLockFactory(lock_key=f"cluster:{cluster.cluster_id}")

        stats = rotation_service.reconcile()

        assert stats["skipped"] == 1
        assert rotation_service.get_rotation_status(started.id).status == RotationStatus.PENDING

    def test_overlapping_rotations_failed(self, rotation_service, cluster, db_session):
        first = RotationRequestFactory(cluster_id=cluster.cluster_id)
        second = RotationRequestFactory(cluster_id=cluster.cluster_id, active_cluster_id=None)

        stats = rotation_service.reconcile()

        assert stats["invariant_violations"] == 1
        assert stats["failed"] == 2
        for rotation_id in (first.id, second.id):
            assert rotation_service.get_rotation_status(rotation_id).status == RotationStatus.FAILED

    def test_invariant_violation_during_advance(
        self, rotation_service, cluster, provisioned
    ):
        started = rotation_service.start_rotation(cluster)
        with patch.object(
            rotation_service,
            "_create_replacements",
            side_effect=InvariantViolationError("broken", cluster_id=cluster.cluster_id),
        ):
            stats = rotation_service.reconcile()

        assert stats["invariant_violations"] == 1
        status = rotation_service.get_rotation_status(started.id)
        assert status.status == RotationStatus.FAILED
        assert status.last_error == "Invariant violation"


class TestRunPeriodically:
    def test_stops_on_event(self, rotation_service):
        stop = threading.Event()
        with patch.object(rotation_service, "reconcile", side_effect=lambda: stop.set()) as tick:
            rotation_service.run_periodically(stop)
        assert tick.call_count == 1

    def test_tick_errors_do_not_stop_loop(self, rotation_service):
        stop = threading.Event()
        calls = []

        def tick():
            calls.append(1)
            if len(calls) == 2:
                stop.set()
            raise RuntimeError("transient")

        with patch.object(rotation_service, "reconcile", side_effect=tick):
            with patch.object(stop, "wait"):
                rotation_service.run_periodically(stop)

        assert len(calls) == 2
