"""
Tests for the Lease Coordinator.

- a standalone executor always runs
- the embedded executor runs only when no standalone executor is live
- a stopped executor is never live
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from vpsbilling.billing.lease import LeaseCoordinator
from vpsbilling.persistence.models import EMBEDDED_EXECUTOR_ID, ExecutorStatus, RunOutcome

from conftest import T0


@pytest.fixture
def coordinator(db, clock):
    return LeaseCoordinator(db, lease_window=timedelta(seconds=90), clock=clock)


class TestPriorityRule:
    """Standalone outranks embedded while live."""

    def test_embedded_runs_with_no_records(self, coordinator):
        decision = coordinator.decide(EMBEDDED_EXECUTOR_ID)
        assert decision.should_execute
        assert decision.reason == "no_live_standalone"

    def test_standalone_always_runs(self, coordinator, clock):
        coordinator.heartbeat("host-a-1")
        assert coordinator.should_execute("host-b-2")
        assert coordinator.should_execute("host-a-1")

    def test_embedded_defers_to_live_standalone(self, coordinator, clock):
        coordinator.heartbeat("host-a-1")
        clock.advance(seconds=30)

        decision = coordinator.decide(EMBEDDED_EXECUTOR_ID)

        assert not decision.should_execute
        assert decision.live_standalone == ["host-a-1"]

    def test_embedded_ignores_its_own_record(self, coordinator, clock):
        coordinator.heartbeat(EMBEDDED_EXECUTOR_ID)
        assert coordinator.should_execute(EMBEDDED_EXECUTOR_ID)

    def test_stale_standalone_loses_lease(self, coordinator, clock):
        coordinator.heartbeat("host-a-1")
        clock.advance(seconds=89)
        assert not coordinator.should_execute(EMBEDDED_EXECUTOR_ID)

        clock.advance(seconds=1)
        assert coordinator.should_execute(EMBEDDED_EXECUTOR_ID)

    def test_stopped_standalone_is_never_live(self, coordinator, clock):
        coordinator.heartbeat("host-a-1")
        clock.advance(seconds=5)
        coordinator.mark_stopped("host-a-1")

        assert coordinator.should_execute(EMBEDDED_EXECUTOR_ID)

    def test_restarted_standalone_regains_lease(self, coordinator, clock):
        coordinator.heartbeat("host-a-1")
        coordinator.mark_stopped("host-a-1")
        clock.advance(minutes=10)
        coordinator.heartbeat("host-a-1")

        assert not coordinator.should_execute(EMBEDDED_EXECUTOR_ID)


class TestHeartbeatRecords:
    """Heartbeats are idempotent upserts keyed by executor."""

    def test_heartbeat_upsert(self, coordinator, clock):
        coordinator.heartbeat("host-a-1", started_at=T0, metadata={"pid": 1})
        clock.advance(seconds=30)
        coordinator.heartbeat("host-a-1")

        record = coordinator.leases.get("host-a-1")
        assert record.heartbeat_at == T0 + timedelta(seconds=30)
        assert record.started_at == T0
        assert record.metadata == {"pid": 1}
        assert len(coordinator.leases.list_all()) == 1

    def test_record_run_keeps_start_and_metadata(self, coordinator, clock):
        coordinator.heartbeat("host-a-1", started_at=T0, metadata={"pid": 1})
        clock.advance(minutes=5)

        coordinator.record_run(
            "host-a-1",
            RunOutcome.SUCCESS,
            instances_billed=3,
            total_amount=Decimal("1.25"),
            total_hours=Decimal("7.5"),
        )

        record = coordinator.leases.get("host-a-1")
        assert record.last_run_outcome is RunOutcome.SUCCESS
        assert record.last_run_at == T0 + timedelta(minutes=5)
        assert record.instances_billed == 3
        assert record.total_amount == Decimal("1.25")
        assert record.total_hours == Decimal("7.5")
        assert record.started_at == T0
        assert record.metadata == {"pid": 1}

    def test_record_run_creates_row(self, coordinator):
        coordinator.record_run(EMBEDDED_EXECUTOR_ID, RunOutcome.DEFERRED)

        record = coordinator.leases.get(EMBEDDED_EXECUTOR_ID)
        assert record.last_run_outcome is RunOutcome.DEFERRED
        assert record.status is ExecutorStatus.RUNNING

    def test_statuses(self, coordinator, clock):
        coordinator.heartbeat("host-a-1")
        clock.advance(seconds=120)
        coordinator.heartbeat(EMBEDDED_EXECUTOR_ID)

        rows = {row["executor_id"]: row for row in coordinator.statuses()}

        assert rows["host-a-1"]["is_live"] is False
        assert rows["host-a-1"]["age_seconds"] == 120
        assert rows[EMBEDDED_EXECUTOR_ID]["is_live"] is True


class TestDaemonStatus:
    """Dashboard view of the standalone daemon."""

    def test_unknown_without_daemon(self, coordinator):
        status = coordinator.daemon_status(timedelta(minutes=5))
        assert status["status"] == "unknown"
        assert status["warning"]

    def test_live_daemon(self, coordinator, clock):
        coordinator.heartbeat("host-a-1", started_at=T0)
        clock.advance(minutes=10)
        coordinator.record_run("host-a-1", RunOutcome.SUCCESS, instances_billed=2, total_amount=Decimal("0.50"))

        status = coordinator.daemon_status(timedelta(minutes=5))

        assert status["status"] == "running"
        assert status["executor_id"] == "host-a-1"
        assert not status["is_stale"]
        assert not status["warning"]
        assert status["uptime_minutes"] == 10
        assert status["next_scheduled_run"] == (T0 + timedelta(minutes=15)).isoformat(timespec="microseconds")
        assert status["total_amount"] == "0.50"

    def test_stale_daemon_warns(self, coordinator, clock):
        coordinator.record_run("host-a-1", RunOutcome.SUCCESS)
        clock.advance(minutes=3)

        status = coordinator.daemon_status(timedelta(minutes=5))

        assert status["is_stale"]
        assert status["warning"]
        assert status["status"] == "stopped"
        assert status["next_scheduled_run"] is None

    def test_live_daemon_without_run_warns(self, coordinator, clock):
        coordinator.heartbeat("host-a-1", started_at=T0)
        status = coordinator.daemon_status(timedelta(minutes=5))

        assert not status["is_stale"]
        assert status["warning"]
