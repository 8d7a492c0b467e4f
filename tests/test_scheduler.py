"""
Tests for the embedded scheduler and the standalone billing daemon.
"""

import asyncio
import os
import signal
import socket
import time
from decimal import Decimal

import pytest

from vpsbilling.billing.scheduler import BillingDaemon, EmbeddedBillingScheduler, generate_executor_id
from vpsbilling.config import BillingConfig
from vpsbilling.billing.sweep import SweepEngine
from vpsbilling.persistence.models import EMBEDDED_EXECUTOR_ID, ExecutorStatus, RunOutcome

from conftest import seed_account, seed_instance, seed_plan


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


@pytest.fixture
def daemon_config():
    return BillingConfig(heartbeat_interval_seconds=1, billing_interval_seconds=3600)


@pytest.fixture
def daemon(db, clock, daemon_config):
    engine = SweepEngine(db, config=daemon_config, clock=clock)
    return BillingDaemon(engine, executor_id="billing-host-1")


class TestExecutorIdentity:

    def test_hostname_and_pid(self):
        assert generate_executor_id() == f"{socket.gethostname()}-{os.getpid()}"


class TestEmbeddedScheduler:
    """Ticks run the sweep as the embedded executor."""

    def test_tick_runs_sweep(self, db, clock, engine, ledger):
        seed_plan(db)
        seed_account(ledger)
        seed_instance(db)
        clock.advance(hours=1)
        scheduler = EmbeddedBillingScheduler(engine, interval=60)

        result = asyncio.run(scheduler.tick())

        assert result.executor_id == EMBEDDED_EXECUTOR_ID
        assert result.instances_billed == 1

    def test_tick_defers_to_live_daemon(self, db, clock, engine):
        engine.coordinator.heartbeat("billing-host-1")
        scheduler = EmbeddedBillingScheduler(engine, interval=60)

        result = asyncio.run(scheduler.tick())

        assert result.outcome is RunOutcome.DEFERRED

    def test_start_and_stop(self, db, clock, engine):
        scheduler = EmbeddedBillingScheduler(engine, interval=3600)
        leases = engine.coordinator.leases

        async def lifecycle():
            await scheduler.start()
            assert scheduler.running
            while leases.get(EMBEDDED_EXECUTOR_ID) is None:
                await asyncio.sleep(0.02)
            await scheduler.stop()

        asyncio.run(asyncio.wait_for(lifecycle(), timeout=10))

        assert not scheduler.running
        assert leases.get(EMBEDDED_EXECUTOR_ID).status is ExecutorStatus.STOPPED

    def test_interval_defaults_to_config(self, engine):
        assert EmbeddedBillingScheduler(engine).interval == engine.config.billing_interval_seconds


class TestBillingDaemon:
    """Standalone daemon lifecycle."""

    def test_start_registers_executor(self, daemon, clock):
        daemon.start()
        try:
            record = daemon.coordinator.leases.get("billing-host-1")
            assert record.status is ExecutorStatus.RUNNING
            assert record.started_at == clock()
            assert record.metadata["hostname"] == socket.gethostname()
            assert record.metadata["pid"] == os.getpid()
            assert record.metadata["billing_interval_seconds"] == 3600
            assert not daemon.coordinator.should_execute(EMBEDDED_EXECUTOR_ID)
        finally:
            daemon.shutdown()

    def test_heartbeat_thread_keeps_lease_fresh(self, daemon, clock):
        daemon.start()
        try:
            start = clock()
            clock.advance(seconds=60)
            leases = daemon.coordinator.leases
            assert _wait_for(lambda: leases.get("billing-host-1").heartbeat_at > start)
        finally:
            daemon.shutdown()

    def test_shutdown_hands_over_to_embedded(self, daemon):
        daemon.start()
        daemon.shutdown()

        record = daemon.coordinator.leases.get("billing-host-1")
        assert record.status is ExecutorStatus.STOPPED
        assert daemon.coordinator.should_execute(EMBEDDED_EXECUTOR_ID)

    def test_shutdown_without_start_is_noop(self, daemon):
        daemon.shutdown()
        assert daemon.coordinator.leases.get("billing-host-1") is None

    def test_run_sweeps_immediately_then_stops(self, db, clock, ledger, daemon):
        seed_plan(db)
        seed_account(ledger)
        seed_instance(db)
        clock.advance(hours=2)

        results = []
        sweep_once = daemon.run_once

        def run_once_then_stop():
            result = sweep_once()
            results.append(result)
            daemon.request_stop(signal.SIGTERM)
            return result

        daemon.run_once = run_once_then_stop
        daemon.run(install_signal_handlers=False)

        assert len(results) == 1
        assert results[0].instances_billed == 1
        assert ledger.get_balance("acct-1") == Decimal("9.96")
        record = daemon.coordinator.leases.get("billing-host-1")
        assert record.status is ExecutorStatus.STOPPED
        assert record.last_run_outcome is RunOutcome.SUCCESS

    def test_repeated_stop_request_is_ignored(self, daemon):
        daemon.request_stop(signal.SIGINT)
        daemon.request_stop(signal.SIGINT)
        assert daemon._stop.is_set()
