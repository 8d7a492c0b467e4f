"""
Lease Coordinator

Heartbeat-based arbitration between the embedded scheduler (executor id
"embedded") and any standalone billing daemon. There is no lock: every
executor upserts its own row in billing_daemon_status, and liveness is read
from heartbeat age.

Rules:
- An executor is live if it is not stopped and its heartbeat is younger than
  the lease window.
- A standalone executor always runs its sweep.
- The embedded executor runs only when no standalone executor is live.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from ..core.clock import Clock, to_iso, utcnow
from ..core.rates import to_minor
from ..persistence.database import Database, get_database
from ..persistence.models import (
    EMBEDDED_EXECUTOR_ID,
    ExecutorStatus,
    LeaseRecord,
    RunOutcome,
)
from ..persistence.repository import LeaseRepository

logger = structlog.get_logger()

# Comfortably larger than the heartbeat interval to tolerate jitter
LEASE_WINDOW = timedelta(seconds=90)


def is_embedded(executor_id: str) -> bool:
    return executor_id == EMBEDDED_EXECUTOR_ID


@dataclass
class LeaseDecision:
    """Whether an executor may bill on this tick, and why."""
    executor_id: str
    should_execute: bool
    reason: str
    live_standalone: List[str] = field(default_factory=list)


class LeaseCoordinator:
    """Reads and writes executor heartbeat records."""

    def __init__(
        self,
        db: Optional[Database] = None,
        lease_window: timedelta = LEASE_WINDOW,
        clock: Clock = utcnow,
    ):
        self.db = db or get_database()
        self.leases = LeaseRepository(self.db)
        self.lease_window = lease_window
        self.clock = clock

    def live_standalone(self, now: Optional[datetime] = None) -> List[LeaseRecord]:
        now = now or self.clock()
        return [
            record for record in self.leases.list_all()
            if not record.is_embedded and record.is_live(now, self.lease_window)
        ]

    def decide(self, executor_id: str, now: Optional[datetime] = None) -> LeaseDecision:
        """
        Apply the priority rule for one tick.

        Storage errors propagate: a sweep that cannot read the lease table
        must not bill.
        """
        now = now or self.clock()

        if not is_embedded(executor_id):
            return LeaseDecision(
                executor_id=executor_id,
                should_execute=True,
                reason="standalone_authoritative",
            )

        live = [r.executor_id for r in self.live_standalone(now)]
        if live:
            return LeaseDecision(
                executor_id=executor_id,
                should_execute=False,
                reason="standalone_live",
                live_standalone=live,
            )
        return LeaseDecision(
            executor_id=executor_id,
            should_execute=True,
            reason="no_live_standalone",
        )

    def should_execute(self, executor_id: str, now: Optional[datetime] = None) -> bool:
        return self.decide(executor_id, now).should_execute

    def heartbeat(
        self,
        executor_id: str,
        now: Optional[datetime] = None,
        status: ExecutorStatus = ExecutorStatus.RUNNING,
        started_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Idempotent upsert of the executor's heartbeat."""
        now = now or self.clock()
        self.leases.touch(executor_id, status, now, started_at=started_at, metadata=metadata)
        logger.debug("executor_heartbeat", executor_id=executor_id, status=status.value)

    def record_run(
        self,
        executor_id: str,
        outcome: RunOutcome,
        instances_billed: int = 0,
        total_amount: Decimal = Decimal("0.00"),
        total_hours: Decimal = Decimal(0),
        error_message: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Heartbeat plus the summary of the sweep attempt that just finished."""
        now = now or self.clock()
        self.leases.record_run(
            executor_id,
            now,
            outcome,
            instances_billed=instances_billed,
            total_amount_minor=to_minor(total_amount),
            total_hours=total_hours,
            error_message=error_message,
        )

    def mark_stopped(self, executor_id: str, now: Optional[datetime] = None) -> None:
        """A stopped executor is never live, so others take over on their next tick."""
        self.heartbeat(executor_id, now=now, status=ExecutorStatus.STOPPED)
        logger.info("executor_stopped", executor_id=executor_id)

    def statuses(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """All executor records with derived liveness, for operational dashboards."""
        now = now or self.clock()
        rows = []
        for record in self.leases.list_all():
            age = record.age(now)
            row = record.to_dict()
            row["is_live"] = record.is_live(now, self.lease_window)
            row["age_seconds"] = age.total_seconds() if age is not None else None
            rows.append(row)
        return rows

    def daemon_status(
        self,
        billing_interval: timedelta,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Summary of the most recently seen standalone daemon.

        `warning` is raised when the daemon is stale or has not completed a run
        within one billing interval plus the lease window.
        """
        now = now or self.clock()
        daemons = [r for r in self.leases.list_all() if not r.is_embedded and r.heartbeat_at]
        if not daemons:
            return {
                "status": "unknown",
                "executor_id": None,
                "last_run": None,
                "last_run_outcome": None,
                "instances_billed": 0,
                "total_amount": "0.00",
                "total_hours": "0",
                "next_scheduled_run": None,
                "uptime_minutes": None,
                "is_stale": True,
                "warning": True,
                "error_message": None,
            }

        record = max(daemons, key=lambda r: r.heartbeat_at)
        live = record.is_live(now, self.lease_window)

        uptime_minutes = None
        if live and record.started_at:
            uptime_minutes = int((now - record.started_at).total_seconds() // 60)

        next_run = None
        if live and record.last_run_at:
            next_run = to_iso(record.last_run_at + billing_interval)

        overdue = (
            record.last_run_at is None
            or now - record.last_run_at > billing_interval + self.lease_window
        )

        return {
            "status": record.status.value if live else ExecutorStatus.STOPPED.value,
            "executor_id": record.executor_id,
            "last_run": to_iso(record.last_run_at),
            "last_run_outcome": record.last_run_outcome.value if record.last_run_outcome else None,
            "instances_billed": record.instances_billed,
            "total_amount": str(record.total_amount),
            "total_hours": str(record.total_hours),
            "next_scheduled_run": next_run,
            "uptime_minutes": uptime_minutes,
            "is_stale": not live,
            "warning": (not live) or overdue,
            "error_message": record.error_message,
        }
