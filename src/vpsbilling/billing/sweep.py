"""
Billing Sweep Engine

One execution pass over billable instances:

    lease check -> list billable (oldest watermark first) -> per instance:
        window -> hours -> rate -> amount -> pending cycle -> debit -> outcome

Only the lease check and the instance-list read abort a sweep. Everything
after that is contained per instance. The executor's heartbeat row is written
whatever happens.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional
import time

import structlog

from ..config import BillingConfig
from ..core.clock import Clock, to_iso, utcnow
from ..core.errors import ConfigurationError, InvariantViolationError, StaleWatermarkError
from ..core.rates import RateResolver
from ..persistence.database import Database, get_database
from ..persistence.models import BillingCycleRecord, CycleStatus, InstanceRecord, RunOutcome
from ..persistence.repository import PlanRepository
from .collaborators import LoggingNotifier, SuspensionNotifier
from .lease import LeaseCoordinator
from .ledger import DebitResult, Ledger
from .tracker import BillingCycleTracker

logger = structlog.get_logger()


class InstanceOutcome(Enum):
    """What a sweep did with one instance."""
    BILLED = "billed"
    FAILED = "failed"      # debit declined, watermark unchanged
    SKIPPED = "skipped"    # nothing to bill, or excluded this tick
    ERROR = "error"        # unexpected exception, contained to the instance


@dataclass
class SweepResult:
    """Summary of one run_sweep call."""
    executor_id: str
    started_at: datetime
    executed: bool = True
    outcome: RunOutcome = RunOutcome.SUCCESS
    instances_considered: int = 0
    instances_billed: int = 0
    instances_failed: int = 0
    instances_skipped: int = 0
    errors: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_hours: Decimal = Decimal(0)
    deadline_reached: bool = False
    error_message: Optional[str] = None
    finished_at: Optional[datetime] = None
    outcomes: Dict[str, InstanceOutcome] = field(default_factory=dict)

    def tally(self, instance_id: str, outcome: InstanceOutcome) -> None:
        self.outcomes[instance_id] = outcome
        if outcome is InstanceOutcome.BILLED:
            self.instances_billed += 1
        elif outcome is InstanceOutcome.FAILED:
            self.instances_failed += 1
        elif outcome is InstanceOutcome.SKIPPED:
            self.instances_skipped += 1
        else:
            self.errors += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor_id": self.executor_id,
            "executed": self.executed,
            "outcome": self.outcome.value,
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "instances_considered": self.instances_considered,
            "instances_billed": self.instances_billed,
            "instances_failed": self.instances_failed,
            "instances_skipped": self.instances_skipped,
            "errors": self.errors,
            "total_amount": str(self.total_amount),
            "total_hours": str(self.total_hours),
            "deadline_reached": self.deadline_reached,
            "error_message": self.error_message,
        }


class SweepEngine:
    """
    Orchestrates billing passes.

    run_sweep() is a plain function of storage and the clock, so it can be
    driven by the embedded scheduler, the standalone daemon, the CLI or a
    test harness alike.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        config: Optional[BillingConfig] = None,
        rates: Optional[RateResolver] = None,
        ledger: Optional[Ledger] = None,
        tracker: Optional[BillingCycleTracker] = None,
        coordinator: Optional[LeaseCoordinator] = None,
        notifier: Optional[SuspensionNotifier] = None,
        clock: Clock = utcnow,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.db = db or get_database()
        self.config = config or BillingConfig()
        self.clock = clock
        self.rates = rates or RateResolver(PlanRepository(self.db), self.config.hours_per_month)
        self.ledger = ledger or Ledger(self.db, clock=clock)
        self.tracker = tracker or BillingCycleTracker(self.db, clock=clock)
        self.coordinator = coordinator or LeaseCoordinator(
            self.db, lease_window=self.config.lease_window, clock=clock
        )
        self.notifier = notifier or LoggingNotifier()
        self._timer = timer

    def run_sweep(self, executor_id: str, now: Optional[datetime] = None) -> SweepResult:
        """Run one billing pass as `executor_id`. Never raises."""
        now = now or self.clock()
        result = SweepResult(executor_id=executor_id, started_at=now)

        try:
            decision = self.coordinator.decide(executor_id, now)
        except Exception as e:
            return self._abort(result, "lease_check", e)

        if not decision.should_execute:
            result.executed = False
            result.outcome = RunOutcome.DEFERRED
            logger.info(
                "sweep_deferred",
                executor_id=executor_id,
                reason=decision.reason,
                live_standalone=decision.live_standalone,
            )
            return self._finish(result)

        try:
            instances = self.tracker.instances.list_billable(self.config.max_instances_per_sweep)
        except Exception as e:
            return self._abort(result, "list_billable", e)

        logger.info("sweep_started", executor_id=executor_id, instances=len(instances))
        deadline = self._timer() + self.config.sweep_deadline_seconds

        for instance in instances:
            if self._timer() >= deadline:
                result.deadline_reached = True
                logger.warning(
                    "sweep_deadline_reached",
                    executor_id=executor_id,
                    processed=result.instances_considered,
                    remaining=len(instances) - result.instances_considered,
                )
                break
            result.instances_considered += 1
            result.tally(instance.instance_id, self.bill_instance(instance, now, executor_id, result))

        if result.errors:
            result.outcome = RunOutcome.FAILURE
            result.error_message = f"{result.errors} instance(s) raised during billing"

        logger.info(
            "sweep_completed",
            executor_id=executor_id,
            billed=result.instances_billed,
            failed=result.instances_failed,
            skipped=result.instances_skipped,
            errors=result.errors,
            total_amount=str(result.total_amount),
            total_hours=str(result.total_hours),
            deadline_reached=result.deadline_reached,
        )
        return self._finish(result)

    def bill_instance(
        self,
        instance: InstanceRecord,
        now: datetime,
        executor_id: str,
        result: Optional[SweepResult] = None,
    ) -> InstanceOutcome:
        """Bill one instance up to `now`. Exceptions are contained here."""
        instance_id = instance.instance_id
        try:
            window = self.tracker.next_cycle(instance, now)
            if window is None:
                return self._skip(instance_id, "nothing_billable")

            hours = window.hours
            if hours < self.config.min_billable_hours:
                return self._skip(instance_id, "below_min_granularity", hours=str(hours))

            rate = self.rates.resolve_rate(instance)
            amount = self.tracker.amount_due(instance_id, hours, rate)
            if amount <= 0:
                return self._skip(instance_id, "zero_amount", hours=str(hours), rate=str(rate))

            cycle, resumed = self.tracker.open_cycle(instance, window, rate, amount, executor_id)
        except ConfigurationError as e:
            return self._skip(instance_id, "configuration_error", error=str(e))
        except StaleWatermarkError as e:
            return self._skip(instance_id, "stale_watermark", error=str(e))
        except Exception as e:
            logger.error("instance_billing_error", instance_id=instance_id, stage="open_cycle", error=str(e))
            return InstanceOutcome.ERROR

        try:
            debit = self.ledger.debit(
                cycle.account_id,
                cycle.amount,
                cycle.idempotency_key,
                description=f"Usage {instance_id} {to_iso(cycle.period_start)} - {to_iso(cycle.period_end)}",
            )
        except Exception as e:
            # The cycle stays pending and is resumed with the same key next tick
            logger.error(
                "instance_billing_error",
                instance_id=instance_id,
                cycle_id=cycle.cycle_id,
                stage="debit",
                error=str(e),
            )
            return InstanceOutcome.ERROR

        if debit.applied:
            return self._record_billed(cycle, debit, resumed, result)
        return self._record_declined(cycle, debit)

    def _record_billed(
        self,
        cycle: BillingCycleRecord,
        debit: DebitResult,
        resumed: bool,
        result: Optional[SweepResult],
    ) -> InstanceOutcome:
        try:
            self.tracker.record_outcome(cycle, CycleStatus.BILLED, ledger_transaction_id=debit.transaction_id)
        except InvariantViolationError as e:
            logger.critical(
                "billing_invariant_violation",
                instance_id=cycle.instance_id,
                cycle_id=cycle.cycle_id,
                transaction_id=debit.transaction_id,
                error=str(e),
            )
            return InstanceOutcome.ERROR
        except Exception as e:
            logger.error(
                "instance_billing_error",
                instance_id=cycle.instance_id,
                cycle_id=cycle.cycle_id,
                stage="record_outcome",
                error=str(e),
            )
            return InstanceOutcome.ERROR

        if result is not None:
            result.total_amount += cycle.amount
            result.total_hours += cycle.hours

        logger.info(
            "instance_billed",
            instance_id=cycle.instance_id,
            account_id=cycle.account_id,
            cycle_id=cycle.cycle_id,
            period_start=to_iso(cycle.period_start),
            period_end=to_iso(cycle.period_end),
            hours=str(cycle.hours),
            hourly_rate=str(cycle.hourly_rate),
            amount=str(cycle.amount),
            balance=str(debit.new_balance),
            resumed=resumed,
            replayed=debit.replayed,
        )
        return InstanceOutcome.BILLED

    def _record_declined(self, cycle: BillingCycleRecord, debit: DebitResult) -> InstanceOutcome:
        try:
            self.tracker.record_outcome(cycle, CycleStatus.FAILED, failure_reason="insufficient_funds")
        except Exception as e:
            logger.error(
                "instance_billing_error",
                instance_id=cycle.instance_id,
                cycle_id=cycle.cycle_id,
                stage="record_outcome",
                error=str(e),
            )
            return InstanceOutcome.ERROR

        logger.warning(
            "instance_billing_failed",
            instance_id=cycle.instance_id,
            account_id=cycle.account_id,
            cycle_id=cycle.cycle_id,
            amount=str(cycle.amount),
            balance=str(debit.new_balance),
            reason="insufficient_funds",
        )

        try:
            self.notifier.notify_insufficient_funds(
                cycle.account_id, cycle.instance_id, cycle.amount, debit.new_balance
            )
        except Exception as e:
            logger.warning("suspension_notify_failed", account_id=cycle.account_id, error=str(e))

        return InstanceOutcome.FAILED

    def _skip(self, instance_id: str, reason: str, **context: Any) -> InstanceOutcome:
        log = logger.warning if reason in ("configuration_error", "stale_watermark") else logger.debug
        log("instance_skipped", instance_id=instance_id, reason=reason, **context)
        return InstanceOutcome.SKIPPED

    def _abort(self, result: SweepResult, stage: str, error: Exception) -> SweepResult:
        result.outcome = RunOutcome.FAILURE
        result.error_message = f"{stage}: {error}"
        logger.error("sweep_aborted", executor_id=result.executor_id, stage=stage, error=str(error))
        return self._finish(result)

    def _finish(self, result: SweepResult) -> SweepResult:
        """Write the executor heartbeat for this attempt, billed or not."""
        result.finished_at = max(self.clock(), result.started_at)
        try:
            self.coordinator.record_run(
                result.executor_id,
                result.outcome,
                instances_billed=result.instances_billed,
                total_amount=result.total_amount,
                total_hours=result.total_hours,
                error_message=result.error_message,
                now=result.finished_at,
            )
        except Exception as e:
            logger.error("heartbeat_write_failed", executor_id=result.executor_id, error=str(e))
        return result
