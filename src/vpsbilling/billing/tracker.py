"""
Billing Cycle Tracker

Owns what has already been billed per instance. Each new cycle starts at the
instance's watermark (last successful bill, or creation time), and a cycle is
marked billed in the same transaction that advances the watermark to its
period_end. Those two writes never commit separately.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import uuid

import structlog

from ..core.clock import Clock, elapsed_hours, utcnow
from ..core.errors import ConfigurationError, InvariantViolationError, StaleWatermarkError
from ..core.rates import RateResolver, quantize_money
from ..persistence.database import Database, get_database
from ..persistence.models import BillingCycleRecord, CycleStatus, InstanceRecord
from ..persistence.repository import BillingCycleRepository, InstanceRepository

logger = structlog.get_logger()

# Precision of stored cycle hours
HOURS_QUANTUM = Decimal("0.000000001")


@dataclass(frozen=True)
class CycleWindow:
    """Half-open billing window [period_start, period_end)."""
    period_start: datetime
    period_end: datetime

    @property
    def hours(self) -> Decimal:
        return elapsed_hours(self.period_start, self.period_end).quantize(HOURS_QUANTUM)


class BillingCycleTracker:
    """Derives cycle windows from watermarks and records cycle outcomes."""

    def __init__(self, db: Optional[Database] = None, clock: Clock = utcnow):
        self.db = db or get_database()
        self.instances = InstanceRepository(self.db)
        self.cycles = BillingCycleRepository(self.db)
        self.clock = clock

    def next_cycle(self, instance: InstanceRecord, now: Optional[datetime] = None) -> Optional[CycleWindow]:
        """
        Window to bill next: [watermark, now), clipped at deleted_at.

        Returns None when the instance has nothing billable.
        """
        end = instance.billable_until(now or self.clock())
        if end is None or end <= instance.watermark:
            return None
        return CycleWindow(period_start=instance.watermark, period_end=end)

    def amount_due(self, instance_id: str, hours: Decimal, hourly_rate: Decimal) -> Decimal:
        """
        Charge for `hours` more usage at `hourly_rate`, rounded cumulatively.

        Rounds rate x (hours already charged at this rate + `hours`) to the
        cent and subtracts what was already charged at this rate, so the
        instance's total never drifts more than half a minor unit from
        rate x billed hours. Zero means the usage is not yet worth a cent.
        """
        billed_hours, billed_amount = self.cycles.accrued(instance_id, hourly_rate)
        return quantize_money(hourly_rate * (billed_hours + hours)) - billed_amount

    def open_cycle(
        self,
        instance: InstanceRecord,
        window: CycleWindow,
        hourly_rate: Decimal,
        amount: Decimal,
        executor_id: Optional[str] = None,
    ) -> Tuple[BillingCycleRecord, bool]:
        """
        Create a pending cycle, or resume the pending cycle already open at the
        same period_start.

        Returns (cycle, resumed). A resumed cycle keeps its original id,
        bounds and amount so that its ledger idempotency key is unchanged.
        Raises StaleWatermarkError if the watermark moved since `window` was
        computed.
        """
        now = self.clock()
        with self.db.transaction() as tx:
            current = self.instances.lock(tx, instance.instance_id)
            if current is None or current.watermark != window.period_start:
                raise StaleWatermarkError(
                    instance.instance_id,
                    window.period_start,
                    current.watermark if current else None,
                )

            pending = self.cycles.find_pending(tx, instance.instance_id, window.period_start)
            if pending is not None:
                logger.info(
                    "billing_cycle_resumed",
                    cycle_id=pending.cycle_id,
                    instance_id=instance.instance_id,
                )
                return pending, True

            cycle = BillingCycleRecord(
                cycle_id=str(uuid.uuid4()),
                instance_id=instance.instance_id,
                account_id=instance.account_id,
                period_start=window.period_start,
                period_end=window.period_end,
                hourly_rate=hourly_rate,
                hours=window.hours,
                amount=quantize_money(amount),
                status=CycleStatus.PENDING,
                executor_id=executor_id,
                created_at=now,
                updated_at=now,
            )
            self.cycles.insert(tx, cycle)

        logger.debug(
            "billing_cycle_opened",
            cycle_id=cycle.cycle_id,
            instance_id=cycle.instance_id,
            period_start=cycle.period_start.isoformat(),
            period_end=cycle.period_end.isoformat(),
            amount=str(cycle.amount),
        )
        return cycle, False

    def record_outcome(
        self,
        cycle: BillingCycleRecord,
        status: CycleStatus,
        ledger_transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> BillingCycleRecord:
        """
        Record the result of a debit attempt for a cycle.

        BILLED requires the confirmed ledger transaction and advances the
        watermark to period_end atomically with the status change. FAILED
        leaves the watermark where it is. REFUNDED applies to billed cycles.
        """
        if status is CycleStatus.PENDING:
            raise ValueError("A cycle cannot be moved back to pending")
        if status is CycleStatus.BILLED:
            return self._mark_billed(cycle, ledger_transaction_id)

        now = self.clock()
        from_status = CycleStatus.BILLED if status is CycleStatus.REFUNDED else CycleStatus.PENDING
        with self.db.transaction() as tx:
            current = self.cycles.lock(tx, cycle.cycle_id)
            if current is None:
                raise InvariantViolationError(f"Unknown billing cycle {cycle.cycle_id}")
            if current.status is status:
                return current
            if not self.cycles.set_status(
                tx,
                cycle.cycle_id,
                status,
                now,
                ledger_transaction_id=ledger_transaction_id or current.ledger_transaction_id,
                failure_reason=failure_reason,
                from_status=from_status,
            ):
                raise InvariantViolationError(
                    f"Cycle {cycle.cycle_id} is {current.status.value}, cannot become {status.value}"
                )

        logger.info(
            "billing_cycle_recorded",
            cycle_id=cycle.cycle_id,
            instance_id=cycle.instance_id,
            status=status.value,
            reason=failure_reason,
        )
        cycle.status = status
        cycle.failure_reason = failure_reason
        cycle.updated_at = now
        return cycle

    def _mark_billed(self, cycle: BillingCycleRecord, ledger_transaction_id: Optional[str]) -> BillingCycleRecord:
        if not ledger_transaction_id:
            raise InvariantViolationError(
                f"Cycle {cycle.cycle_id} cannot be billed without a ledger transaction"
            )

        now = self.clock()
        with self.db.transaction() as tx:
            instance = self.instances.lock(tx, cycle.instance_id)
            current = self.cycles.lock(tx, cycle.cycle_id)
            if instance is None or current is None:
                raise InvariantViolationError(f"Unknown cycle or instance for {cycle.cycle_id}")

            if current.status is CycleStatus.BILLED:
                if current.ledger_transaction_id == ledger_transaction_id:
                    return current
                raise InvariantViolationError(
                    f"Cycle {cycle.cycle_id} already billed under {current.ledger_transaction_id}"
                )

            if instance.watermark != current.period_start:
                raise InvariantViolationError(
                    f"Watermark of {cycle.instance_id} is {instance.watermark.isoformat()}, "
                    f"cycle starts at {current.period_start.isoformat()}"
                )

            if not self.cycles.set_status(
                tx, cycle.cycle_id, CycleStatus.BILLED, now,
                ledger_transaction_id=ledger_transaction_id,
            ):
                raise InvariantViolationError(
                    f"Cycle {cycle.cycle_id} is {current.status.value}, cannot become billed"
                )
            if not self.instances.advance_watermark(
                tx, cycle.instance_id, instance.last_billed_at, current.period_end
            ):
                raise InvariantViolationError(
                    f"Watermark of {cycle.instance_id} changed while billing {cycle.cycle_id}"
                )

        cycle.status = CycleStatus.BILLED
        cycle.ledger_transaction_id = ledger_transaction_id
        cycle.updated_at = now
        return cycle

    def history(self, instance_id: str, limit: int = 100, offset: int = 0) -> List[BillingCycleRecord]:
        """Billing cycles of one instance in period order (for invoicing)."""
        return self.cycles.history(instance_id, limit=limit, offset=offset)

    def account_history(self, account_id: str, limit: int = 50, offset: int = 0) -> List[BillingCycleRecord]:
        return self.cycles.history_for_account(account_id, limit=limit, offset=offset)

    def summary(self, account_id: str, rates: RateResolver, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Spend this month / all time, billable instance count and monthly estimate."""
        now = now or self.clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        billable = [
            i for i in self.instances.list_by_account(account_id)
            if i.lifecycle_state.is_billable
        ]
        estimate = Decimal("0.00")
        for instance in billable:
            try:
                estimate += rates.monthly_estimate(instance)
            except ConfigurationError as e:
                logger.warning("monthly_estimate_unavailable", instance_id=instance.instance_id, error=str(e))

        return {
            "account_id": account_id,
            "total_spent_this_month": str(self.cycles.total_billed(account_id, since=month_start)),
            "total_spent_all_time": str(self.cycles.total_billed(account_id)),
            "billable_instance_count": len(billable),
            "monthly_estimate": str(estimate),
        }
