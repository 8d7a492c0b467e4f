"""
Repository Layer

CRUD and the few guarded writes the billing engine relies on. Methods taking a
`tx` argument run inside the caller's Transaction so that several writes can
commit atomically.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import json

import structlog

from ..core.clock import to_iso
from ..core.lifecycle import LifecycleState, non_billable_state_values
from ..core.rates import Plan, from_minor, to_decimal
from .database import Database, Transaction, get_database
from .models import (
    AccountRecord,
    BillingCycleRecord,
    CycleStatus,
    ExecutorStatus,
    InstanceRecord,
    LeaseRecord,
    LedgerTransactionRecord,
    RunOutcome,
    plan_from_row,
    plan_to_db_tuple,
)

logger = structlog.get_logger()


class PlanRepository:
    """Repository for plan pricing (read-mostly)."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def upsert(self, plan: Plan, now: datetime) -> Plan:
        self.db.execute(
            """INSERT INTO plans
               (plan_id, name, base_price, markup_price, backup_price, backup_upcharge,
                daily_backups_enabled, weekly_backups_enabled, active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (plan_id) DO UPDATE SET
                 name = excluded.name,
                 base_price = excluded.base_price,
                 markup_price = excluded.markup_price,
                 backup_price = excluded.backup_price,
                 backup_upcharge = excluded.backup_upcharge,
                 daily_backups_enabled = excluded.daily_backups_enabled,
                 weekly_backups_enabled = excluded.weekly_backups_enabled,
                 active = excluded.active,
                 updated_at = excluded.updated_at""",
            plan_to_db_tuple(plan, now)
        )
        logger.info("plan_upserted", plan_id=plan.plan_id, active=plan.active)
        return plan

    def get(self, plan_id: str) -> Optional[Plan]:
        results = self.db.execute("SELECT * FROM plans WHERE plan_id = ?", (plan_id,))
        return plan_from_row(results[0]) if results else None

    def list_all(self) -> List[Plan]:
        results = self.db.execute("SELECT * FROM plans ORDER BY plan_id")
        return [plan_from_row(r) for r in results]


class InstanceRepository:
    """Repository for instance billing fields."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, instance: InstanceRecord) -> InstanceRecord:
        self.db.execute(
            """INSERT INTO instances
               (instance_id, account_id, plan_id, provider_instance_id, label, backup_tier,
                lifecycle_state, state_observed_at, created_at, last_billed_at, deleted_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            instance.to_db_tuple()
        )
        logger.info(
            "instance_registered",
            instance_id=instance.instance_id,
            account_id=instance.account_id,
            plan_id=instance.plan_id,
        )
        return instance

    def get(self, instance_id: str) -> Optional[InstanceRecord]:
        results = self.db.execute(
            "SELECT * FROM instances WHERE instance_id = ?",
            (instance_id,)
        )
        return InstanceRecord.from_row(results[0]) if results else None

    def lock(self, tx: Transaction, instance_id: str) -> Optional[InstanceRecord]:
        """Read an instance inside a transaction, locking its row on PostgreSQL."""
        results = tx.execute(
            "SELECT * FROM instances WHERE instance_id = ?" + tx.lock_clause,
            (instance_id,)
        )
        return InstanceRecord.from_row(results[0]) if results else None

    def list_billable(self, limit: int) -> List[InstanceRecord]:
        """
        Instances with billable time, oldest watermark first.

        Covers every billable lifecycle state plus deleted instances whose
        final period (up to deleted_at) has not been billed yet.
        """
        excluded = non_billable_state_values()
        placeholders = ",".join("?" for _ in excluded)
        results = self.db.execute(
            f"""SELECT * FROM instances
                WHERE lifecycle_state NOT IN ({placeholders})
                   OR (lifecycle_state = ?
                       AND deleted_at IS NOT NULL
                       AND deleted_at > COALESCE(last_billed_at, created_at))
                ORDER BY COALESCE(last_billed_at, created_at) ASC, instance_id ASC
                LIMIT ?""",
            (*excluded, LifecycleState.DELETED.value, limit)
        )
        return [InstanceRecord.from_row(r) for r in results]

    def list_active(self, limit: int = 10000) -> List[InstanceRecord]:
        """Instances not yet deleted (candidates for lifecycle polling)."""
        results = self.db.execute(
            "SELECT * FROM instances WHERE lifecycle_state != ? ORDER BY created_at ASC LIMIT ?",
            (LifecycleState.DELETED.value, limit)
        )
        return [InstanceRecord.from_row(r) for r in results]

    def list_by_account(self, account_id: str) -> List[InstanceRecord]:
        results = self.db.execute(
            "SELECT * FROM instances WHERE account_id = ? ORDER BY created_at ASC",
            (account_id,)
        )
        return [InstanceRecord.from_row(r) for r in results]

    def update_state(
        self,
        tx: Transaction,
        instance_id: str,
        state: LifecycleState,
        observed_at: datetime,
    ) -> bool:
        """
        Record an observed lifecycle state.

        Ignored for deleted instances and for observations older than the
        one already cached.
        """
        tx.execute(
            """UPDATE instances
               SET lifecycle_state = ?, state_observed_at = ?
               WHERE instance_id = ?
                 AND lifecycle_state != ?
                 AND (state_observed_at IS NULL OR state_observed_at <= ?)""",
            (
                state.value,
                to_iso(observed_at),
                instance_id,
                LifecycleState.DELETED.value,
                to_iso(observed_at),
            )
        )
        return tx.rowcount > 0

    def mark_deleted(
        self,
        tx: Transaction,
        instance_id: str,
        observed_at: datetime,
        deleted_at: datetime,
    ) -> bool:
        """
        Move an instance to the terminal deleted state.

        Applies whatever observation is cached; only an instance that is
        already deleted is left alone.
        """
        tx.execute(
            """UPDATE instances
               SET lifecycle_state = ?, state_observed_at = ?, deleted_at = ?
               WHERE instance_id = ? AND lifecycle_state != ?""",
            (
                LifecycleState.DELETED.value,
                to_iso(observed_at),
                to_iso(deleted_at),
                instance_id,
                LifecycleState.DELETED.value,
            )
        )
        return tx.rowcount > 0

    def advance_watermark(
        self,
        tx: Transaction,
        instance_id: str,
        expected: Optional[datetime],
        new_watermark: datetime,
    ) -> bool:
        """Compare-and-set last_billed_at; False if it no longer equals `expected`."""
        if expected is None:
            tx.execute(
                """UPDATE instances SET last_billed_at = ?
                   WHERE instance_id = ? AND last_billed_at IS NULL""",
                (to_iso(new_watermark), instance_id)
            )
        else:
            tx.execute(
                """UPDATE instances SET last_billed_at = ?
                   WHERE instance_id = ? AND last_billed_at = ? AND last_billed_at <= ?""",
                (to_iso(new_watermark), instance_id, to_iso(expected), to_iso(new_watermark))
            )
        return tx.rowcount == 1


class BillingCycleRepository:
    """Repository for billing cycles."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def insert(self, tx: Transaction, cycle: BillingCycleRecord) -> BillingCycleRecord:
        tx.execute(
            """INSERT INTO billing_cycles
               (cycle_id, instance_id, account_id, period_start, period_end, hourly_rate,
                hours, amount_minor, status, ledger_transaction_id, executor_id,
                failure_reason, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            cycle.to_db_tuple()
        )
        return cycle

    def get(self, cycle_id: str) -> Optional[BillingCycleRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_cycles WHERE cycle_id = ?",
            (cycle_id,)
        )
        return BillingCycleRecord.from_row(results[0]) if results else None

    def lock(self, tx: Transaction, cycle_id: str) -> Optional[BillingCycleRecord]:
        results = tx.execute(
            "SELECT * FROM billing_cycles WHERE cycle_id = ?" + tx.lock_clause,
            (cycle_id,)
        )
        return BillingCycleRecord.from_row(results[0]) if results else None

    def find_pending(self, tx: Transaction, instance_id: str, period_start: datetime) -> Optional[BillingCycleRecord]:
        results = tx.execute(
            """SELECT * FROM billing_cycles
               WHERE instance_id = ? AND period_start = ? AND status = ?""",
            (instance_id, to_iso(period_start), CycleStatus.PENDING.value)
        )
        return BillingCycleRecord.from_row(results[0]) if results else None

    def set_status(
        self,
        tx: Transaction,
        cycle_id: str,
        status: CycleStatus,
        now: datetime,
        ledger_transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        from_status: CycleStatus = CycleStatus.PENDING,
    ) -> bool:
        """Transition a cycle out of `from_status`; False if it was no longer in it."""
        tx.execute(
            """UPDATE billing_cycles
               SET status = ?, ledger_transaction_id = ?, failure_reason = ?, updated_at = ?
               WHERE cycle_id = ? AND status = ?""",
            (
                status.value,
                ledger_transaction_id,
                failure_reason,
                to_iso(now),
                cycle_id,
                from_status.value,
            )
        )
        return tx.rowcount == 1

    def history(self, instance_id: str, limit: int = 100, offset: int = 0) -> List[BillingCycleRecord]:
        results = self.db.execute(
            """SELECT * FROM billing_cycles WHERE instance_id = ?
               ORDER BY period_start ASC, created_at ASC LIMIT ? OFFSET ?""",
            (instance_id, limit, offset)
        )
        return [BillingCycleRecord.from_row(r) for r in results]

    def history_for_account(self, account_id: str, limit: int = 50, offset: int = 0) -> List[BillingCycleRecord]:
        results = self.db.execute(
            """SELECT * FROM billing_cycles WHERE account_id = ?
               ORDER BY created_at DESC LIMIT ? OFFSET ?""",
            (account_id, limit, offset)
        )
        return [BillingCycleRecord.from_row(r) for r in results]

    def accrued(self, instance_id: str, hourly_rate: Decimal) -> Tuple[Decimal, Decimal]:
        """
        Hours and amount already charged to an instance at one hourly rate.

        Refunded cycles count: their hours were charged, the refund is a
        separate ledger credit.
        """
        results = self.db.execute(
            """SELECT hourly_rate, hours, amount_minor FROM billing_cycles
               WHERE instance_id = ? AND status IN (?, ?)""",
            (instance_id, CycleStatus.BILLED.value, CycleStatus.REFUNDED.value)
        )
        hours = Decimal(0)
        amount_minor = 0
        for row in results:
            if to_decimal(row["hourly_rate"]) == hourly_rate:
                hours += to_decimal(row["hours"])
                amount_minor += row["amount_minor"]
        return hours, from_minor(amount_minor)

    def total_billed(self, account_id: str, since: Optional[datetime] = None) -> Decimal:
        query = "SELECT COALESCE(SUM(amount_minor), 0) AS total FROM billing_cycles WHERE account_id = ? AND status = ?"
        params: tuple = (account_id, CycleStatus.BILLED.value)
        if since is not None:
            query += " AND created_at >= ?"
            params = params + (to_iso(since),)
        results = self.db.execute(query, params)
        return from_minor(results[0]["total"] if results else 0)


class LeaseRepository:
    """Repository for executor heartbeat records (billing_daemon_status)."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def list_all(self) -> List[LeaseRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_daemon_status ORDER BY heartbeat_at DESC, executor_id ASC"
        )
        return [LeaseRecord.from_row(r) for r in results]

    def get(self, executor_id: str) -> Optional[LeaseRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_daemon_status WHERE executor_id = ?",
            (executor_id,)
        )
        return LeaseRecord.from_row(results[0]) if results else None

    def touch(
        self,
        executor_id: str,
        status: ExecutorStatus,
        now: datetime,
        started_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Upsert heartbeat and status, leaving last-run fields untouched."""
        self.db.execute(
            """INSERT INTO billing_daemon_status
               (executor_id, status, started_at, heartbeat_at, metadata, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (executor_id) DO UPDATE SET
                 status = excluded.status,
                 started_at = COALESCE(excluded.started_at, billing_daemon_status.started_at),
                 heartbeat_at = excluded.heartbeat_at,
                 metadata = COALESCE(excluded.metadata, billing_daemon_status.metadata),
                 updated_at = excluded.updated_at""",
            (
                executor_id,
                status.value,
                to_iso(started_at),
                to_iso(now),
                json.dumps(metadata) if metadata is not None else None,
                to_iso(now),
                to_iso(now),
            )
        )

    def record_run(
        self,
        executor_id: str,
        now: datetime,
        outcome: RunOutcome,
        instances_billed: int,
        total_amount_minor: int,
        total_hours: Decimal,
        error_message: Optional[str],
        status: ExecutorStatus = ExecutorStatus.RUNNING,
    ) -> None:
        """Upsert heartbeat together with the last-run summary."""
        self.db.execute(
            """INSERT INTO billing_daemon_status
               (executor_id, status, started_at, heartbeat_at, last_run_at, last_run_outcome,
                instances_billed, total_amount_minor, total_hours, error_message,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (executor_id) DO UPDATE SET
                 status = excluded.status,
                 heartbeat_at = excluded.heartbeat_at,
                 last_run_at = excluded.last_run_at,
                 last_run_outcome = excluded.last_run_outcome,
                 instances_billed = excluded.instances_billed,
                 total_amount_minor = excluded.total_amount_minor,
                 total_hours = excluded.total_hours,
                 error_message = excluded.error_message,
                 updated_at = excluded.updated_at""",
            (
                executor_id,
                status.value,
                to_iso(now),
                to_iso(now),
                to_iso(now),
                outcome.value,
                instances_billed,
                total_amount_minor,
                str(total_hours),
                error_message,
                to_iso(now),
                to_iso(now),
            )
        )


class AccountRepository:
    """Repository for prepaid balances and their ledger entries."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, account_id: str, now: datetime, currency: str = "USD") -> AccountRecord:
        self.db.execute(
            """INSERT INTO accounts (account_id, balance_minor, currency, created_at, updated_at)
               VALUES (?, 0, ?, ?, ?)
               ON CONFLICT (account_id) DO NOTHING""",
            (account_id, currency, to_iso(now), to_iso(now))
        )
        return self.get(account_id)

    def get(self, account_id: str) -> Optional[AccountRecord]:
        results = self.db.execute(
            "SELECT * FROM accounts WHERE account_id = ?",
            (account_id,)
        )
        return AccountRecord.from_row(results[0]) if results else None

    def balance_minor(self, tx: Transaction, account_id: str) -> Optional[int]:
        results = tx.execute(
            "SELECT balance_minor FROM accounts WHERE account_id = ?",
            (account_id,)
        )
        return results[0]["balance_minor"] if results else None

    def conditional_debit(self, tx: Transaction, account_id: str, amount_minor: int, now: datetime) -> bool:
        """balance -= amount only if balance >= amount, as one statement."""
        tx.execute(
            """UPDATE accounts
               SET balance_minor = balance_minor - ?, updated_at = ?
               WHERE account_id = ? AND balance_minor >= ?""",
            (amount_minor, to_iso(now), account_id, amount_minor)
        )
        return tx.rowcount == 1

    def credit(self, tx: Transaction, account_id: str, amount_minor: int, now: datetime) -> bool:
        tx.execute(
            """UPDATE accounts
               SET balance_minor = balance_minor + ?, updated_at = ?
               WHERE account_id = ?""",
            (amount_minor, to_iso(now), account_id)
        )
        return tx.rowcount == 1

    def find_transaction(self, tx: Transaction, idempotency_key: str) -> Optional[LedgerTransactionRecord]:
        results = tx.execute(
            "SELECT * FROM ledger_transactions WHERE idempotency_key = ?",
            (idempotency_key,)
        )
        return LedgerTransactionRecord.from_row(results[0]) if results else None

    def insert_transaction(self, tx: Transaction, record: LedgerTransactionRecord, amount_minor: int, balance_after_minor: int) -> None:
        tx.execute(
            """INSERT INTO ledger_transactions
               (transaction_id, account_id, kind, amount_minor, balance_after_minor,
                idempotency_key, description, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.transaction_id,
                record.account_id,
                record.kind,
                amount_minor,
                balance_after_minor,
                record.idempotency_key,
                record.description,
                to_iso(record.created_at),
            )
        )

    def transactions(self, account_id: str, limit: int = 50) -> List[LedgerTransactionRecord]:
        results = self.db.execute(
            """SELECT * FROM ledger_transactions WHERE account_id = ?
               ORDER BY created_at DESC LIMIT ?""",
            (account_id, limit)
        )
        return [LedgerTransactionRecord.from_row(r) for r in results]
