"""
Data Models for Persistence Layer

Row-level records for the billing tables. Timestamps are UTC datetimes in
memory and ISO strings (SQLite) or TIMESTAMPTZ (PostgreSQL) on disk; money is
Decimal in memory and integer minor units on disk.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
import json

from ..core.clock import parse_timestamp, to_iso, utcnow
from ..core.lifecycle import LifecycleState
from ..core.rates import BackupTier, Plan, from_minor, to_decimal, to_minor

EMBEDDED_EXECUTOR_ID = "embedded"


class CycleStatus(Enum):
    """Billing cycle status."""
    PENDING = "pending"
    BILLED = "billed"
    FAILED = "failed"
    REFUNDED = "refunded"


class ExecutorStatus(Enum):
    """Process state reported by an executor."""
    RUNNING = "running"
    STOPPED = "stopped"


class RunOutcome(Enum):
    """Outcome of an executor's last sweep attempt."""
    SUCCESS = "success"
    FAILURE = "failure"
    DEFERRED = "deferred"  # lease held by another executor


def plan_from_row(row: Dict[str, Any]) -> Plan:
    return Plan(
        plan_id=row["plan_id"],
        name=row.get("name") or "",
        base_price=to_decimal(row["base_price"]),
        markup_price=to_decimal(row.get("markup_price")),
        backup_price=to_decimal(row.get("backup_price")),
        backup_upcharge=to_decimal(row.get("backup_upcharge")),
        daily_backups_enabled=bool(row.get("daily_backups_enabled")),
        weekly_backups_enabled=bool(row.get("weekly_backups_enabled", True)),
        active=bool(row.get("active", True)),
    )


def plan_to_db_tuple(plan: Plan, now: datetime) -> tuple:
    return (
        plan.plan_id,
        plan.name or plan.plan_id,
        str(plan.base_price),
        str(plan.markup_price),
        str(plan.backup_price),
        str(plan.backup_upcharge),
        plan.daily_backups_enabled,
        plan.weekly_backups_enabled,
        plan.active,
        to_iso(now),
        to_iso(now),
    )


@dataclass
class InstanceRecord:
    """Billing-relevant view of a provisioned instance."""
    instance_id: str
    account_id: str
    plan_id: str
    created_at: datetime
    lifecycle_state: LifecycleState = LifecycleState.PROVISIONING
    backup_tier: BackupTier = BackupTier.NONE
    provider_instance_id: Optional[str] = None
    label: Optional[str] = None
    state_observed_at: Optional[datetime] = None
    last_billed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def watermark(self) -> datetime:
        """Boundary up to which this instance is confirmed billed."""
        return self.last_billed_at or self.created_at

    @property
    def is_deleted(self) -> bool:
        return self.lifecycle_state is LifecycleState.DELETED

    def billable_until(self, now: datetime) -> Optional[datetime]:
        """
        End of the currently billable window, or None if nothing is billable.

        Deleted instances accrue only up to their deletion timestamp.
        """
        if self.is_deleted:
            if self.deleted_at is None or self.deleted_at <= self.watermark:
                return None
            return min(self.deleted_at, now)
        if not self.lifecycle_state.is_billable:
            return None
        return now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "account_id": self.account_id,
            "plan_id": self.plan_id,
            "provider_instance_id": self.provider_instance_id,
            "label": self.label,
            "backup_tier": self.backup_tier.value,
            "lifecycle_state": self.lifecycle_state.value,
            "state_observed_at": to_iso(self.state_observed_at),
            "created_at": to_iso(self.created_at),
            "last_billed_at": to_iso(self.last_billed_at),
            "deleted_at": to_iso(self.deleted_at),
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.instance_id,
            self.account_id,
            self.plan_id,
            self.provider_instance_id,
            self.label,
            self.backup_tier.value,
            self.lifecycle_state.value,
            to_iso(self.state_observed_at),
            to_iso(self.created_at),
            to_iso(self.last_billed_at),
            to_iso(self.deleted_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InstanceRecord":
        return cls(
            instance_id=row["instance_id"],
            account_id=row["account_id"],
            plan_id=row["plan_id"],
            provider_instance_id=row.get("provider_instance_id"),
            label=row.get("label"),
            backup_tier=BackupTier(row.get("backup_tier") or "none"),
            lifecycle_state=LifecycleState(row["lifecycle_state"]),
            state_observed_at=parse_timestamp(row.get("state_observed_at")),
            created_at=parse_timestamp(row["created_at"]),
            last_billed_at=parse_timestamp(row.get("last_billed_at")),
            deleted_at=parse_timestamp(row.get("deleted_at")),
        )


@dataclass
class BillingCycleRecord:
    """One attempted charge for one instance covering [period_start, period_end)."""
    cycle_id: str
    instance_id: str
    account_id: str
    period_start: datetime
    period_end: datetime
    hourly_rate: Decimal
    hours: Decimal
    amount: Decimal
    status: CycleStatus = CycleStatus.PENDING
    ledger_transaction_id: Optional[str] = None
    executor_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def idempotency_key(self) -> str:
        return f"billing-cycle:{self.cycle_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "instance_id": self.instance_id,
            "account_id": self.account_id,
            "period_start": to_iso(self.period_start),
            "period_end": to_iso(self.period_end),
            "hourly_rate": str(self.hourly_rate),
            "hours": str(self.hours),
            "amount": str(self.amount),
            "status": self.status.value,
            "ledger_transaction_id": self.ledger_transaction_id,
            "executor_id": self.executor_id,
            "failure_reason": self.failure_reason,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.cycle_id,
            self.instance_id,
            self.account_id,
            to_iso(self.period_start),
            to_iso(self.period_end),
            str(self.hourly_rate),
            str(self.hours),
            to_minor(self.amount),
            self.status.value,
            self.ledger_transaction_id,
            self.executor_id,
            self.failure_reason,
            to_iso(self.created_at),
            to_iso(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BillingCycleRecord":
        return cls(
            cycle_id=row["cycle_id"],
            instance_id=row["instance_id"],
            account_id=row["account_id"],
            period_start=parse_timestamp(row["period_start"]),
            period_end=parse_timestamp(row["period_end"]),
            hourly_rate=to_decimal(row["hourly_rate"]),
            hours=to_decimal(row["hours"]),
            amount=from_minor(row["amount_minor"]),
            status=CycleStatus(row["status"]),
            ledger_transaction_id=row.get("ledger_transaction_id"),
            executor_id=row.get("executor_id"),
            failure_reason=row.get("failure_reason"),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class LeaseRecord:
    """Heartbeat / last-run record of one named executor."""
    executor_id: str
    status: ExecutorStatus = ExecutorStatus.RUNNING
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_run_outcome: Optional[RunOutcome] = None
    instances_billed: int = 0
    total_amount: Decimal = Decimal("0.00")
    total_hours: Decimal = Decimal(0)
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_embedded(self) -> bool:
        return self.executor_id == EMBEDDED_EXECUTOR_ID

    def age(self, now: datetime) -> Optional[timedelta]:
        if self.heartbeat_at is None:
            return None
        return now - self.heartbeat_at

    def is_live(self, now: datetime, lease_window: timedelta) -> bool:
        """Live = running and heartbeat younger than the lease window."""
        if self.status is ExecutorStatus.STOPPED:
            return False
        age = self.age(now)
        return age is not None and age < lease_window

    def to_dict(self) -> Dict[str, Any]:
        return {
            "executor_id": self.executor_id,
            "status": self.status.value,
            "started_at": to_iso(self.started_at),
            "heartbeat_at": to_iso(self.heartbeat_at),
            "last_run_at": to_iso(self.last_run_at),
            "last_run_outcome": self.last_run_outcome.value if self.last_run_outcome else None,
            "instances_billed": self.instances_billed,
            "total_amount": str(self.total_amount),
            "total_hours": str(self.total_hours),
            "error_message": self.error_message,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LeaseRecord":
        metadata = row.get("metadata")
        if isinstance(metadata, str) and metadata:
            metadata = json.loads(metadata)

        outcome = row.get("last_run_outcome")
        return cls(
            executor_id=row["executor_id"],
            status=ExecutorStatus(row["status"]),
            started_at=parse_timestamp(row.get("started_at")),
            heartbeat_at=parse_timestamp(row.get("heartbeat_at")),
            last_run_at=parse_timestamp(row.get("last_run_at")),
            last_run_outcome=RunOutcome(outcome) if outcome else None,
            instances_billed=row.get("instances_billed") or 0,
            total_amount=from_minor(row.get("total_amount_minor") or 0),
            total_hours=to_decimal(row.get("total_hours")),
            error_message=row.get("error_message"),
            metadata=metadata or {},
        )


@dataclass
class AccountRecord:
    """Prepaid balance of an account."""
    account_id: str
    balance: Decimal
    currency: str = "USD"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AccountRecord":
        return cls(
            account_id=row["account_id"],
            balance=from_minor(row["balance_minor"]),
            currency=row.get("currency") or "USD",
        )


@dataclass
class LedgerTransactionRecord:
    """One append-only ledger entry."""
    transaction_id: str
    account_id: str
    kind: str  # "debit" or "credit"
    amount: Decimal
    balance_after: Decimal
    idempotency_key: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "kind": self.kind,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "idempotency_key": self.idempotency_key,
            "description": self.description,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LedgerTransactionRecord":
        return cls(
            transaction_id=row["transaction_id"],
            account_id=row["account_id"],
            kind=row["kind"],
            amount=from_minor(row["amount_minor"]),
            balance_after=from_minor(row["balance_after_minor"]),
            idempotency_key=row["idempotency_key"],
            description=row.get("description"),
            created_at=parse_timestamp(row["created_at"]),
        )
