"""
Persistence Layer for VPS Billing

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    EMBEDDED_EXECUTOR_ID,
    AccountRecord,
    BillingCycleRecord,
    CycleStatus,
    ExecutorStatus,
    InstanceRecord,
    LeaseRecord,
    LedgerTransactionRecord,
    RunOutcome,
)
from .repository import (
    AccountRepository,
    BillingCycleRepository,
    InstanceRepository,
    LeaseRepository,
    PlanRepository,
)

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "EMBEDDED_EXECUTOR_ID",
    "AccountRecord",
    "BillingCycleRecord",
    "CycleStatus",
    "ExecutorStatus",
    "InstanceRecord",
    "LeaseRecord",
    "LedgerTransactionRecord",
    "RunOutcome",
    "AccountRepository",
    "BillingCycleRepository",
    "InstanceRepository",
    "LeaseRepository",
    "PlanRepository",
]
