"""
VPS Billing - Billing Module

Services over the persistence layer:
- Ledger: conditional, idempotent debits against prepaid balances
- BillingCycleTracker: watermarks and cycle outcomes
- LeaseCoordinator: heartbeat arbitration between executors
- SweepEngine: one billing pass
- Schedulers: embedded (asyncio) and standalone daemon (threads)
"""

from .collaborators import LoggingNotifier, ProviderClient, SuspensionNotifier
from .lease import LeaseCoordinator, LeaseDecision
from .ledger import DebitResult, Ledger
from .lifecycle import LifecycleStateCache, RefreshResult
from .scheduler import BillingDaemon, EmbeddedBillingScheduler, generate_executor_id
from .sweep import InstanceOutcome, SweepEngine, SweepResult
from .tracker import BillingCycleTracker, CycleWindow

__all__ = [
    "LoggingNotifier",
    "ProviderClient",
    "SuspensionNotifier",
    "LeaseCoordinator",
    "LeaseDecision",
    "DebitResult",
    "Ledger",
    "LifecycleStateCache",
    "RefreshResult",
    "BillingDaemon",
    "EmbeddedBillingScheduler",
    "generate_executor_id",
    "InstanceOutcome",
    "SweepEngine",
    "SweepResult",
    "BillingCycleTracker",
    "CycleWindow",
]
