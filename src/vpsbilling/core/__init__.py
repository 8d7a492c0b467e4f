"""
VPS Billing - Core Module

Pure domain pieces: lifecycle states, rate resolution, money and clock
helpers, and the error taxonomy. Nothing here touches storage.
"""

from .clock import Clock, ManualClock, elapsed_hours, utcnow
from .errors import (
    BillingError,
    ConfigurationError,
    InactivePlanError,
    InvariantViolationError,
    LedgerError,
    PlanNotFoundError,
    StaleWatermarkError,
)
from .lifecycle import LifecycleState
from .rates import BackupTier, Plan, RateBreakdown, RateResolver, quantize_money

__all__ = [
    "Clock",
    "ManualClock",
    "elapsed_hours",
    "utcnow",
    "BillingError",
    "ConfigurationError",
    "InactivePlanError",
    "InvariantViolationError",
    "LedgerError",
    "PlanNotFoundError",
    "StaleWatermarkError",
    "LifecycleState",
    "BackupTier",
    "Plan",
    "RateBreakdown",
    "RateResolver",
    "quantize_money",
]
