"""
Rate Resolver

Effective hourly rate for an instance:

    hourly = (base_price + markup_price) / HOURS_PER_MONTH
           + (backup_price + backup_upcharge) * tier_multiplier / HOURS_PER_MONTH

Plan prices are monthly. The daily backup tier costs 1.5x the weekly tier.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, Optional

from .errors import InactivePlanError, PlanNotFoundError

HOURS_PER_MONTH = Decimal(730)

# Currency minor unit (cents)
MINOR_UNIT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100

# Precision for stored hourly rates
RATE_PRECISION = Decimal("0.000001")


class BackupTier(Enum):
    """Backup add-on selected for an instance."""
    NONE = "none"
    WEEKLY = "weekly"
    DAILY = "daily"

    @property
    def multiplier(self) -> Decimal:
        return BACKUP_MULTIPLIERS[self]


BACKUP_MULTIPLIERS = {
    BackupTier.NONE: Decimal(0),
    BackupTier.WEEKLY: Decimal(1),
    BackupTier.DAILY: Decimal("1.5"),
}


def quantize_money(amount: Decimal) -> Decimal:
    """Round to the currency's minor unit using round-half-to-even."""
    return Decimal(amount).quantize(MINOR_UNIT, rounding=ROUND_HALF_EVEN)


def to_minor(amount: Decimal) -> int:
    """Convert a major-unit amount to integer minor units (amount must already be quantized)."""
    return int(quantize_money(amount) * MINOR_UNITS_PER_MAJOR)


def from_minor(minor: int) -> Decimal:
    return (Decimal(int(minor)) / MINOR_UNITS_PER_MAJOR).quantize(MINOR_UNIT)


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


@dataclass(frozen=True)
class Plan:
    """Plan pricing, all prices monthly in major units."""
    plan_id: str
    base_price: Decimal
    markup_price: Decimal = Decimal(0)
    backup_price: Decimal = Decimal(0)
    backup_upcharge: Decimal = Decimal(0)
    active: bool = True
    name: str = ""
    daily_backups_enabled: bool = False
    weekly_backups_enabled: bool = True


@dataclass(frozen=True)
class RateBreakdown:
    """Components of an hourly rate, for audit and display."""
    plan_id: str
    base_hourly: Decimal
    backup_hourly: Decimal
    hourly_rate: Decimal
    backup_tier: BackupTier


class RateResolver:
    """
    Resolves the effective hourly rate of an instance.

    Pure with respect to the plan store: it reads plans and never writes.
    Missing and inactive plans raise ConfigurationError subclasses so the
    caller can exclude the one instance instead of aborting a sweep.
    """

    def __init__(self, plans: Any, hours_per_month: Optional[Decimal] = None):
        # plans: anything with get(plan_id) -> Optional[Plan]
        self.plans = plans
        self.hours_per_month = Decimal(hours_per_month or HOURS_PER_MONTH)

    def breakdown(self, plan_id: str, backup_tier: BackupTier = BackupTier.NONE) -> RateBreakdown:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        if not plan.active:
            raise InactivePlanError(plan_id)

        base_hourly = (plan.base_price + plan.markup_price) / self.hours_per_month
        backup_hourly = (
            (plan.backup_price + plan.backup_upcharge) * backup_tier.multiplier / self.hours_per_month
        )
        hourly = (base_hourly + backup_hourly).quantize(RATE_PRECISION, rounding=ROUND_HALF_EVEN)

        return RateBreakdown(
            plan_id=plan_id,
            base_hourly=base_hourly,
            backup_hourly=backup_hourly,
            hourly_rate=hourly,
            backup_tier=backup_tier,
        )

    def resolve_rate(self, instance: Any) -> Decimal:
        """Hourly rate for an instance (anything with plan_id and backup_tier)."""
        return self.breakdown(instance.plan_id, instance.backup_tier).hourly_rate

    def monthly_estimate(self, instance: Any) -> Decimal:
        return quantize_money(self.resolve_rate(instance) * self.hours_per_month)
