"""
Tests for the Rate Resolver and money helpers.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from vpsbilling.core.errors import ConfigurationError, InactivePlanError, PlanNotFoundError
from vpsbilling.core.rates import (
    BackupTier,
    Plan,
    RateResolver,
    from_minor,
    quantize_money,
    to_minor,
)
from vpsbilling.persistence.repository import PlanRepository

from conftest import seed_plan


def _instance(plan_id="small", backup_tier=BackupTier.NONE):
    return SimpleNamespace(plan_id=plan_id, backup_tier=backup_tier)


@pytest.fixture
def plans():
    return {
        "small": Plan(plan_id="small", base_price=Decimal("14.60")),
        "marked-up": Plan(plan_id="marked-up", base_price=Decimal("10.00"), markup_price=Decimal("4.60")),
        "backups": Plan(plan_id="backups", base_price=Decimal("14.60"), backup_price=Decimal("3.65")),
        "retired": Plan(plan_id="retired", base_price=Decimal("5.00"), active=False),
        "odd": Plan(plan_id="odd", base_price=Decimal("10.00")),
    }


class TestResolveRate:
    """Hourly rate from monthly plan prices."""

    def test_base_price_only(self, plans):
        resolver = RateResolver(plans)
        assert resolver.resolve_rate(_instance("small")) == Decimal("0.020000")

    def test_markup_added_to_base(self, plans):
        resolver = RateResolver(plans)
        assert resolver.resolve_rate(_instance("marked-up")) == Decimal("0.020000")

    def test_weekly_backup_surcharge(self, plans):
        resolver = RateResolver(plans)
        rate = resolver.resolve_rate(_instance("backups", BackupTier.WEEKLY))
        assert rate == Decimal("0.025000")

    def test_daily_backup_is_one_and_a_half_weekly(self, plans):
        resolver = RateResolver(plans)
        weekly = resolver.breakdown("backups", BackupTier.WEEKLY).backup_hourly
        daily = resolver.breakdown("backups", BackupTier.DAILY).backup_hourly
        assert daily == weekly * Decimal("1.5")
        assert resolver.resolve_rate(_instance("backups", BackupTier.DAILY)) == Decimal("0.027500")

    def test_no_backup_tier_ignores_backup_price(self, plans):
        resolver = RateResolver(plans)
        assert resolver.resolve_rate(_instance("backups", BackupTier.NONE)) == Decimal("0.020000")

    def test_rate_quantized_to_six_places(self, plans):
        resolver = RateResolver(plans)
        # 10.00 / 730 = 0.0136986...
        assert resolver.resolve_rate(_instance("odd")) == Decimal("0.013699")

    def test_custom_hours_per_month(self, plans):
        resolver = RateResolver(plans, hours_per_month=Decimal(720))
        assert resolver.resolve_rate(_instance("marked-up")) == Decimal("0.020278")

    def test_monthly_estimate(self, plans):
        resolver = RateResolver(plans)
        assert resolver.monthly_estimate(_instance("small")) == Decimal("14.60")


class TestRateErrors:
    """Missing and inactive plans are configuration errors."""

    def test_missing_plan(self, plans):
        resolver = RateResolver(plans)
        with pytest.raises(PlanNotFoundError) as exc:
            resolver.resolve_rate(_instance("nope"))
        assert exc.value.plan_id == "nope"

    def test_inactive_plan(self, plans):
        resolver = RateResolver(plans)
        with pytest.raises(InactivePlanError):
            resolver.resolve_rate(_instance("retired"))

    def test_errors_are_configuration_errors(self, plans):
        resolver = RateResolver(plans)
        for plan_id in ("nope", "retired"):
            with pytest.raises(ConfigurationError):
                resolver.resolve_rate(_instance(plan_id))


class TestPlanStore:
    """Resolver backed by the plans table."""

    def test_resolves_from_repository(self, db):
        seed_plan(db, "db-plan", base_price="7.30", markup_price="7.30")
        resolver = RateResolver(PlanRepository(db))
        assert resolver.resolve_rate(_instance("db-plan")) == Decimal("0.020000")

    def test_deactivated_plan_in_repository(self, db):
        seed_plan(db, "db-plan", active=False)
        resolver = RateResolver(PlanRepository(db))
        with pytest.raises(InactivePlanError):
            resolver.resolve_rate(_instance("db-plan"))


class TestMoney:
    """Minor-unit rounding and conversion."""

    def test_round_half_even(self):
        assert quantize_money(Decimal("0.005")) == Decimal("0.00")
        assert quantize_money(Decimal("0.015")) == Decimal("0.02")
        assert quantize_money(Decimal("0.025")) == Decimal("0.02")
        assert quantize_money(Decimal("0.0251")) == Decimal("0.03")

    def test_minor_units(self):
        assert to_minor(Decimal("1.23")) == 123
        assert from_minor(123) == Decimal("1.23")
        assert from_minor(0) == Decimal("0.00")
