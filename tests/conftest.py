"""
Pytest Configuration and Fixtures
"""

import os
import sys
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["EMBEDDED_BILLING_ENABLED"] = "false"

from vpsbilling.billing.ledger import Ledger
from vpsbilling.billing.sweep import SweepEngine
from vpsbilling.config import BillingConfig
from vpsbilling.core.clock import ManualClock
from vpsbilling.core.lifecycle import LifecycleState
from vpsbilling.core.rates import BackupTier, Plan
from vpsbilling.persistence.database import Database
from vpsbilling.persistence.models import InstanceRecord
from vpsbilling.persistence.repository import InstanceRepository, PlanRepository

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeProvider:
    """Provider client returning scripted states; raises for ids in `failing`."""

    def __init__(self, states=None, failing=()):
        self.states = dict(states or {})
        self.failing = set(failing)
        self.calls = []

    def get_instance_state(self, provider_instance_id):
        self.calls.append(provider_instance_id)
        if provider_instance_id in self.failing:
            raise TimeoutError(f"provider timeout for {provider_instance_id}")
        return self.states[provider_instance_id]


class RecordingNotifier:
    """Collects insufficient-funds notifications."""

    def __init__(self, fail=False):
        self.calls = []
        self.fail = fail

    def notify_insufficient_funds(self, account_id, instance_id, amount, balance):
        self.calls.append((account_id, instance_id, amount, balance))
        if self.fail:
            raise RuntimeError("notification service down")


@pytest.fixture
def temp_db():
    """Create a temporary SQLite database file for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "billing.db")
        yield db_path


@pytest.fixture
def db(temp_db):
    """Initialized Database on a fresh SQLite file."""
    database = Database(f"sqlite:///{temp_db}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def clock():
    """Settable clock starting at T0."""
    return ManualClock(T0)


@pytest.fixture
def config():
    return BillingConfig(database_url="sqlite:///unused.db")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger(db, clock):
    return Ledger(db, clock=clock)


@pytest.fixture
def engine(db, config, clock, notifier):
    return SweepEngine(db, config=config, clock=clock, notifier=notifier)


def seed_plan(db, plan_id="plan-small", base_price="14.60", markup_price="0",
              backup_price="0", backup_upcharge="0", active=True, now=T0):
    """Insert a plan. The default prices to exactly 0.02 per hour."""
    plan = Plan(
        plan_id=plan_id,
        name=plan_id,
        base_price=Decimal(base_price),
        markup_price=Decimal(markup_price),
        backup_price=Decimal(backup_price),
        backup_upcharge=Decimal(backup_upcharge),
        active=active,
    )
    return PlanRepository(db).upsert(plan, now)


def seed_account(ledger, account_id="acct-1", balance="10.00"):
    """Open an account and fund it."""
    ledger.open_account(account_id)
    if Decimal(balance) > 0:
        ledger.credit(account_id, Decimal(balance), idempotency_key=f"seed:{account_id}:{balance}")
    return account_id


def seed_instance(db, instance_id="inst-1", account_id="acct-1", plan_id="plan-small",
                  created_at=T0, state=LifecycleState.RUNNING,
                  backup_tier=BackupTier.NONE, provider_instance_id=None):
    """Register an instance row."""
    instance = InstanceRecord(
        instance_id=instance_id,
        account_id=account_id,
        plan_id=plan_id,
        created_at=created_at,
        lifecycle_state=state,
        backup_tier=backup_tier,
        provider_instance_id=provider_instance_id or f"prov-{instance_id}",
        state_observed_at=created_at,
    )
    return InstanceRepository(db).create(instance)
