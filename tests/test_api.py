"""
Tests for FastAPI Endpoints

Integration tests for the billing status and history API.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from vpsbilling.api.server import app
from vpsbilling.billing.lease import LeaseCoordinator
from vpsbilling.billing.ledger import Ledger
from vpsbilling.core.clock import utcnow
from vpsbilling.persistence.database import Database

from conftest import seed_account, seed_instance, seed_plan


@pytest.fixture
def seed_db(temp_db):
    """Database handle on the same file the app uses."""
    db = Database(f"sqlite:///{temp_db}")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def client(temp_db, seed_db, monkeypatch):
    """Create test client with the lifespan running."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{temp_db}")
    monkeypatch.setenv("EMBEDDED_BILLING_ENABLED", "false")
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


@pytest.fixture
def billable(seed_db):
    """One running instance created two hours ago on a funded account."""
    seed_plan(seed_db)
    seed_account(Ledger(seed_db), "acct-1", "10.00")
    seed_instance(seed_db, created_at=utcnow() - timedelta(hours=2))
    return "inst-1"


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert data["embedded_billing"] is False
        assert "version" in data
        assert "uptime_seconds" in data


class TestSweepEndpoint:
    """Manual sweep trigger."""

    def test_sweep_requires_auth(self, client):
        response = client.post("/billing/sweep")
        assert response.status_code == 422  # Missing header

    def test_sweep_invalid_api_key(self, client):
        response = client.post("/billing/sweep", headers={"X-API-Key": "wrong"})
        assert response.status_code == 401

    def test_sweep_bills_instance(self, client, auth_headers, billable):
        response = client.post("/billing/sweep", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["executor_id"] == "embedded"
        assert data["executed"] is True
        assert data["outcome"] == "success"
        assert data["instances_billed"] == 1
        assert Decimal(data["total_amount"]) == Decimal("0.04")

    def test_sweep_deferred_while_daemon_live(self, client, auth_headers, billable, seed_db):
        LeaseCoordinator(seed_db).heartbeat("billing-host-1")

        response = client.post("/billing/sweep", headers=auth_headers)

        data = response.json()
        assert data["executed"] is False
        assert data["outcome"] == "deferred"
        assert data["instances_billed"] == 0


class TestStatusEndpoint:
    """Executor heartbeat records."""

    def test_status_without_executors(self, client):
        response = client.get("/billing/status")

        assert response.status_code == 200
        data = response.json()
        assert data["executors"] == []
        assert data["embedded_should_execute"] is True
        assert data["daemon"]["status"] == "unknown"
        assert data["lease_window_seconds"] == 90

    def test_status_with_live_daemon(self, client, seed_db):
        LeaseCoordinator(seed_db).heartbeat("billing-host-1", started_at=utcnow(), metadata={"pid": 7})

        data = client.get("/billing/status").json()

        assert data["embedded_should_execute"] is False
        assert data["executors"][0]["executor_id"] == "billing-host-1"
        assert data["executors"][0]["is_live"] is True
        assert data["executors"][0]["metadata"] == {"pid": 7}
        assert data["daemon"]["is_stale"] is False


class TestHistoryEndpoints:
    """Billing history and account summary."""

    def test_cycles_require_auth(self, client, billable):
        response = client.get("/billing/instances/inst-1/cycles")
        assert response.status_code == 422

    def test_cycles_unknown_instance(self, client, auth_headers):
        response = client.get("/billing/instances/ghost/cycles", headers=auth_headers)
        assert response.status_code == 404

    def test_cycles_after_sweep(self, client, auth_headers, billable):
        client.post("/billing/sweep", headers=auth_headers)

        response = client.get("/billing/instances/inst-1/cycles", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["instance_id"] == "inst-1"
        assert len(data["cycles"]) == 1
        cycle = data["cycles"][0]
        assert cycle["status"] == "billed"
        assert cycle["hourly_rate"] == "0.020000"
        assert cycle["ledger_transaction_id"]

    def test_account_summary(self, client, auth_headers, billable):
        client.post("/billing/sweep", headers=auth_headers)

        response = client.get("/billing/accounts/acct-1/summary", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["balance"] == "9.96"
        assert data["currency"] == "USD"
        assert data["total_spent_all_time"] == "0.04"
        assert data["billable_instance_count"] == 1
        assert data["monthly_estimate"] == "14.60"

    def test_summary_unknown_account(self, client, auth_headers):
        response = client.get("/billing/accounts/ghost/summary", headers=auth_headers)
        assert response.status_code == 404
