"""
Tests for BillingConfig loading and validation.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from vpsbilling.config import BillingConfig
from vpsbilling.core.errors import ConfigurationError


class TestDefaults:

    def test_empty_environment(self):
        config = BillingConfig.from_env({})

        assert config.database_url == "sqlite:///vpsbilling.db"
        assert config.billing_interval == timedelta(minutes=5)
        assert config.heartbeat_interval_seconds == 30
        assert config.lease_window == timedelta(seconds=90)
        assert config.min_billable_hours == Decimal("0.01")
        assert config.max_instances_per_sweep == 500
        assert config.sweep_deadline_seconds == 240
        assert config.hours_per_month == Decimal(730)
        assert config.embedded_billing_enabled
        assert config.log_level == "info"

    def test_overrides(self):
        config = BillingConfig.from_env({
            "DATABASE_URL": "postgres://billing@db/billing",
            "BILLING_INTERVAL_SECONDS": "60",
            "LEASE_WINDOW_SECONDS": "120",
            "MIN_BILLABLE_HOURS": "0.05",
            "EMBEDDED_BILLING_ENABLED": "false",
            "CURRENCY": "eur",
            "LOG_FORMAT": "JSON",
            "API_KEY": "secret",
        })

        assert config.database_url.startswith("postgres")
        assert config.billing_interval_seconds == 60
        assert config.lease_window_seconds == 120
        assert config.min_billable_hours == Decimal("0.05")
        assert not config.embedded_billing_enabled
        assert config.currency == "EUR"
        assert config.log_format == "json"
        assert config.api_key == "secret"

    def test_api_key_not_in_repr(self):
        assert "secret" not in repr(BillingConfig.from_env({"API_KEY": "secret"}))


class TestValidation:

    def test_non_integer_interval(self):
        with pytest.raises(ConfigurationError):
            BillingConfig.from_env({"BILLING_INTERVAL_SECONDS": "five"})

    def test_zero_interval(self):
        with pytest.raises(ConfigurationError):
            BillingConfig.from_env({"BILLING_INTERVAL_SECONDS": "0"})

    def test_heartbeat_must_be_inside_lease_window(self):
        with pytest.raises(ConfigurationError):
            BillingConfig.from_env({"HEARTBEAT_INTERVAL_SECONDS": "90", "LEASE_WINDOW_SECONDS": "90"})

    def test_negative_min_hours(self):
        with pytest.raises(ConfigurationError):
            BillingConfig.from_env({"MIN_BILLABLE_HOURS": "-1"})

    def test_bad_log_format(self):
        with pytest.raises(ConfigurationError):
            BillingConfig.from_env({"LOG_FORMAT": "xml"})

    def test_unknown_log_level_falls_back(self):
        assert BillingConfig.from_env({"LOG_LEVEL": "verbose"}).log_level == "info"

    def test_warn_alias(self):
        assert BillingConfig.from_env({"LOG_LEVEL": "WARN"}).log_level == "warning"
