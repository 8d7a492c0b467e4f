"""
Billing configuration.

Read once from the environment into a BillingConfig. Invalid values raise
ConfigurationError, except LOG_LEVEL which falls back to info.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
import os
from typing import Mapping, Optional

import structlog

from .core.errors import ConfigurationError

logger = structlog.get_logger()

LOG_LEVELS = ("error", "warn", "warning", "info", "debug")
LOG_FORMATS = ("console", "json")

DEFAULT_DATABASE_URL = "sqlite:///vpsbilling.db"
DEFAULT_API_KEY = "dev-key-change-in-production"


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 1) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _decimal(env: Mapping[str, str], name: str, default: str) -> Decimal:
    raw = env.get(name) or default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a decimal number, got {raw!r}")
    if not value.is_finite() or value < 0:
        raise ConfigurationError(f"{name} must be a non-negative number, got {raw!r}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BillingConfig:
    """Runtime settings shared by the API server, the daemon and the CLI."""
    database_url: str = DEFAULT_DATABASE_URL
    billing_interval_seconds: int = 300
    heartbeat_interval_seconds: int = 30
    lease_window_seconds: int = 90
    min_billable_hours: Decimal = Decimal("0.01")
    max_instances_per_sweep: int = 500
    sweep_deadline_seconds: int = 240
    hours_per_month: Decimal = Decimal(730)
    currency: str = "USD"
    embedded_billing_enabled: bool = True
    log_level: str = "info"
    log_format: str = "console"
    api_key: str = field(default=DEFAULT_API_KEY, repr=False)

    @property
    def billing_interval(self) -> timedelta:
        return timedelta(seconds=self.billing_interval_seconds)

    @property
    def lease_window(self) -> timedelta:
        return timedelta(seconds=self.lease_window_seconds)

    def validate(self) -> "BillingConfig":
        if self.heartbeat_interval_seconds >= self.lease_window_seconds:
            raise ConfigurationError(
                "HEARTBEAT_INTERVAL_SECONDS must be smaller than LEASE_WINDOW_SECONDS "
                f"({self.heartbeat_interval_seconds} >= {self.lease_window_seconds})"
            )
        if self.hours_per_month <= 0:
            raise ConfigurationError("HOURS_PER_MONTH must be positive")
        if len(self.currency) != 3:
            raise ConfigurationError(f"CURRENCY must be a 3-letter code, got {self.currency!r}")
        if self.log_format not in LOG_FORMATS:
            raise ConfigurationError(f"LOG_FORMAT must be one of {LOG_FORMATS}, got {self.log_format!r}")
        return self

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "BillingConfig":
        env = os.environ if env is None else env

        log_level = (env.get("LOG_LEVEL") or "info").strip().lower()
        if log_level not in LOG_LEVELS:
            logger.warning("invalid_log_level", value=log_level, fallback="info")
            log_level = "info"
        if log_level == "warn":
            log_level = "warning"

        config = cls(
            database_url=env.get("DATABASE_URL") or DEFAULT_DATABASE_URL,
            billing_interval_seconds=_int(env, "BILLING_INTERVAL_SECONDS", 300),
            heartbeat_interval_seconds=_int(env, "HEARTBEAT_INTERVAL_SECONDS", 30),
            lease_window_seconds=_int(env, "LEASE_WINDOW_SECONDS", 90),
            min_billable_hours=_decimal(env, "MIN_BILLABLE_HOURS", "0.01"),
            max_instances_per_sweep=_int(env, "MAX_INSTANCES_PER_SWEEP", 500),
            sweep_deadline_seconds=_int(env, "SWEEP_DEADLINE_SECONDS", 240),
            hours_per_month=_decimal(env, "HOURS_PER_MONTH", "730"),
            currency=(env.get("CURRENCY") or "USD").upper(),
            embedded_billing_enabled=_bool(env, "EMBEDDED_BILLING_ENABLED", True),
            log_level=log_level,
            log_format=(env.get("LOG_FORMAT") or "console").strip().lower(),
            api_key=env.get("API_KEY") or DEFAULT_API_KEY,
        )
        return config.validate()
