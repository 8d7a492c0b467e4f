"""
Billing error taxonomy.

Insufficient funds is deliberately absent: it is an expected outcome reported
through DebitResult.applied, not an exception.
"""


class BillingError(Exception):
    """Base class for billing engine errors."""
    pass


class ConfigurationError(BillingError):
    """Raised when configuration or pricing data cannot produce a rate."""
    pass


class PlanNotFoundError(ConfigurationError):
    """Raised when an instance references a plan that does not exist."""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class InactivePlanError(ConfigurationError):
    """Raised when an instance references a deactivated plan."""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan is inactive: {plan_id}")
        self.plan_id = plan_id


class LedgerError(BillingError):
    """Raised for ledger misuse (unknown account, non-positive amount)."""
    pass


class StaleWatermarkError(BillingError):
    """Raised when an instance's watermark no longer matches a cycle's period_start."""

    def __init__(self, instance_id: str, expected, actual):
        super().__init__(
            f"Watermark for {instance_id} moved: expected {expected}, found {actual}"
        )
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual


class InvariantViolationError(BillingError):
    """Raised when a write would decouple a confirmed debit from its watermark advance."""
    pass
