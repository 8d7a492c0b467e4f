"""
External collaborators consumed by the billing engine.

The provider client and the suspension/notification service live outside this
package; only their call shapes are fixed here.
"""

from decimal import Decimal
from typing import Protocol, Union

import structlog

from ..core.lifecycle import LifecycleState

logger = structlog.get_logger()


class ProviderClient(Protocol):
    """Given a provider instance id, return its current lifecycle state."""

    def get_instance_state(self, provider_instance_id: str) -> Union[LifecycleState, str]:
        ...


class SuspensionNotifier(Protocol):
    """Invoked fire-and-forget when a cycle fails on insufficient funds."""

    def notify_insufficient_funds(
        self,
        account_id: str,
        instance_id: str,
        amount: Decimal,
        balance: Decimal,
    ) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the suspension warning in the log only."""

    def notify_insufficient_funds(
        self,
        account_id: str,
        instance_id: str,
        amount: Decimal,
        balance: Decimal,
    ) -> None:
        logger.warning(
            "account_suspension_warning",
            account_id=account_id,
            instance_id=instance_id,
            amount=str(amount),
            balance=str(balance),
        )
