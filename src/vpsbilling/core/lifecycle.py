"""
Instance lifecycle states and the billable-state policy.

provisioning -> running <-> stopped, with transient rebooting / restoring /
backing_up states, an error state reachable from any non-terminal state, and
the terminal deleted state.
"""

from enum import Enum
from typing import FrozenSet, Union


class LifecycleState(Enum):
    """Provider-reported lifecycle state of an instance."""
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    REBOOTING = "rebooting"
    RESTORING = "restoring"
    BACKING_UP = "backing_up"
    ERROR = "error"
    DELETED = "deleted"

    @property
    def is_billable(self) -> bool:
        """
        Whether time spent in this state accrues charges.

        Stopped and error instances keep their provider reservation, so they
        accrue like running ones.
        """
        return self not in _NON_BILLABLE

    @property
    def is_terminal(self) -> bool:
        return self is LifecycleState.DELETED

    @classmethod
    def parse(cls, value: Union["LifecycleState", str]) -> "LifecycleState":
        """Map a provider status string (or a LifecycleState) onto a LifecycleState."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower().replace("-", "_")
        if key in PROVIDER_ALIASES:
            return PROVIDER_ALIASES[key]
        return cls(key)


_NON_BILLABLE: FrozenSet[LifecycleState] = frozenset({
    LifecycleState.PROVISIONING,
    LifecycleState.DELETED,
})

# Provider vocabularies (Linode, DigitalOcean) onto our states
PROVIDER_ALIASES = {
    "active": LifecycleState.RUNNING,
    "booting": LifecycleState.PROVISIONING,
    "new": LifecycleState.PROVISIONING,
    "off": LifecycleState.STOPPED,
    "offline": LifecycleState.STOPPED,
    "shutting_down": LifecycleState.STOPPED,
    "archive": LifecycleState.DELETED,
    "deleting": LifecycleState.DELETED,
    "rebuilding": LifecycleState.RESTORING,
}


def non_billable_state_values() -> tuple:
    """State values excluded from billing, for use in SQL filters."""
    return tuple(sorted(s.value for s in LifecycleState if not s.is_billable))
