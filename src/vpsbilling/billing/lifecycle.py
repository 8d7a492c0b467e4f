"""
Lifecycle State Cache

Last-known provider state of each instance plus the time it was observed.
Refreshed out-of-band by polling the provider; the sweep only ever reads the
cached value.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import structlog

from ..core.clock import Clock, to_iso, utcnow
from ..core.lifecycle import LifecycleState
from ..persistence.database import Database, Transaction, get_database
from ..persistence.models import InstanceRecord
from ..persistence.repository import InstanceRepository
from .collaborators import ProviderClient

logger = structlog.get_logger()


@dataclass
class RefreshResult:
    """Counts from one provider polling pass."""
    polled: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0


class LifecycleStateCache:
    """Reads and writes the cached lifecycle state on instance rows."""

    def __init__(self, db: Optional[Database] = None, clock: Clock = utcnow):
        self.db = db or get_database()
        self.instances = InstanceRepository(self.db)
        self.clock = clock

    def get(self, instance_id: str) -> Optional[LifecycleState]:
        instance = self.instances.get(instance_id)
        return instance.lifecycle_state if instance else None

    def observe(
        self,
        instance_id: str,
        state: Union[LifecycleState, str],
        observed_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record an observed state.

        Returns False if the observation was ignored: the instance is already
        deleted, or a newer observation is cached. A deletion is terminal and
        is applied even when a newer observation is cached.
        """
        state = LifecycleState.parse(state)
        observed_at = observed_at or self.clock()

        with self.db.transaction() as tx:
            if state.is_terminal:
                applied = self._delete(tx, instance_id, observed_at)
            else:
                applied = self.instances.update_state(tx, instance_id, state, observed_at)

        if applied:
            logger.debug("lifecycle_state_observed", instance_id=instance_id, state=state.value)
        else:
            logger.debug("lifecycle_observation_ignored", instance_id=instance_id, state=state.value)
        return applied

    def _delete(self, tx: Transaction, instance_id: str, at: datetime) -> bool:
        current = self.instances.lock(tx, instance_id)
        if current is None or current.lifecycle_state.is_terminal:
            return False

        # Hours up to the watermark are already billed and stay billed
        deleted_at = max(at, current.watermark)
        if deleted_at != at:
            logger.warning(
                "deletion_clipped_to_watermark",
                instance_id=instance_id,
                requested=to_iso(at),
                deleted_at=to_iso(deleted_at),
            )
        observed_at = max(at, current.state_observed_at) if current.state_observed_at else at
        return self.instances.mark_deleted(tx, instance_id, observed_at, deleted_at)

    def mark_deleted(self, instance_id: str, at: Optional[datetime] = None) -> bool:
        """Soft-delete: billing stops at `at`, history is retained."""
        at = at or self.clock()
        applied = self.observe(instance_id, LifecycleState.DELETED, observed_at=at)
        if applied:
            logger.info("instance_deleted", instance_id=instance_id, requested_at=to_iso(at))
        return applied

    def refresh(self, provider: ProviderClient, limit: int = 10000) -> RefreshResult:
        """
        Poll the provider for every non-deleted instance.

        A provider failure for one instance leaves its cached state untouched
        and does not stop the pass.
        """
        result = RefreshResult()
        for instance in self.instances.list_active(limit=limit):
            if not instance.provider_instance_id:
                continue
            result.polled += 1
            try:
                state = LifecycleState.parse(
                    provider.get_instance_state(instance.provider_instance_id)
                )
                if state is instance.lifecycle_state:
                    result.unchanged += 1
                    continue
                if self.observe(instance.instance_id, state):
                    result.updated += 1
                    self._log_transition(instance, state)
                else:
                    result.unchanged += 1
            except Exception as e:
                result.failed += 1
                logger.warning(
                    "lifecycle_poll_failed",
                    instance_id=instance.instance_id,
                    provider_instance_id=instance.provider_instance_id,
                    error=str(e),
                )

        logger.info(
            "lifecycle_refresh_completed",
            polled=result.polled,
            updated=result.updated,
            failed=result.failed,
        )
        return result

    def _log_transition(self, instance: InstanceRecord, state: LifecycleState) -> None:
        logger.info(
            "lifecycle_state_changed",
            instance_id=instance.instance_id,
            previous=instance.lifecycle_state.value,
            state=state.value,
            billable=state.is_billable,
        )
