"""Periodic checkpoints that bound replay cost."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .constants import (
    DEFAULT_SNAPSHOT_EVENT_THRESHOLD,
    DEFAULT_SNAPSHOT_INTERVAL_SECONDS,
    DEFAULT_SNAPSHOTS_KEPT,
)
from .models import WorkflowExecution, WorkflowSnapshot, utcnow
from .persistence import WorkflowStore

logger = logging.getLogger(__name__)


class SnapshotManager:
    """Decide when to snapshot an execution and persist snapshots idempotently.

    A snapshot is taken once ``event_threshold`` events accumulated since the
    previous one, or once ``interval_seconds`` elapsed since it and at least
    one new event exists, whichever comes first.
    """

    def __init__(
        self,
        store: WorkflowStore,
        event_threshold: int = DEFAULT_SNAPSHOT_EVENT_THRESHOLD,
        interval_seconds: float = DEFAULT_SNAPSHOT_INTERVAL_SECONDS,
        keep: int = DEFAULT_SNAPSHOTS_KEPT,
    ) -> None:
        self.store = store
        self.event_threshold = event_threshold
        self.interval = timedelta(seconds=interval_seconds)
        self.keep = keep

    async def latest(self, tenant: str, execution_id: str) -> WorkflowSnapshot | None:
        return await self.store.latest_snapshot(tenant, execution_id)

    def is_due(
        self,
        version: int,
        previous: Optional[WorkflowSnapshot],
        since: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        base_version = previous.version if previous else 0
        new_events = version - base_version
        if new_events <= 0:
            return False
        if new_events >= self.event_threshold:
            return True
        base_time = previous.created_at if previous else since
        return (now or utcnow()) - base_time >= self.interval

    async def maybe_snapshot(
        self, execution: WorkflowExecution, now: Optional[datetime] = None
    ) -> WorkflowSnapshot | None:
        """Snapshot ``execution`` if the policy says so; returns the snapshot taken."""
        previous = await self.latest(execution.tenant, execution.execution_id)
        if not self.is_due(execution.last_sequence, previous, execution.created_at, now):
            return None
        return await self.take(execution)

    async def take(self, execution: WorkflowExecution) -> WorkflowSnapshot:
        snapshot = WorkflowSnapshot(
            tenant=execution.tenant,
            execution_id=execution.execution_id,
            version=execution.last_sequence,
            current_state=execution.current_state,
            data=execution.context_data,
        )
        if await self.store.put_snapshot(snapshot):
            logger.info(
                f"Snapshot of {execution.execution_id} at version {snapshot.version}"
            )
            await self.prune(execution.tenant, execution.execution_id)
        return snapshot

    async def prune(self, tenant: str, execution_id: str) -> int:
        return await self.store.prune_snapshots(tenant, execution_id, self.keep)


__all__ = ["SnapshotManager"]
