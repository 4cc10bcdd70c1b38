"""Storage abstraction for durable workflow state."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, Sequence

from ..models import (
    ExecutionStatus,
    SyncCompletion,
    WorkflowActionDependency,
    WorkflowActionResult,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowSnapshot,
    WorkflowSyncPoint,
    WorkflowTimer,
)
from .operations import WriteOp


class WorkflowStore(Protocol):
    """Protocol for workflow persistence backends.

    Every method is tenant-scoped. The atomic primitives (``apply``,
    ``reserve_action``, ``claim_action_retry``, ``increment_sync_point``,
    ``claim_timer``, ``put_snapshot``) must be safe against concurrent callers
    in other processes, not only other coroutines.
    """

    async def close(self) -> None:
        """Release backend resources."""

    # executions and events
    async def create_execution(
        self, execution: WorkflowExecution, genesis: WorkflowEvent
    ) -> None:
        """Persist a new execution together with its genesis event."""

    async def get_execution(
        self, tenant: str, execution_id: str
    ) -> WorkflowExecution | None:
        """Return the execution row or ``None``."""

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        """Return executions of a tenant, oldest first."""

    async def list_events(
        self, tenant: str, execution_id: str, after_sequence: int = 0
    ) -> list[WorkflowEvent]:
        """Return events with ``sequence > after_sequence`` in order."""

    async def get_event(self, tenant: str, event_id: str) -> WorkflowEvent | None:
        """Return one event by id."""

    async def apply(self, tenant: str, ops: Sequence[WriteOp]) -> None:
        """Apply all operations atomically or none of them."""

    # action results and dependencies
    async def reserve_action(self, result: WorkflowActionResult) -> bool:
        """Insert ``result`` unless its idempotency key exists. True if inserted."""

    async def claim_action_retry(
        self, tenant: str, idempotency_key: str, attempt: int
    ) -> bool:
        """Move a ``retry_scheduled`` result back to ``pending`` for ``attempt``."""

    async def get_action_result(
        self, tenant: str, idempotency_key: str
    ) -> WorkflowActionResult | None:
        """Return the result recorded for an idempotency key."""

    async def list_action_results(
        self, tenant: str, execution_id: str, event_id: Optional[str] = None
    ) -> list[WorkflowActionResult]:
        """Return action results of an execution (optionally one event)."""

    async def add_dependencies(
        self, tenant: str, dependencies: Sequence[WorkflowActionDependency]
    ) -> None:
        """Persist dependency edges, ignoring edges already stored."""

    async def list_dependencies(
        self, tenant: str, event_id: str
    ) -> list[WorkflowActionDependency]:
        """Return the dependency edges recorded for an event."""

    # sync points
    async def create_sync_point(self, sync_point: WorkflowSyncPoint) -> bool:
        """Insert a sync point unless it exists. True if inserted."""

    async def get_sync_point(
        self, tenant: str, sync_id: str
    ) -> WorkflowSyncPoint | None:
        """Return a sync point."""

    async def increment_sync_point(
        self, tenant: str, sync_id: str, member: Optional[str] = None
    ) -> SyncCompletion:
        """Atomically count one arrival and report whether it satisfied the barrier."""

    async def fail_sync_point(self, tenant: str, sync_id: str) -> bool:
        """Mark an open sync point failed. True if it was open."""

    async def list_sync_points(
        self, tenant: str, execution_id: str
    ) -> list[WorkflowSyncPoint]:
        """Return the sync points of an execution."""

    async def list_open_sync_points(self, limit: int = 100) -> list[WorkflowSyncPoint]:
        """Return open sync points across tenants."""

    async def list_sync_arrivals(self, tenant: str, sync_id: str) -> list[str]:
        """Return the members already counted at a sync point."""

    # timers
    async def create_timer(self, timer: WorkflowTimer) -> None:
        """Insert a timer."""

    async def list_due_timers(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowTimer]:
        """Return pending timers with ``fire_time <= now`` across tenants."""

    async def claim_timer(
        self, tenant: str, timer_id: str, fired_at: datetime, successor: WorkflowTimer | None = None
    ) -> bool:
        """Transition ``pending -> fired`` and insert ``successor`` atomically."""

    async def cancel_timers(
        self, tenant: str, execution_id: str, state_name: Optional[str] = None
    ) -> int:
        """Cancel pending timers; returns how many were cancelled."""

    async def list_timers(self, tenant: str, execution_id: str) -> list[WorkflowTimer]:
        """Return all timers of an execution."""

    # snapshots
    async def put_snapshot(self, snapshot: WorkflowSnapshot) -> bool:
        """Insert a snapshot unless that version exists. True if inserted."""

    async def latest_snapshot(
        self, tenant: str, execution_id: str
    ) -> WorkflowSnapshot | None:
        """Return the newest snapshot."""

    async def prune_snapshots(self, tenant: str, execution_id: str, keep: int) -> int:
        """Delete all but the ``keep`` newest snapshots."""
