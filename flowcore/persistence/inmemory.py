"""In-memory implementation of the workflow store."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

from ..errors import ConcurrencyError, ConflictError, NotFoundError
from ..models import (
    ActionStatus,
    ExecutionStatus,
    SyncCompletion,
    SyncPointStatus,
    TimerStatus,
    WorkflowActionDependency,
    WorkflowActionResult,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowSnapshot,
    WorkflowSyncPoint,
    WorkflowTimer,
    utcnow,
)
from .operations import (
    AppendEvent,
    CancelTimers,
    InsertTimer,
    RecordActionResult,
    UpdateExecution,
    WriteOp,
)
from .repository import WorkflowStore

Key = Tuple[str, str]


class InMemoryWorkflowStore(WorkflowStore):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method completes without
    yielding to the event loop, which makes each call atomic for all
    coroutines sharing the store. Models are copied on the way in and out
    so callers never hold references to stored rows.
    """

    def __init__(self) -> None:
        self._executions: Dict[Key, WorkflowExecution] = {}
        self._events: Dict[Key, list[WorkflowEvent]] = {}
        self._results: Dict[Key, WorkflowActionResult] = {}
        self._dependencies: Dict[Key, list[WorkflowActionDependency]] = {}
        self._sync_points: Dict[Key, WorkflowSyncPoint] = {}
        self._arrivals: Dict[Key, list[str]] = {}
        self._timers: Dict[str, WorkflowTimer] = {}
        self._snapshots: Dict[Key, list[WorkflowSnapshot]] = {}

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Executions and events
    async def create_execution(
        self, execution: WorkflowExecution, genesis: WorkflowEvent
    ) -> None:
        key = (execution.tenant, execution.execution_id)
        if key in self._executions:
            raise ConflictError(f"Execution {execution.execution_id} already exists")
        self._executions[key] = execution.model_copy(deep=True)
        self._events[key] = [genesis.model_copy(deep=True)]

    async def get_execution(
        self, tenant: str, execution_id: str
    ) -> WorkflowExecution | None:
        execution = self._executions.get((tenant, execution_id))
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        executions = [
            e.model_copy(deep=True)
            for (t, _), e in self._executions.items()
            if t == tenant and (status is None or e.status == status)
        ]
        return sorted(executions, key=lambda e: e.created_at)

    async def list_events(
        self, tenant: str, execution_id: str, after_sequence: int = 0
    ) -> list[WorkflowEvent]:
        events = self._events.get((tenant, execution_id), [])
        return [e.model_copy(deep=True) for e in events if e.sequence > after_sequence]

    async def get_event(self, tenant: str, event_id: str) -> WorkflowEvent | None:
        for (t, _), events in self._events.items():
            if t != tenant:
                continue
            for event in events:
                if event.event_id == event_id:
                    return event.model_copy(deep=True)
        return None

    async def apply(self, tenant: str, ops: Sequence[WriteOp]) -> None:
        self._validate(tenant, ops)
        now = utcnow()
        for op in ops:
            if isinstance(op, AppendEvent):
                key = (tenant, op.event.execution_id)
                self._events.setdefault(key, []).append(op.event.model_copy(deep=True))
            elif isinstance(op, UpdateExecution):
                key = (tenant, op.execution_id)
                self._executions[key] = self._executions[key].model_copy(
                    update={**op.changes(), "updated_at": now}
                )
            elif isinstance(op, RecordActionResult):
                key = (tenant, op.idempotency_key)
                self._results[key] = self._results[key].model_copy(
                    update={
                        "status": op.status,
                        "result": op.result,
                        "error_message": op.error_message,
                        "completed_at": op.completed_at,
                    }
                )
            elif isinstance(op, InsertTimer):
                self._timers[op.timer.timer_id] = op.timer.model_copy(deep=True)
            elif isinstance(op, CancelTimers):
                self._cancel(tenant, op.execution_id, op.state_name)

    def _validate(self, tenant: str, ops: Sequence[WriteOp]) -> None:
        appended: Dict[str, set[int]] = {}
        for op in ops:
            if isinstance(op, UpdateExecution):
                execution = self._executions.get((tenant, op.execution_id))
                if execution is None:
                    raise NotFoundError(f"Execution {op.execution_id} not found")
                if (
                    op.expected_sequence is not None
                    and execution.last_sequence != op.expected_sequence
                ):
                    raise ConcurrencyError(
                        f"Execution {op.execution_id} advanced to sequence "
                        f"{execution.last_sequence}, expected {op.expected_sequence}"
                    )
        for op in ops:
            if isinstance(op, AppendEvent):
                event = op.event
                if (tenant, event.execution_id) not in self._executions:
                    raise NotFoundError(f"Execution {event.execution_id} not found")
                existing = {
                    e.sequence for e in self._events.get((tenant, event.execution_id), [])
                }
                batch = appended.setdefault(event.execution_id, set())
                if event.sequence in existing or event.sequence in batch:
                    raise ConflictError(
                        f"Event sequence {event.sequence} already recorded for "
                        f"execution {event.execution_id}"
                    )
                batch.add(event.sequence)
            elif isinstance(op, RecordActionResult):
                result = self._results.get((tenant, op.idempotency_key))
                if result is None:
                    raise NotFoundError(f"No reserved action for key {op.idempotency_key}")
                if result.status != ActionStatus.PENDING:
                    raise ConflictError(
                        f"Action {op.idempotency_key} already settled as {result.status.value}"
                    )
            elif isinstance(op, InsertTimer):
                if op.timer.timer_id in self._timers:
                    raise ConflictError(f"Timer {op.timer.timer_id} already exists")

    # ------------------------------------------------------------------
    # Action results and dependencies
    async def reserve_action(self, result: WorkflowActionResult) -> bool:
        key = (result.tenant, result.idempotency_key)
        if key in self._results:
            return False
        self._results[key] = result.model_copy(deep=True)
        return True

    async def claim_action_retry(
        self, tenant: str, idempotency_key: str, attempt: int
    ) -> bool:
        key = (tenant, idempotency_key)
        result = self._results.get(key)
        if result is None or result.status != ActionStatus.RETRY_SCHEDULED:
            return False
        self._results[key] = result.model_copy(
            update={
                "status": ActionStatus.PENDING,
                "attempts": attempt,
                "started_at": utcnow(),
                "completed_at": None,
            }
        )
        return True

    async def get_action_result(
        self, tenant: str, idempotency_key: str
    ) -> WorkflowActionResult | None:
        result = self._results.get((tenant, idempotency_key))
        return result.model_copy(deep=True) if result else None

    async def list_action_results(
        self, tenant: str, execution_id: str, event_id: Optional[str] = None
    ) -> list[WorkflowActionResult]:
        results = [
            r.model_copy(deep=True)
            for (t, _), r in self._results.items()
            if t == tenant
            and r.execution_id == execution_id
            and (event_id is None or r.event_id == event_id)
        ]
        return sorted(results, key=lambda r: (r.event_sequence, r.action_id))

    async def add_dependencies(
        self, tenant: str, dependencies: Sequence[WorkflowActionDependency]
    ) -> None:
        for dependency in dependencies:
            edges = self._dependencies.setdefault((tenant, dependency.event_id), [])
            if any(
                e.action_id == dependency.action_id
                and e.depends_on_id == dependency.depends_on_id
                for e in edges
            ):
                continue
            edges.append(dependency.model_copy(deep=True))

    async def list_dependencies(
        self, tenant: str, event_id: str
    ) -> list[WorkflowActionDependency]:
        return [
            d.model_copy(deep=True) for d in self._dependencies.get((tenant, event_id), [])
        ]

    # ------------------------------------------------------------------
    # Sync points
    async def create_sync_point(self, sync_point: WorkflowSyncPoint) -> bool:
        key = (sync_point.tenant, sync_point.sync_id)
        if key in self._sync_points:
            return False
        self._sync_points[key] = sync_point.model_copy(deep=True)
        return True

    async def get_sync_point(
        self, tenant: str, sync_id: str
    ) -> WorkflowSyncPoint | None:
        sync_point = self._sync_points.get((tenant, sync_id))
        return sync_point.model_copy(deep=True) if sync_point else None

    async def increment_sync_point(
        self, tenant: str, sync_id: str, member: Optional[str] = None
    ) -> SyncCompletion:
        key = (tenant, sync_id)
        sync_point = self._sync_points.get(key)
        if sync_point is None:
            raise NotFoundError(f"Sync point {sync_id} not found")
        if sync_point.status != SyncPointStatus.OPEN:
            return SyncCompletion(satisfied=False, sync_point=sync_point.model_copy(deep=True))
        if member is not None:
            arrivals = self._arrivals.setdefault(key, [])
            if member in arrivals:
                return SyncCompletion(
                    satisfied=False,
                    duplicate=True,
                    sync_point=sync_point.model_copy(deep=True),
                )
            arrivals.append(member)
        completed = sync_point.completed_actions + 1
        satisfied = completed >= sync_point.total_actions
        update: dict = {"completed_actions": completed}
        if satisfied:
            update["status"] = SyncPointStatus.SATISFIED
            update["completed_at"] = utcnow()
        self._sync_points[key] = sync_point.model_copy(update=update)
        return SyncCompletion(
            satisfied=satisfied, sync_point=self._sync_points[key].model_copy(deep=True)
        )

    async def fail_sync_point(self, tenant: str, sync_id: str) -> bool:
        key = (tenant, sync_id)
        sync_point = self._sync_points.get(key)
        if sync_point is None or sync_point.status != SyncPointStatus.OPEN:
            return False
        self._sync_points[key] = sync_point.model_copy(
            update={"status": SyncPointStatus.FAILED, "completed_at": utcnow()}
        )
        return True

    async def list_sync_points(
        self, tenant: str, execution_id: str
    ) -> list[WorkflowSyncPoint]:
        points = [
            s.model_copy(deep=True)
            for (t, _), s in self._sync_points.items()
            if t == tenant and s.execution_id == execution_id
        ]
        return sorted(points, key=lambda s: s.created_at)

    async def list_open_sync_points(self, limit: int = 100) -> list[WorkflowSyncPoint]:
        points = [
            s.model_copy(deep=True)
            for s in self._sync_points.values()
            if s.status == SyncPointStatus.OPEN
        ]
        return sorted(points, key=lambda s: s.created_at)[:limit]

    async def list_sync_arrivals(self, tenant: str, sync_id: str) -> list[str]:
        return list(self._arrivals.get((tenant, sync_id), []))

    # ------------------------------------------------------------------
    # Timers
    async def create_timer(self, timer: WorkflowTimer) -> None:
        if timer.timer_id in self._timers:
            raise ConflictError(f"Timer {timer.timer_id} already exists")
        self._timers[timer.timer_id] = timer.model_copy(deep=True)

    async def list_due_timers(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowTimer]:
        due = [
            t.model_copy(deep=True)
            for t in self._timers.values()
            if t.status == TimerStatus.PENDING and t.fire_time <= now
        ]
        return sorted(due, key=lambda t: t.fire_time)[:limit]

    async def claim_timer(
        self,
        tenant: str,
        timer_id: str,
        fired_at: datetime,
        successor: WorkflowTimer | None = None,
    ) -> bool:
        timer = self._timers.get(timer_id)
        if timer is None or timer.tenant != tenant or timer.status != TimerStatus.PENDING:
            return False
        self._timers[timer_id] = timer.model_copy(
            update={"status": TimerStatus.FIRED, "fired_at": fired_at}
        )
        if successor is not None:
            self._timers[successor.timer_id] = successor.model_copy(deep=True)
        return True

    async def cancel_timers(
        self, tenant: str, execution_id: str, state_name: Optional[str] = None
    ) -> int:
        return self._cancel(tenant, execution_id, state_name)

    def _cancel(self, tenant: str, execution_id: str, state_name: Optional[str]) -> int:
        cancelled = 0
        for timer_id, timer in self._timers.items():
            if (
                timer.tenant == tenant
                and timer.execution_id == execution_id
                and timer.status == TimerStatus.PENDING
                and (state_name is None or timer.state_name == state_name)
            ):
                self._timers[timer_id] = timer.model_copy(
                    update={"status": TimerStatus.CANCELLED}
                )
                cancelled += 1
        return cancelled

    async def list_timers(self, tenant: str, execution_id: str) -> list[WorkflowTimer]:
        timers = [
            t.model_copy(deep=True)
            for t in self._timers.values()
            if t.tenant == tenant and t.execution_id == execution_id
        ]
        return sorted(timers, key=lambda t: (t.fire_time, t.created_at))

    # ------------------------------------------------------------------
    # Snapshots
    async def put_snapshot(self, snapshot: WorkflowSnapshot) -> bool:
        snapshots = self._snapshots.setdefault(
            (snapshot.tenant, snapshot.execution_id), []
        )
        if any(s.version == snapshot.version for s in snapshots):
            return False
        snapshots.append(snapshot.model_copy(deep=True))
        snapshots.sort(key=lambda s: s.version)
        return True

    async def latest_snapshot(
        self, tenant: str, execution_id: str
    ) -> WorkflowSnapshot | None:
        snapshots = self._snapshots.get((tenant, execution_id))
        return snapshots[-1].model_copy(deep=True) if snapshots else None

    async def prune_snapshots(self, tenant: str, execution_id: str, keep: int) -> int:
        snapshots = self._snapshots.get((tenant, execution_id), [])
        if len(snapshots) <= keep:
            return 0
        removed = len(snapshots) - keep
        self._snapshots[(tenant, execution_id)] = snapshots[removed:]
        return removed
