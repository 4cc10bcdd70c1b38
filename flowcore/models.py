"""Data models for executions, events, actions, sync points, timers and snapshots."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Payload(BaseModel):
    """Opaque, versioned blob passed through the engine untouched."""

    version: str = "1"
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def wrap(cls, value: "Payload | Dict[str, Any] | None") -> "Payload":
        """Coerce a plain mapping (or nothing) into a payload."""
        if isinstance(value, Payload):
            return value
        return cls(data=dict(value or {}))


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class WorkflowExecution(BaseModel):
    """One running instance of a workflow definition for one tenant."""

    execution_id: str = Field(default_factory=new_id)
    tenant: str
    workflow_name: str
    workflow_version: str
    current_state: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    context_data: Payload = Field(default_factory=Payload)
    last_sequence: int = 0
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class WorkflowEvent(BaseModel):
    """Immutable fact appended to an execution's log."""

    event_id: str = Field(default_factory=new_id)
    tenant: str
    execution_id: str
    sequence: int = 0
    event_name: str
    from_state: Optional[str] = None
    to_state: str
    user_id: Optional[str] = None
    payload: Payload = Field(default_factory=Payload)
    created_at: datetime = Field(default_factory=utcnow)


class ActionStatus(str, Enum):
    PENDING = "pending"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_final(self) -> bool:
        return self in (ActionStatus.SUCCEEDED, ActionStatus.FAILED, ActionStatus.SKIPPED)


class WorkflowActionResult(BaseModel):
    """Outcome of one action triggered by an event."""

    result_id: str = Field(default_factory=new_id)
    tenant: str
    execution_id: str
    event_id: str
    event_sequence: int
    action_id: str
    action_kind: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    status: ActionStatus = ActionStatus.PENDING
    error_message: Optional[str] = None
    idempotency_key: str
    ready_to_execute: bool = True
    attempts: int = 1
    sync_point_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.status == ActionStatus.SUCCEEDED


class DependencyType(str, Enum):
    MUST_SUCCEED = "must-succeed"
    MUST_COMPLETE = "must-complete"

    def satisfied_by(self, status: ActionStatus) -> bool:
        if self == DependencyType.MUST_SUCCEED:
            return status == ActionStatus.SUCCEEDED
        return status in (ActionStatus.SUCCEEDED, ActionStatus.FAILED)


class WorkflowActionDependency(BaseModel):
    """Directed edge ``action_id -> depends_on_id`` within one event's actions."""

    tenant: str
    execution_id: str
    event_id: str
    action_id: str
    depends_on_id: str
    dependency_type: DependencyType = DependencyType.MUST_SUCCEED


class SyncPointStatus(str, Enum):
    OPEN = "open"
    SATISFIED = "satisfied"
    FAILED = "failed"


class WorkflowSyncPoint(BaseModel):
    """Join barrier reconciling parallel branches."""

    sync_id: str
    tenant: str
    execution_id: str
    event_id: str
    name: str
    sync_type: str = "join"
    status: SyncPointStatus = SyncPointStatus.OPEN
    total_actions: int
    completed_actions: int = 0
    continuation_event: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class SyncCompletion(BaseModel):
    """Result of a branch arriving at a sync point."""

    satisfied: bool
    duplicate: bool = False
    sync_point: WorkflowSyncPoint


class TimerStatus(str, Enum):
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"


class TimerKind(str, Enum):
    EVENT = "event"
    ACTION_RETRY = "action_retry"
    ACTION_SETTLE = "action_settle"


class WorkflowTimer(BaseModel):
    """Durable scheduled trigger."""

    timer_id: str = Field(default_factory=new_id)
    tenant: str
    execution_id: str
    name: str
    kind: TimerKind = TimerKind.EVENT
    event_name: Optional[str] = None
    fire_time: datetime
    recurrence: Optional[str] = None
    state_name: Optional[str] = None
    payload: Payload = Field(default_factory=Payload)
    status: TimerStatus = TimerStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    fired_at: Optional[datetime] = None


class WorkflowSnapshot(BaseModel):
    """Materialized checkpoint of execution state at an event sequence."""

    tenant: str
    execution_id: str
    version: int
    current_state: str
    data: Payload = Field(default_factory=Payload)
    created_at: datetime = Field(default_factory=utcnow)


class ReplayResult(BaseModel):
    current_state: str
    version: int
    events_applied: int
    from_snapshot: bool = False
    snapshot_version: Optional[int] = None


class AppendResult(BaseModel):
    """Outcome of appending one event."""

    execution_id: str
    sequence: int
    current_state: str
    status: ExecutionStatus
    action_results: List[WorkflowActionResult] = Field(default_factory=list)


class EventEnvelope(BaseModel):
    """Queued request to append an event, exchanged over a transport."""

    message_id: str = Field(default_factory=new_id)
    tenant: str
    execution_id: str
    event_name: str
    payload: Payload = Field(default_factory=Payload)
    user_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "EventEnvelope":
        return cls.model_validate_json(data)


__all__ = [
    "utcnow",
    "new_id",
    "Payload",
    "ExecutionStatus",
    "TERMINAL_STATUSES",
    "WorkflowExecution",
    "WorkflowEvent",
    "ActionStatus",
    "WorkflowActionResult",
    "DependencyType",
    "WorkflowActionDependency",
    "SyncPointStatus",
    "WorkflowSyncPoint",
    "SyncCompletion",
    "TimerStatus",
    "TimerKind",
    "WorkflowTimer",
    "WorkflowSnapshot",
    "ReplayResult",
    "AppendResult",
    "EventEnvelope",
]
