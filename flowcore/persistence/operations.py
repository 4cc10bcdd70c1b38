"""Write operations applied atomically by :meth:`WorkflowStore.apply`."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from ..models import (
    ActionStatus,
    ExecutionStatus,
    WorkflowEvent,
    WorkflowTimer,
)


class AppendEvent(BaseModel):
    """Insert one event; its sequence must extend the log without gaps."""

    event: WorkflowEvent


class UpdateExecution(BaseModel):
    """Update the execution row.

    Only fields explicitly set are written. When ``expected_sequence`` is
    given the update only applies if the row's ``last_sequence`` still has
    that value; otherwise the whole batch is rejected.
    """

    execution_id: str
    expected_sequence: Optional[int] = None
    current_state: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    last_sequence: Optional[int] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(
            exclude_unset=True, exclude={"execution_id", "expected_sequence"}
        )


class RecordActionResult(BaseModel):
    """Settle a reserved (``pending``) action result."""

    idempotency_key: str
    status: ActionStatus
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None


class InsertTimer(BaseModel):
    timer: WorkflowTimer


class CancelTimers(BaseModel):
    """Cancel pending timers of an execution, optionally only those of one state."""

    execution_id: str
    state_name: Optional[str] = None


WriteOp = Union[AppendEvent, UpdateExecution, RecordActionResult, InsertTimer, CancelTimers]


__all__ = [
    "AppendEvent",
    "UpdateExecution",
    "RecordActionResult",
    "InsertTimer",
    "CancelTimers",
    "WriteOp",
]
