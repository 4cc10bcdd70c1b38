"""Row encoding shared by the SQL backends."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from ..models import (
    Payload,
    WorkflowActionDependency,
    WorkflowActionResult,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowSnapshot,
    WorkflowSyncPoint,
    WorkflowTimer,
)

# Fixed width so that stored text timestamps sort chronologically.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

EXECUTION_COLUMNS = (
    "execution_id",
    "tenant",
    "workflow_name",
    "workflow_version",
    "current_state",
    "status",
    "context_data",
    "last_sequence",
    "error_message",
    "created_at",
    "updated_at",
    "completed_at",
)

EVENT_COLUMNS = (
    "event_id",
    "tenant",
    "execution_id",
    "sequence",
    "event_name",
    "from_state",
    "to_state",
    "user_id",
    "payload",
    "created_at",
)

ACTION_RESULT_COLUMNS = (
    "result_id",
    "tenant",
    "execution_id",
    "event_id",
    "event_sequence",
    "action_id",
    "action_kind",
    "parameters",
    "result",
    "status",
    "error_message",
    "idempotency_key",
    "ready_to_execute",
    "attempts",
    "sync_point_id",
    "started_at",
    "completed_at",
)

DEPENDENCY_COLUMNS = (
    "tenant",
    "execution_id",
    "event_id",
    "action_id",
    "depends_on_id",
    "dependency_type",
)

SYNC_POINT_COLUMNS = (
    "sync_id",
    "tenant",
    "execution_id",
    "event_id",
    "name",
    "sync_type",
    "status",
    "total_actions",
    "completed_actions",
    "continuation_event",
    "created_at",
    "completed_at",
)

TIMER_COLUMNS = (
    "timer_id",
    "tenant",
    "execution_id",
    "name",
    "kind",
    "event_name",
    "fire_time",
    "recurrence",
    "state_name",
    "payload",
    "status",
    "created_at",
    "fired_at",
)

SNAPSHOT_COLUMNS = (
    "tenant",
    "execution_id",
    "version",
    "current_state",
    "data",
    "created_at",
)

JSON_COLUMNS = frozenset(
    {"context_data", "payload", "parameters", "result", "data"}
)


def encode_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def decode_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(value)


def encode_json(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Payload):
        value = value.model_dump()
    return json.dumps(value)


def decode_json(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


def to_row(model: Any, columns: tuple[str, ...], *, text_timestamps: bool) -> list[Any]:
    """Flatten a model into column order.

    Enums are stored by value, payloads and mappings as JSON text. Timestamps
    are encoded as fixed-width text when ``text_timestamps`` is set and kept
    as ``datetime`` otherwise.
    """
    values: list[Any] = []
    for column in columns:
        value = getattr(model, column)
        if column in JSON_COLUMNS:
            value = encode_json(value)
        elif isinstance(value, datetime):
            value = encode_ts(value) if text_timestamps else decode_ts(value)
        elif isinstance(value, Enum):
            value = value.value
        values.append(value)
    return values


def _decode(row: Mapping[str, Any], columns: tuple[str, ...]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for column in columns:
        value = row[column]
        if column in JSON_COLUMNS:
            value = decode_json(value)
        elif column.endswith("_at") or column == "fire_time":
            value = decode_ts(value)
        data[column] = value
    return data


def execution_from_row(row: Mapping[str, Any]) -> WorkflowExecution:
    return WorkflowExecution(**_decode(row, EXECUTION_COLUMNS))


def event_from_row(row: Mapping[str, Any]) -> WorkflowEvent:
    return WorkflowEvent(**_decode(row, EVENT_COLUMNS))


def action_result_from_row(row: Mapping[str, Any]) -> WorkflowActionResult:
    data = _decode(row, ACTION_RESULT_COLUMNS)
    data["ready_to_execute"] = bool(data["ready_to_execute"])
    return WorkflowActionResult(**data)


def dependency_from_row(row: Mapping[str, Any]) -> WorkflowActionDependency:
    return WorkflowActionDependency(**_decode(row, DEPENDENCY_COLUMNS))


def sync_point_from_row(row: Mapping[str, Any]) -> WorkflowSyncPoint:
    return WorkflowSyncPoint(**_decode(row, SYNC_POINT_COLUMNS))


def timer_from_row(row: Mapping[str, Any]) -> WorkflowTimer:
    return WorkflowTimer(**_decode(row, TIMER_COLUMNS))


def snapshot_from_row(row: Mapping[str, Any]) -> WorkflowSnapshot:
    return WorkflowSnapshot(**_decode(row, SNAPSHOT_COLUMNS))


def select_list(columns: tuple[str, ...]) -> str:
    return ", ".join(columns)
