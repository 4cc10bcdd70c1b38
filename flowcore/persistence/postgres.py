"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

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
from .schema import (
    ACTION_RESULT_COLUMNS,
    DEPENDENCY_COLUMNS,
    EVENT_COLUMNS,
    EXECUTION_COLUMNS,
    JSON_COLUMNS,
    SNAPSHOT_COLUMNS,
    SYNC_POINT_COLUMNS,
    TIMER_COLUMNS,
    action_result_from_row,
    dependency_from_row,
    encode_json,
    event_from_row,
    execution_from_row,
    select_list,
    snapshot_from_row,
    sync_point_from_row,
    timer_from_row,
    to_row,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS workflow_executions (
    execution_id TEXT NOT NULL,
    tenant TEXT NOT NULL,
    workflow_name TEXT NOT NULL,
    workflow_version TEXT NOT NULL,
    current_state TEXT NOT NULL,
    status TEXT NOT NULL,
    context_data JSONB,
    last_sequence INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    PRIMARY KEY (tenant, execution_id)
);
CREATE TABLE IF NOT EXISTS workflow_events (
    event_id TEXT PRIMARY KEY,
    tenant TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    event_name TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    user_id TEXT,
    payload JSONB,
    created_at TIMESTAMPTZ NOT NULL,
    UNIQUE (tenant, execution_id, sequence)
);
CREATE TABLE IF NOT EXISTS workflow_action_results (
    result_id TEXT PRIMARY KEY,
    tenant TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    event_sequence INTEGER NOT NULL,
    action_id TEXT NOT NULL,
    action_kind TEXT NOT NULL,
    parameters JSONB,
    result JSONB,
    status TEXT NOT NULL,
    error_message TEXT,
    idempotency_key TEXT NOT NULL,
    ready_to_execute BOOLEAN NOT NULL DEFAULT TRUE,
    attempts INTEGER NOT NULL DEFAULT 1,
    sync_point_id TEXT,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    UNIQUE (tenant, idempotency_key)
);
CREATE TABLE IF NOT EXISTS workflow_action_dependencies (
    tenant TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    depends_on_id TEXT NOT NULL,
    dependency_type TEXT NOT NULL,
    PRIMARY KEY (tenant, event_id, action_id, depends_on_id)
);
CREATE TABLE IF NOT EXISTS workflow_sync_points (
    sync_id TEXT NOT NULL,
    tenant TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    name TEXT NOT NULL,
    sync_type TEXT NOT NULL,
    status TEXT NOT NULL,
    total_actions INTEGER NOT NULL,
    completed_actions INTEGER NOT NULL DEFAULT 0,
    continuation_event TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    PRIMARY KEY (tenant, sync_id),
    CHECK (completed_actions >= 0 AND completed_actions <= total_actions)
);
CREATE TABLE IF NOT EXISTS workflow_sync_arrivals (
    tenant TEXT NOT NULL,
    sync_id TEXT NOT NULL,
    member TEXT NOT NULL,
    arrived_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (tenant, sync_id, member)
);
CREATE TABLE IF NOT EXISTS workflow_timers (
    timer_id TEXT PRIMARY KEY,
    tenant TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    event_name TEXT,
    fire_time TIMESTAMPTZ NOT NULL,
    recurrence TEXT,
    state_name TEXT,
    payload JSONB,
    status TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    fired_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS ix_workflow_timers_due ON workflow_timers (status, fire_time);
CREATE TABLE IF NOT EXISTS workflow_snapshots (
    tenant TEXT NOT NULL,
    execution_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    current_state TEXT NOT NULL,
    data JSONB,
    created_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (tenant, execution_id, version)
);
"""


def _insert_sql(
    table: str, columns: tuple[str, ...], *, ignore: bool = False
) -> str:
    placeholders = ", ".join(
        f"${i}::jsonb" if column in JSON_COLUMNS else f"${i}"
        for i, column in enumerate(columns, start=1)
    )
    sql = f"INSERT INTO {table} ({select_list(columns)}) VALUES ({placeholders})"
    if ignore:
        sql += " ON CONFLICT DO NOTHING"
    return sql


def _row(model: Any, columns: tuple[str, ...]) -> list[Any]:
    return to_row(model, columns, text_timestamps=False)


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    return int(status.rsplit(" ", 1)[-1])


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL via an asyncpg pool."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None
        self._init_lock = asyncio.Lock()

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            async with self._init_lock:
                if self._pool is None:
                    pool = await asyncpg.create_pool(
                        self._dsn, min_size=self._min_size, max_size=self._max_size
                    )
                    async with pool.acquire() as conn:
                        await conn.execute(SCHEMA)
                    self._pool = pool
                    logger.info("Connected PostgreSQL workflow store")
        return self._pool

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetch(query, *params)

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchrow(query, *params)

    async def _execute(self, query: str, *params: Any) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.execute(query, *params)

    # ------------------------------------------------------------------
    # Executions and events
    async def create_execution(
        self, execution: WorkflowExecution, genesis: WorkflowEvent
    ) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(
                        _insert_sql("workflow_executions", EXECUTION_COLUMNS),
                        *_row(execution, EXECUTION_COLUMNS),
                    )
                    await conn.execute(
                        _insert_sql("workflow_events", EVENT_COLUMNS),
                        *_row(genesis, EVENT_COLUMNS),
                    )
            except asyncpg.UniqueViolationError as exc:
                raise ConflictError(
                    f"Execution {execution.execution_id} already exists"
                ) from exc

    async def get_execution(
        self, tenant: str, execution_id: str
    ) -> WorkflowExecution | None:
        row = await self._fetchrow(
            f"SELECT {select_list(EXECUTION_COLUMNS)} FROM workflow_executions "
            "WHERE tenant = $1 AND execution_id = $2",
            tenant,
            execution_id,
        )
        return execution_from_row(row) if row else None

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        query = f"SELECT {select_list(EXECUTION_COLUMNS)} FROM workflow_executions WHERE tenant = $1"
        params: list[Any] = [tenant]
        if status is not None:
            query += " AND status = $2"
            params.append(status.value)
        rows = await self._fetch(query + " ORDER BY created_at", *params)
        return [execution_from_row(r) for r in rows]

    async def list_events(
        self, tenant: str, execution_id: str, after_sequence: int = 0
    ) -> list[WorkflowEvent]:
        rows = await self._fetch(
            f"SELECT {select_list(EVENT_COLUMNS)} FROM workflow_events "
            "WHERE tenant = $1 AND execution_id = $2 AND sequence > $3 ORDER BY sequence",
            tenant,
            execution_id,
            after_sequence,
        )
        return [event_from_row(r) for r in rows]

    async def get_event(self, tenant: str, event_id: str) -> WorkflowEvent | None:
        row = await self._fetchrow(
            f"SELECT {select_list(EVENT_COLUMNS)} FROM workflow_events "
            "WHERE tenant = $1 AND event_id = $2",
            tenant,
            event_id,
        )
        return event_from_row(row) if row else None

    async def apply(self, tenant: str, ops: Sequence[WriteOp]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await self._apply(conn, tenant, ops)
            except asyncpg.UniqueViolationError as exc:
                raise ConflictError(str(exc)) from exc

    async def _apply(
        self, conn: asyncpg.Connection, tenant: str, ops: Sequence[WriteOp]
    ) -> None:
        for op in ops:
            if isinstance(op, UpdateExecution):
                row = await conn.fetchrow(
                    "SELECT last_sequence FROM workflow_executions "
                    "WHERE tenant = $1 AND execution_id = $2 FOR UPDATE",
                    tenant,
                    op.execution_id,
                )
                if row is None:
                    raise NotFoundError(f"Execution {op.execution_id} not found")
                if (
                    op.expected_sequence is not None
                    and row["last_sequence"] != op.expected_sequence
                ):
                    raise ConcurrencyError(
                        f"Execution {op.execution_id} advanced to sequence "
                        f"{row['last_sequence']}, expected {op.expected_sequence}"
                    )
        now = utcnow()
        for op in ops:
            if isinstance(op, AppendEvent):
                await conn.execute(
                    _insert_sql("workflow_events", EVENT_COLUMNS),
                    *_row(op.event, EVENT_COLUMNS),
                )
            elif isinstance(op, UpdateExecution):
                assignments = ["updated_at = $1"]
                params: list[Any] = [now]
                for column, value in op.changes().items():
                    params.append(
                        value.value if isinstance(value, ExecutionStatus) else value
                    )
                    assignments.append(f"{column} = ${len(params)}")
                params.extend([tenant, op.execution_id])
                await conn.execute(
                    f"UPDATE workflow_executions SET {', '.join(assignments)} "
                    f"WHERE tenant = ${len(params) - 1} AND execution_id = ${len(params)}",
                    *params,
                )
            elif isinstance(op, RecordActionResult):
                status = await conn.execute(
                    """
                    UPDATE workflow_action_results
                    SET status = $1, result = $2::jsonb, error_message = $3, completed_at = $4
                    WHERE tenant = $5 AND idempotency_key = $6 AND status = $7
                    """,
                    op.status.value,
                    encode_json(op.result),
                    op.error_message,
                    op.completed_at,
                    tenant,
                    op.idempotency_key,
                    ActionStatus.PENDING.value,
                )
                if _affected(status) != 1:
                    raise ConflictError(
                        f"Action {op.idempotency_key} is not awaiting a result"
                    )
            elif isinstance(op, InsertTimer):
                await conn.execute(
                    _insert_sql("workflow_timers", TIMER_COLUMNS),
                    *_row(op.timer, TIMER_COLUMNS),
                )
            elif isinstance(op, CancelTimers):
                await _cancel_timers(conn, tenant, op.execution_id, op.state_name)

    # ------------------------------------------------------------------
    # Action results and dependencies
    async def reserve_action(self, result: WorkflowActionResult) -> bool:
        status = await self._execute(
            _insert_sql("workflow_action_results", ACTION_RESULT_COLUMNS, ignore=True),
            *_row(result, ACTION_RESULT_COLUMNS),
        )
        return _affected(status) == 1

    async def claim_action_retry(
        self, tenant: str, idempotency_key: str, attempt: int
    ) -> bool:
        status = await self._execute(
            """
            UPDATE workflow_action_results
            SET status = $1, attempts = $2, started_at = $3, completed_at = NULL
            WHERE tenant = $4 AND idempotency_key = $5 AND status = $6
            """,
            ActionStatus.PENDING.value,
            attempt,
            utcnow(),
            tenant,
            idempotency_key,
            ActionStatus.RETRY_SCHEDULED.value,
        )
        return _affected(status) == 1

    async def get_action_result(
        self, tenant: str, idempotency_key: str
    ) -> WorkflowActionResult | None:
        row = await self._fetchrow(
            f"SELECT {select_list(ACTION_RESULT_COLUMNS)} FROM workflow_action_results "
            "WHERE tenant = $1 AND idempotency_key = $2",
            tenant,
            idempotency_key,
        )
        return action_result_from_row(row) if row else None

    async def list_action_results(
        self, tenant: str, execution_id: str, event_id: Optional[str] = None
    ) -> list[WorkflowActionResult]:
        query = (
            f"SELECT {select_list(ACTION_RESULT_COLUMNS)} FROM workflow_action_results "
            "WHERE tenant = $1 AND execution_id = $2"
        )
        params: list[Any] = [tenant, execution_id]
        if event_id is not None:
            query += " AND event_id = $3"
            params.append(event_id)
        rows = await self._fetch(query + " ORDER BY event_sequence, action_id", *params)
        return [action_result_from_row(r) for r in rows]

    async def add_dependencies(
        self, tenant: str, dependencies: Sequence[WorkflowActionDependency]
    ) -> None:
        if not dependencies:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.executemany(
                _insert_sql(
                    "workflow_action_dependencies", DEPENDENCY_COLUMNS, ignore=True
                ),
                [_row(d, DEPENDENCY_COLUMNS) for d in dependencies],
            )

    async def list_dependencies(
        self, tenant: str, event_id: str
    ) -> list[WorkflowActionDependency]:
        rows = await self._fetch(
            f"SELECT {select_list(DEPENDENCY_COLUMNS)} FROM workflow_action_dependencies "
            "WHERE tenant = $1 AND event_id = $2 ORDER BY action_id, depends_on_id",
            tenant,
            event_id,
        )
        return [dependency_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Sync points
    async def create_sync_point(self, sync_point: WorkflowSyncPoint) -> bool:
        status = await self._execute(
            _insert_sql("workflow_sync_points", SYNC_POINT_COLUMNS, ignore=True),
            *_row(sync_point, SYNC_POINT_COLUMNS),
        )
        return _affected(status) == 1

    async def get_sync_point(
        self, tenant: str, sync_id: str
    ) -> WorkflowSyncPoint | None:
        row = await self._fetchrow(
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE tenant = $1 AND sync_id = $2",
            tenant,
            sync_id,
        )
        return sync_point_from_row(row) if row else None

    async def increment_sync_point(
        self, tenant: str, sync_id: str, member: Optional[str] = None
    ) -> SyncCompletion:
        select = (
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE tenant = $1 AND sync_id = $2"
        )
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(select + " FOR UPDATE", tenant, sync_id)
                if row is None:
                    raise NotFoundError(f"Sync point {sync_id} not found")
                if row["status"] != SyncPointStatus.OPEN.value:
                    return SyncCompletion(
                        satisfied=False, sync_point=sync_point_from_row(row)
                    )
                if member is not None:
                    inserted = await conn.execute(
                        "INSERT INTO workflow_sync_arrivals (tenant, sync_id, member, arrived_at) "
                        "VALUES ($1, $2, $3, $4) ON CONFLICT DO NOTHING",
                        tenant,
                        sync_id,
                        member,
                        utcnow(),
                    )
                    if _affected(inserted) == 0:
                        return SyncCompletion(
                            satisfied=False,
                            duplicate=True,
                            sync_point=sync_point_from_row(row),
                        )
                updated = await conn.fetchrow(
                    f"""
                    UPDATE workflow_sync_points
                    SET completed_actions = completed_actions + 1,
                        status = CASE WHEN completed_actions + 1 >= total_actions
                                      THEN $3 ELSE status END,
                        completed_at = CASE WHEN completed_actions + 1 >= total_actions
                                            THEN $4 ELSE completed_at END
                    WHERE tenant = $1 AND sync_id = $2 AND status = $5
                      AND completed_actions < total_actions
                    RETURNING {select_list(SYNC_POINT_COLUMNS)}
                    """,
                    tenant,
                    sync_id,
                    SyncPointStatus.SATISFIED.value,
                    utcnow(),
                    SyncPointStatus.OPEN.value,
                )
                if updated is None:
                    current = await conn.fetchrow(select, tenant, sync_id)
                    return SyncCompletion(
                        satisfied=False, sync_point=sync_point_from_row(current)
                    )
                sync_point = sync_point_from_row(updated)
                return SyncCompletion(
                    satisfied=sync_point.status == SyncPointStatus.SATISFIED,
                    sync_point=sync_point,
                )

    async def fail_sync_point(self, tenant: str, sync_id: str) -> bool:
        status = await self._execute(
            "UPDATE workflow_sync_points SET status = $1, completed_at = $2 "
            "WHERE tenant = $3 AND sync_id = $4 AND status = $5",
            SyncPointStatus.FAILED.value,
            utcnow(),
            tenant,
            sync_id,
            SyncPointStatus.OPEN.value,
        )
        return _affected(status) == 1

    async def list_sync_points(
        self, tenant: str, execution_id: str
    ) -> list[WorkflowSyncPoint]:
        rows = await self._fetch(
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE tenant = $1 AND execution_id = $2 ORDER BY created_at",
            tenant,
            execution_id,
        )
        return [sync_point_from_row(r) for r in rows]

    async def list_open_sync_points(self, limit: int = 100) -> list[WorkflowSyncPoint]:
        rows = await self._fetch(
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE status = $1 ORDER BY created_at LIMIT $2",
            SyncPointStatus.OPEN.value,
            limit,
        )
        return [sync_point_from_row(r) for r in rows]

    async def list_sync_arrivals(self, tenant: str, sync_id: str) -> list[str]:
        rows = await self._fetch(
            "SELECT member FROM workflow_sync_arrivals "
            "WHERE tenant = $1 AND sync_id = $2 ORDER BY arrived_at",
            tenant,
            sync_id,
        )
        return [r["member"] for r in rows]

    # ------------------------------------------------------------------
    # Timers
    async def create_timer(self, timer: WorkflowTimer) -> None:
        try:
            await self._execute(
                _insert_sql("workflow_timers", TIMER_COLUMNS), *_row(timer, TIMER_COLUMNS)
            )
        except asyncpg.UniqueViolationError as exc:
            raise ConflictError(f"Timer {timer.timer_id} already exists") from exc

    async def list_due_timers(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowTimer]:
        rows = await self._fetch(
            f"SELECT {select_list(TIMER_COLUMNS)} FROM workflow_timers "
            "WHERE status = $1 AND fire_time <= $2 ORDER BY fire_time LIMIT $3",
            TimerStatus.PENDING.value,
            now,
            limit,
        )
        return [timer_from_row(r) for r in rows]

    async def claim_timer(
        self,
        tenant: str,
        timer_id: str,
        fired_at: datetime,
        successor: WorkflowTimer | None = None,
    ) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                status = await conn.execute(
                    "UPDATE workflow_timers SET status = $1, fired_at = $2 "
                    "WHERE tenant = $3 AND timer_id = $4 AND status = $5",
                    TimerStatus.FIRED.value,
                    fired_at,
                    tenant,
                    timer_id,
                    TimerStatus.PENDING.value,
                )
                if _affected(status) != 1:
                    return False
                if successor is not None:
                    await conn.execute(
                        _insert_sql("workflow_timers", TIMER_COLUMNS),
                        *_row(successor, TIMER_COLUMNS),
                    )
                return True

    async def cancel_timers(
        self, tenant: str, execution_id: str, state_name: Optional[str] = None
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await _cancel_timers(conn, tenant, execution_id, state_name)

    async def list_timers(self, tenant: str, execution_id: str) -> list[WorkflowTimer]:
        rows = await self._fetch(
            f"SELECT {select_list(TIMER_COLUMNS)} FROM workflow_timers "
            "WHERE tenant = $1 AND execution_id = $2 ORDER BY fire_time, created_at",
            tenant,
            execution_id,
        )
        return [timer_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Snapshots
    async def put_snapshot(self, snapshot: WorkflowSnapshot) -> bool:
        status = await self._execute(
            _insert_sql("workflow_snapshots", SNAPSHOT_COLUMNS, ignore=True),
            *_row(snapshot, SNAPSHOT_COLUMNS),
        )
        return _affected(status) == 1

    async def latest_snapshot(
        self, tenant: str, execution_id: str
    ) -> WorkflowSnapshot | None:
        row = await self._fetchrow(
            f"SELECT {select_list(SNAPSHOT_COLUMNS)} FROM workflow_snapshots "
            "WHERE tenant = $1 AND execution_id = $2 ORDER BY version DESC LIMIT 1",
            tenant,
            execution_id,
        )
        return snapshot_from_row(row) if row else None

    async def prune_snapshots(self, tenant: str, execution_id: str, keep: int) -> int:
        status = await self._execute(
            """
            DELETE FROM workflow_snapshots
            WHERE tenant = $1 AND execution_id = $2 AND version NOT IN (
                SELECT version FROM workflow_snapshots
                WHERE tenant = $1 AND execution_id = $2
                ORDER BY version DESC LIMIT $3
            )
            """,
            tenant,
            execution_id,
            keep,
        )
        removed = _affected(status)
        if removed:
            logger.debug(f"Pruned {removed} snapshots of execution {execution_id}")
        return removed


async def _cancel_timers(
    conn: asyncpg.Connection,
    tenant: str,
    execution_id: str,
    state_name: Optional[str],
) -> int:
    query = (
        "UPDATE workflow_timers SET status = $1 "
        "WHERE tenant = $2 AND execution_id = $3 AND status = $4"
    )
    params: list[Any] = [
        TimerStatus.CANCELLED.value,
        tenant,
        execution_id,
        TimerStatus.PENDING.value,
    ]
    if state_name is not None:
        query += " AND state_name = $5"
        params.append(state_name)
    return _affected(await conn.execute(query, *params))
