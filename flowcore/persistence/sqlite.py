"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, TypeVar

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
    SNAPSHOT_COLUMNS,
    SYNC_POINT_COLUMNS,
    TIMER_COLUMNS,
    action_result_from_row,
    dependency_from_row,
    encode_json,
    encode_ts,
    event_from_row,
    execution_from_row,
    select_list,
    snapshot_from_row,
    sync_point_from_row,
    timer_from_row,
    to_row,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        execution_id TEXT NOT NULL,
        tenant TEXT NOT NULL,
        workflow_name TEXT NOT NULL,
        workflow_version TEXT NOT NULL,
        current_state TEXT NOT NULL,
        status TEXT NOT NULL,
        context_data TEXT,
        last_sequence INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        PRIMARY KEY (tenant, execution_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_events (
        event_id TEXT PRIMARY KEY,
        tenant TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        event_name TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT NOT NULL,
        user_id TEXT,
        payload TEXT,
        created_at TEXT NOT NULL,
        UNIQUE (tenant, execution_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_action_results (
        result_id TEXT PRIMARY KEY,
        tenant TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        event_sequence INTEGER NOT NULL,
        action_id TEXT NOT NULL,
        action_kind TEXT NOT NULL,
        parameters TEXT,
        result TEXT,
        status TEXT NOT NULL,
        error_message TEXT,
        idempotency_key TEXT NOT NULL,
        ready_to_execute INTEGER NOT NULL DEFAULT 1,
        attempts INTEGER NOT NULL DEFAULT 1,
        sync_point_id TEXT,
        started_at TEXT,
        completed_at TEXT,
        UNIQUE (tenant, idempotency_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_action_dependencies (
        tenant TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        event_id TEXT NOT NULL,
        action_id TEXT NOT NULL,
        depends_on_id TEXT NOT NULL,
        dependency_type TEXT NOT NULL,
        PRIMARY KEY (tenant, event_id, action_id, depends_on_id)
    )
    """,
    """
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
        created_at TEXT NOT NULL,
        completed_at TEXT,
        PRIMARY KEY (tenant, sync_id),
        CHECK (completed_actions >= 0 AND completed_actions <= total_actions)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_sync_arrivals (
        tenant TEXT NOT NULL,
        sync_id TEXT NOT NULL,
        member TEXT NOT NULL,
        arrived_at TEXT NOT NULL,
        PRIMARY KEY (tenant, sync_id, member)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_timers (
        timer_id TEXT PRIMARY KEY,
        tenant TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        name TEXT NOT NULL,
        kind TEXT NOT NULL,
        event_name TEXT,
        fire_time TEXT NOT NULL,
        recurrence TEXT,
        state_name TEXT,
        payload TEXT,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        fired_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_workflow_timers_due ON workflow_timers (status, fire_time)",
    """
    CREATE TABLE IF NOT EXISTS workflow_snapshots (
        tenant TEXT NOT NULL,
        execution_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        current_state TEXT NOT NULL,
        data TEXT,
        created_at TEXT NOT NULL,
        PRIMARY KEY (tenant, execution_id, version)
    )
    """,
)


def _insert_sql(table: str, columns: tuple[str, ...], *, ignore: bool = False) -> str:
    verb = "INSERT OR IGNORE" if ignore else "INSERT"
    placeholders = ", ".join("?" for _ in columns)
    return f"{verb} INTO {table} ({select_list(columns)}) VALUES ({placeholders})"


def _row(model: Any, columns: tuple[str, ...]) -> list[Any]:
    return to_row(model, columns, text_timestamps=True)


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite.

    The connection runs in autocommit mode and every write path opens an
    explicit ``BEGIN IMMEDIATE`` transaction, so the database write lock
    serializes conditional updates across processes sharing the file.
    """

    def __init__(self, db_path: str | Path, timeout: float = 30.0):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=timeout,
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            for statement in SCHEMA:
                self._conn.execute(statement)

    async def close(self) -> None:
        await asyncio.to_thread(self._close)

    def _close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                outcome = work(self._conn)
            except sqlite3.IntegrityError as exc:
                self._conn.execute("ROLLBACK")
                raise ConflictError(str(exc)) from exc
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")
            return outcome

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    async def _write(self, work: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Executions and events
    async def create_execution(
        self, execution: WorkflowExecution, genesis: WorkflowEvent
    ) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                _insert_sql("workflow_executions", EXECUTION_COLUMNS),
                _row(execution, EXECUTION_COLUMNS),
            )
            conn.execute(
                _insert_sql("workflow_events", EVENT_COLUMNS),
                _row(genesis, EVENT_COLUMNS),
            )

        await self._write(work)

    async def get_execution(
        self, tenant: str, execution_id: str
    ) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {select_list(EXECUTION_COLUMNS)} FROM workflow_executions "
            "WHERE tenant = ? AND execution_id = ?",
            tenant,
            execution_id,
        )
        return execution_from_row(row) if row else None

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        query = f"SELECT {select_list(EXECUTION_COLUMNS)} FROM workflow_executions WHERE tenant = ?"
        params: list[Any] = [tenant]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY created_at", *params
        )
        return [execution_from_row(r) for r in rows]

    async def list_events(
        self, tenant: str, execution_id: str, after_sequence: int = 0
    ) -> list[WorkflowEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {select_list(EVENT_COLUMNS)} FROM workflow_events "
            "WHERE tenant = ? AND execution_id = ? AND sequence > ? ORDER BY sequence",
            tenant,
            execution_id,
            after_sequence,
        )
        return [event_from_row(r) for r in rows]

    async def get_event(self, tenant: str, event_id: str) -> WorkflowEvent | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {select_list(EVENT_COLUMNS)} FROM workflow_events "
            "WHERE tenant = ? AND event_id = ?",
            tenant,
            event_id,
        )
        return event_from_row(row) if row else None

    async def apply(self, tenant: str, ops: Sequence[WriteOp]) -> None:
        def work(conn: sqlite3.Connection) -> None:
            for op in ops:
                if isinstance(op, UpdateExecution):
                    row = conn.execute(
                        "SELECT last_sequence FROM workflow_executions "
                        "WHERE tenant = ? AND execution_id = ?",
                        (tenant, op.execution_id),
                    ).fetchone()
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
            now = encode_ts(utcnow())
            for op in ops:
                if isinstance(op, AppendEvent):
                    conn.execute(
                        _insert_sql("workflow_events", EVENT_COLUMNS),
                        _row(op.event, EVENT_COLUMNS),
                    )
                elif isinstance(op, UpdateExecution):
                    changes = op.changes()
                    assignments = ["updated_at = ?"]
                    params: list[Any] = [now]
                    for column, value in changes.items():
                        assignments.append(f"{column} = ?")
                        params.append(_encode_value(value))
                    conn.execute(
                        f"UPDATE workflow_executions SET {', '.join(assignments)} "
                        "WHERE tenant = ? AND execution_id = ?",
                        (*params, tenant, op.execution_id),
                    )
                elif isinstance(op, RecordActionResult):
                    cur = conn.execute(
                        """
                        UPDATE workflow_action_results
                        SET status = ?, result = ?, error_message = ?, completed_at = ?
                        WHERE tenant = ? AND idempotency_key = ? AND status = ?
                        """,
                        (
                            op.status.value,
                            encode_json(op.result),
                            op.error_message,
                            encode_ts(op.completed_at),
                            tenant,
                            op.idempotency_key,
                            ActionStatus.PENDING.value,
                        ),
                    )
                    if cur.rowcount != 1:
                        raise ConflictError(
                            f"Action {op.idempotency_key} is not awaiting a result"
                        )
                elif isinstance(op, InsertTimer):
                    conn.execute(
                        _insert_sql("workflow_timers", TIMER_COLUMNS),
                        _row(op.timer, TIMER_COLUMNS),
                    )
                elif isinstance(op, CancelTimers):
                    _cancel_timers(conn, tenant, op.execution_id, op.state_name)

        await self._write(work)

    # ------------------------------------------------------------------
    # Action results and dependencies
    async def reserve_action(self, result: WorkflowActionResult) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                _insert_sql("workflow_action_results", ACTION_RESULT_COLUMNS, ignore=True),
                _row(result, ACTION_RESULT_COLUMNS),
            )
            return cur.rowcount == 1

        return await self._write(work)

    async def claim_action_retry(
        self, tenant: str, idempotency_key: str, attempt: int
    ) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                """
                UPDATE workflow_action_results
                SET status = ?, attempts = ?, started_at = ?, completed_at = NULL
                WHERE tenant = ? AND idempotency_key = ? AND status = ?
                """,
                (
                    ActionStatus.PENDING.value,
                    attempt,
                    encode_ts(utcnow()),
                    tenant,
                    idempotency_key,
                    ActionStatus.RETRY_SCHEDULED.value,
                ),
            )
            return cur.rowcount == 1

        return await self._write(work)

    async def get_action_result(
        self, tenant: str, idempotency_key: str
    ) -> WorkflowActionResult | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {select_list(ACTION_RESULT_COLUMNS)} FROM workflow_action_results "
            "WHERE tenant = ? AND idempotency_key = ?",
            tenant,
            idempotency_key,
        )
        return action_result_from_row(row) if row else None

    async def list_action_results(
        self, tenant: str, execution_id: str, event_id: Optional[str] = None
    ) -> list[WorkflowActionResult]:
        query = (
            f"SELECT {select_list(ACTION_RESULT_COLUMNS)} FROM workflow_action_results "
            "WHERE tenant = ? AND execution_id = ?"
        )
        params: list[Any] = [tenant, execution_id]
        if event_id is not None:
            query += " AND event_id = ?"
            params.append(event_id)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY event_sequence, action_id", *params
        )
        return [action_result_from_row(r) for r in rows]

    async def add_dependencies(
        self, tenant: str, dependencies: Sequence[WorkflowActionDependency]
    ) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.executemany(
                _insert_sql(
                    "workflow_action_dependencies", DEPENDENCY_COLUMNS, ignore=True
                ),
                [_row(d, DEPENDENCY_COLUMNS) for d in dependencies],
            )

        await self._write(work)

    async def list_dependencies(
        self, tenant: str, event_id: str
    ) -> list[WorkflowActionDependency]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {select_list(DEPENDENCY_COLUMNS)} FROM workflow_action_dependencies "
            "WHERE tenant = ? AND event_id = ? ORDER BY action_id, depends_on_id",
            tenant,
            event_id,
        )
        return [dependency_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Sync points
    async def create_sync_point(self, sync_point: WorkflowSyncPoint) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                _insert_sql("workflow_sync_points", SYNC_POINT_COLUMNS, ignore=True),
                _row(sync_point, SYNC_POINT_COLUMNS),
            )
            return cur.rowcount == 1

        return await self._write(work)

    def _select_sync_point(
        self, conn: sqlite3.Connection, tenant: str, sync_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE tenant = ? AND sync_id = ?",
            (tenant, sync_id),
        ).fetchone()

    async def get_sync_point(
        self, tenant: str, sync_id: str
    ) -> WorkflowSyncPoint | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE tenant = ? AND sync_id = ?",
            tenant,
            sync_id,
        )
        return sync_point_from_row(row) if row else None

    async def increment_sync_point(
        self, tenant: str, sync_id: str, member: Optional[str] = None
    ) -> SyncCompletion:
        def work(conn: sqlite3.Connection) -> SyncCompletion:
            row = self._select_sync_point(conn, tenant, sync_id)
            if row is None:
                raise NotFoundError(f"Sync point {sync_id} not found")
            if row["status"] != SyncPointStatus.OPEN.value:
                return SyncCompletion(satisfied=False, sync_point=sync_point_from_row(row))
            if member is not None:
                cur = conn.execute(
                    "INSERT OR IGNORE INTO workflow_sync_arrivals "
                    "(tenant, sync_id, member, arrived_at) VALUES (?, ?, ?, ?)",
                    (tenant, sync_id, member, encode_ts(utcnow())),
                )
                if cur.rowcount == 0:
                    return SyncCompletion(
                        satisfied=False, duplicate=True, sync_point=sync_point_from_row(row)
                    )
            now = encode_ts(utcnow())
            cur = conn.execute(
                """
                UPDATE workflow_sync_points
                SET completed_actions = completed_actions + 1,
                    status = CASE WHEN completed_actions + 1 >= total_actions
                                  THEN ? ELSE status END,
                    completed_at = CASE WHEN completed_actions + 1 >= total_actions
                                        THEN ? ELSE completed_at END
                WHERE tenant = ? AND sync_id = ? AND status = ?
                  AND completed_actions < total_actions
                """,
                (
                    SyncPointStatus.SATISFIED.value,
                    now,
                    tenant,
                    sync_id,
                    SyncPointStatus.OPEN.value,
                ),
            )
            updated = sync_point_from_row(self._select_sync_point(conn, tenant, sync_id))
            if cur.rowcount != 1:
                return SyncCompletion(satisfied=False, sync_point=updated)
            return SyncCompletion(
                satisfied=updated.status == SyncPointStatus.SATISFIED, sync_point=updated
            )

        return await self._write(work)

    async def fail_sync_point(self, tenant: str, sync_id: str) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "UPDATE workflow_sync_points SET status = ?, completed_at = ? "
                "WHERE tenant = ? AND sync_id = ? AND status = ?",
                (
                    SyncPointStatus.FAILED.value,
                    encode_ts(utcnow()),
                    tenant,
                    sync_id,
                    SyncPointStatus.OPEN.value,
                ),
            )
            return cur.rowcount == 1

        return await self._write(work)

    async def list_sync_points(
        self, tenant: str, execution_id: str
    ) -> list[WorkflowSyncPoint]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE tenant = ? AND execution_id = ? ORDER BY created_at",
            tenant,
            execution_id,
        )
        return [sync_point_from_row(r) for r in rows]

    async def list_open_sync_points(self, limit: int = 100) -> list[WorkflowSyncPoint]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {select_list(SYNC_POINT_COLUMNS)} FROM workflow_sync_points "
            "WHERE status = ? ORDER BY created_at LIMIT ?",
            SyncPointStatus.OPEN.value,
            limit,
        )
        return [sync_point_from_row(r) for r in rows]

    async def list_sync_arrivals(self, tenant: str, sync_id: str) -> list[str]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT member FROM workflow_sync_arrivals "
            "WHERE tenant = ? AND sync_id = ? ORDER BY arrived_at",
            tenant,
            sync_id,
        )
        return [r["member"] for r in rows]

    # ------------------------------------------------------------------
    # Timers
    async def create_timer(self, timer: WorkflowTimer) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                _insert_sql("workflow_timers", TIMER_COLUMNS), _row(timer, TIMER_COLUMNS)
            )

        await self._write(work)

    async def list_due_timers(
        self, now: datetime, limit: int = 100
    ) -> list[WorkflowTimer]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {select_list(TIMER_COLUMNS)} FROM workflow_timers "
            "WHERE status = ? AND fire_time <= ? ORDER BY fire_time LIMIT ?",
            TimerStatus.PENDING.value,
            encode_ts(now),
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
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                "UPDATE workflow_timers SET status = ?, fired_at = ? "
                "WHERE tenant = ? AND timer_id = ? AND status = ?",
                (
                    TimerStatus.FIRED.value,
                    encode_ts(fired_at),
                    tenant,
                    timer_id,
                    TimerStatus.PENDING.value,
                ),
            )
            if cur.rowcount != 1:
                return False
            if successor is not None:
                conn.execute(
                    _insert_sql("workflow_timers", TIMER_COLUMNS),
                    _row(successor, TIMER_COLUMNS),
                )
            return True

        return await self._write(work)

    async def cancel_timers(
        self, tenant: str, execution_id: str, state_name: Optional[str] = None
    ) -> int:
        return await self._write(
            lambda conn: _cancel_timers(conn, tenant, execution_id, state_name)
        )

    async def list_timers(self, tenant: str, execution_id: str) -> list[WorkflowTimer]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {select_list(TIMER_COLUMNS)} FROM workflow_timers "
            "WHERE tenant = ? AND execution_id = ? ORDER BY fire_time, created_at",
            tenant,
            execution_id,
        )
        return [timer_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Snapshots
    async def put_snapshot(self, snapshot: WorkflowSnapshot) -> bool:
        def work(conn: sqlite3.Connection) -> bool:
            cur = conn.execute(
                _insert_sql("workflow_snapshots", SNAPSHOT_COLUMNS, ignore=True),
                _row(snapshot, SNAPSHOT_COLUMNS),
            )
            return cur.rowcount == 1

        return await self._write(work)

    async def latest_snapshot(
        self, tenant: str, execution_id: str
    ) -> WorkflowSnapshot | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {select_list(SNAPSHOT_COLUMNS)} FROM workflow_snapshots "
            "WHERE tenant = ? AND execution_id = ? ORDER BY version DESC LIMIT 1",
            tenant,
            execution_id,
        )
        return snapshot_from_row(row) if row else None

    async def prune_snapshots(self, tenant: str, execution_id: str, keep: int) -> int:
        def work(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                """
                DELETE FROM workflow_snapshots
                WHERE tenant = ? AND execution_id = ? AND version NOT IN (
                    SELECT version FROM workflow_snapshots
                    WHERE tenant = ? AND execution_id = ?
                    ORDER BY version DESC LIMIT ?
                )
                """,
                (tenant, execution_id, tenant, execution_id, keep),
            )
            return cur.rowcount

        removed = await self._write(work)
        if removed:
            logger.debug(f"Pruned {removed} snapshots of execution {execution_id}")
        return removed


def _encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return encode_ts(value)
    if isinstance(value, ExecutionStatus):
        return value.value
    return value


def _cancel_timers(
    conn: sqlite3.Connection, tenant: str, execution_id: str, state_name: Optional[str]
) -> int:
    query = (
        "UPDATE workflow_timers SET status = ? "
        "WHERE tenant = ? AND execution_id = ? AND status = ?"
    )
    params: list[Any] = [
        TimerStatus.CANCELLED.value,
        tenant,
        execution_id,
        TimerStatus.PENDING.value,
    ]
    if state_name is not None:
        query += " AND state_name = ?"
        params.append(state_name)
    return conn.execute(query, params).rowcount
