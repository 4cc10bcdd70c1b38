"""The engine on a SQLite store, including restart from durable state."""

from datetime import timedelta

import pytest

from conftest import TENANT, make_engine
from flowcore.errors import TransientError
from flowcore.models import ActionStatus, ExecutionStatus, SyncPointStatus, utcnow
from flowcore.persistence import SQLiteWorkflowStore


@pytest.mark.asyncio
async def test_sqlite_engine_full_approval(tmp_path, recorder):
    engine = make_engine(recorder, store=SQLiteWorkflowStore(tmp_path / "wf.db"))
    try:
        execution = await engine.start_execution(TENANT, "approval", "1", {"amount": 99})
        await engine.append_event(TENANT, execution.execution_id, "Submit")
        result = await engine.append_event(TENANT, execution.execution_id, "Review")

        assert result.current_state == "Done"
        assert result.status == ExecutionStatus.COMPLETED
        (point,) = await engine.list_sync_points(TENANT, execution.execution_id)
        assert point.status == SyncPointStatus.SATISFIED
        names = [e.event_name for e in await engine.get_history(TENANT, execution.execution_id)]
        assert names == ["workflow.started", "Submit", "Review", "Approved"]

        replay = await engine.replay(TENANT, execution.execution_id, use_snapshots=False)
        assert replay.current_state == "Done"
        assert replay.version == 4
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_new_engine_resumes_pending_retry(tmp_path, recorder):
    db_path = tmp_path / "wf.db"
    first = make_engine(recorder, store=SQLiteWorkflowStore(db_path))
    recorder.fail("extract", TransientError("source offline"))
    execution = await first.start_execution(TENANT, "pipeline", "1")
    await first.append_event(TENANT, execution.execution_id, "run")
    await first.close()

    # A fresh process sees only what was persisted.
    second = make_engine(recorder, store=SQLiteWorkflowStore(db_path))
    try:
        waiting = await second.get_execution(TENANT, execution.execution_id)
        assert waiting.status == ExecutionStatus.WAITING

        assert await second.fire_due_timers(now=utcnow() + timedelta(seconds=5)) == 1

        results = {
            r.action_id: r for r in await second.get_action_results(TENANT, execution.execution_id)
        }
        assert {a: r.status for a, r in results.items()} == {
            "extract": ActionStatus.SUCCEEDED,
            "transform": ActionStatus.SUCCEEDED,
            "load": ActionStatus.SUCCEEDED,
            "audit": ActionStatus.SUCCEEDED,
        }
        assert results["extract"].attempts == 2
        deps = await second.store.list_dependencies(TENANT, results["load"].event_id)
        assert {(d.action_id, d.depends_on_id) for d in deps} == {
            ("transform", "extract"),
            ("load", "transform"),
            ("audit", "transform"),
        }
        await second.append_event(TENANT, execution.execution_id, "publish")
        done = await second.get_execution(TENANT, execution.execution_id)
        assert done.status == ExecutionStatus.COMPLETED
    finally:
        await second.close()
