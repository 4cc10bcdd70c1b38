"""Handler outcomes, timers and dispatches that hit infrastructure failures."""

import asyncio
from datetime import timedelta

import pytest

from conftest import TENANT
from flowcore.actions import FunctionAction
from flowcore.errors import TransientError
from flowcore.models import (
    ActionStatus,
    ExecutionStatus,
    TimerKind,
    TimerStatus,
    utcnow,
)


@pytest.mark.asyncio
async def test_outcome_recorded_after_lease_contention(engine):
    engine.locks.wait_seconds = 0.05
    held = {}

    async def notify_while_lease_taken(ctx):
        held["lease"] = await engine.locks.acquire(
            ctx.tenant, ctx.execution_id, owner="other-worker", ttl=60
        )
        return {"sent": True}

    engine.actions.register("notify", FunctionAction(notify_while_lease_taken))
    execution = await engine.start_execution(TENANT, "approval", "1")
    await engine.append_event(TENANT, execution.execution_id, "Submit")

    (result,) = await engine.get_action_results(TENANT, execution.execution_id)
    assert result.status == ActionStatus.PENDING
    settle = [
        t
        for t in await engine.list_timers(TENANT, execution.execution_id)
        if t.kind == TimerKind.ACTION_SETTLE
    ]
    assert len(settle) == 1
    assert settle[0].status == TimerStatus.PENDING
    assert settle[0].payload.data["outcome"]["record"]["status"] == "succeeded"

    await held["lease"].release()
    assert await engine.fire_due_timers(now=utcnow() + timedelta(seconds=5)) == 1

    (result,) = await engine.get_action_results(TENANT, execution.execution_id)
    assert result.status == ActionStatus.SUCCEEDED
    assert result.result == {"sent": True}
    current = await engine.get_execution(TENANT, execution.execution_id)
    assert current.status == ExecutionStatus.WAITING

    # A second delivery of the same outcome is a no-op.
    assert await engine.scheduler.settle_action(settle[0]) is not None
    (result,) = await engine.get_action_results(TENANT, execution.execution_id)
    assert result.status == ActionStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_failed_dispatch_does_not_abandon_siblings(engine, monkeypatch):
    execution = await engine.start_execution(TENANT, "approval", "1")
    await engine.append_event(TENANT, execution.execution_id, "Submit")

    reserve = engine.store.reserve_action

    async def reserve_action(result):
        if result.action_id == "legal":
            raise PermissionError("reservations are read-only")
        return await reserve(result)

    monkeypatch.setattr(engine.store, "reserve_action", reserve_action)
    with pytest.raises(PermissionError):
        await engine.append_event(TENANT, execution.execution_id, "Review")

    statuses = {
        r.action_id: r.status
        for r in await engine.get_action_results(TENANT, execution.execution_id)
    }
    assert statuses == {
        "notify_approver": ActionStatus.SUCCEEDED,
        "finance": ActionStatus.SUCCEEDED,
        "security": ActionStatus.SUCCEEDED,
    }
    (point,) = await engine.list_sync_points(TENANT, execution.execution_id)
    assert point.completed_actions == 2


@pytest.mark.asyncio
async def test_failing_timer_does_not_strand_rest_of_batch(engine, monkeypatch):
    first = await engine.start_execution(TENANT, "approval", "1")
    second = await engine.start_execution(TENANT, "approval", "1")
    for execution in (first, second):
        await engine.append_event(TENANT, execution.execution_id, "Submit")

    list_events = engine.store.list_events

    async def broken_list_events(tenant, execution_id, after_sequence=0):
        if execution_id == first.execution_id:
            raise RuntimeError("duplicate key value violates unique constraint")
        return await list_events(tenant, execution_id, after_sequence)

    monkeypatch.setattr(engine.store, "list_events", broken_list_events)
    with pytest.raises(RuntimeError):
        await engine.fire_due_timers(now=utcnow() + timedelta(hours=2))
    monkeypatch.undo()

    names = [e.event_name for e in await engine.get_history(TENANT, second.execution_id)]
    assert names == ["workflow.started", "Submit", "Remind"]
    names = [e.event_name for e in await engine.get_history(TENANT, first.execution_id)]
    assert names == ["workflow.started", "Submit"]
    for execution in (first, second):
        (reminder,) = [
            t
            for t in await engine.list_timers(TENANT, execution.execution_id)
            if t.name == "reminder"
        ]
        assert reminder.status == TimerStatus.FIRED


@pytest.mark.asyncio
async def test_retry_keeps_callers_deadline(engine):
    attempts = []

    async def slow_extract(ctx):
        attempts.append(ctx.attempt)
        if len(attempts) == 1:
            raise TransientError("source offline")
        await asyncio.sleep(0.5)
        return {}

    engine.actions.register("extract", FunctionAction(slow_extract))
    execution = await engine.start_execution(TENANT, "pipeline", "1")
    await engine.append_event(TENANT, execution.execution_id, "run", deadline=0.2)

    (retry,) = [
        t
        for t in await engine.list_timers(TENANT, execution.execution_id)
        if t.kind == TimerKind.ACTION_RETRY
    ]
    assert retry.payload.data["deadline"] == 0.2

    # The 1s default timeout would let the slow attempt finish; 0.2s does not.
    assert await engine.fire_due_timers(now=utcnow() + timedelta(seconds=5)) == 1
    results = {
        r.action_id: r for r in await engine.get_action_results(TENANT, execution.execution_id)
    }
    assert attempts == [1, 2]
    assert results["extract"].status == ActionStatus.RETRY_SCHEDULED
    assert "deadline" in results["extract"].error_message
    pending = [
        t
        for t in await engine.list_timers(TENANT, execution.execution_id)
        if t.kind == TimerKind.ACTION_RETRY and t.status == TimerStatus.PENDING
    ]
    assert [t.payload.data["deadline"] for t in pending] == [0.2]
