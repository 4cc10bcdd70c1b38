"""Behaviour shared by every workflow store backend."""

import asyncio
from datetime import timedelta

import pytest

from flowcore.errors import ConcurrencyError, ConflictError, NotFoundError
from flowcore.models import (
    ActionStatus,
    DependencyType,
    ExecutionStatus,
    Payload,
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
from flowcore.persistence import (
    AppendEvent,
    CancelTimers,
    InMemoryWorkflowStore,
    InsertTimer,
    RecordActionResult,
    SQLiteWorkflowStore,
    UpdateExecution,
)

TENANT = "acme"


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryWorkflowStore()
    return SQLiteWorkflowStore(tmp_path / "wf.db")


async def _create(store, tenant=TENANT):
    execution = WorkflowExecution(
        tenant=tenant,
        workflow_name="approval",
        workflow_version="1",
        current_state="Draft",
        context_data=Payload(data={"amount": 10}),
        last_sequence=1,
    )
    genesis = WorkflowEvent(
        tenant=tenant,
        execution_id=execution.execution_id,
        sequence=1,
        event_name="workflow.started",
        to_state="Draft",
        payload=Payload(data={"amount": 10}),
    )
    await store.create_execution(execution, genesis)
    return execution, genesis


def _event(execution, sequence, name="Submit", to_state="PendingApproval"):
    return WorkflowEvent(
        tenant=execution.tenant,
        execution_id=execution.execution_id,
        sequence=sequence,
        event_name=name,
        from_state="Draft",
        to_state=to_state,
    )


def _result(execution, event, action_id="notify_approver", sync_point_id=None):
    return WorkflowActionResult(
        tenant=execution.tenant,
        execution_id=execution.execution_id,
        event_id=event.event_id,
        event_sequence=event.sequence,
        action_id=action_id,
        action_kind="notify",
        parameters={"channel": "email"},
        idempotency_key=f"{execution.execution_id}:{action_id}:{event.sequence}",
        sync_point_id=sync_point_id,
    )


@pytest.mark.asyncio
async def test_execution_and_event_roundtrip(store):
    execution, genesis = await _create(store)

    stored = await store.get_execution(TENANT, execution.execution_id)
    assert stored.current_state == "Draft"
    assert stored.status == ExecutionStatus.RUNNING
    assert stored.context_data.data == {"amount": 10}
    assert stored.created_at == execution.created_at

    (event,) = await store.list_events(TENANT, execution.execution_id)
    assert event.event_id == genesis.event_id
    assert event.payload.data == {"amount": 10}
    assert await store.get_event(TENANT, genesis.event_id) == event

    assert await store.get_execution("other-tenant", execution.execution_id) is None
    with pytest.raises(ConflictError):
        await store.create_execution(execution, genesis)


@pytest.mark.asyncio
async def test_list_executions_filters_by_tenant_and_status(store):
    first, _ = await _create(store)
    await _create(store)
    await _create(store, tenant="globex")
    await store.apply(
        TENANT,
        [UpdateExecution(execution_id=first.execution_id, status=ExecutionStatus.CANCELLED)],
    )

    assert len(await store.list_executions(TENANT)) == 2
    cancelled = await store.list_executions(TENANT, ExecutionStatus.CANCELLED)
    assert [e.execution_id for e in cancelled] == [first.execution_id]


@pytest.mark.asyncio
async def test_apply_is_all_or_nothing(store):
    execution, _ = await _create(store)
    update = UpdateExecution(
        execution_id=execution.execution_id,
        expected_sequence=1,
        last_sequence=2,
        current_state="PendingApproval",
    )
    await store.apply(TENANT, [AppendEvent(event=_event(execution, 2)), update])

    # Same sequence again: the duplicate event aborts the whole batch.
    with pytest.raises(ConflictError):
        await store.apply(
            TENANT,
            [
                AppendEvent(event=_event(execution, 2, name="Reject", to_state="Rejected")),
                UpdateExecution(execution_id=execution.execution_id, current_state="Rejected"),
            ],
        )
    stored = await store.get_execution(TENANT, execution.execution_id)
    assert stored.current_state == "PendingApproval"
    assert stored.last_sequence == 2
    assert [e.sequence for e in await store.list_events(TENANT, execution.execution_id)] == [1, 2]


@pytest.mark.asyncio
async def test_apply_fencing_detects_stale_sequence(store):
    execution, _ = await _create(store)
    with pytest.raises(ConcurrencyError):
        await store.apply(
            TENANT,
            [
                AppendEvent(event=_event(execution, 2)),
                UpdateExecution(execution_id=execution.execution_id, expected_sequence=0),
            ],
        )
    assert len(await store.list_events(TENANT, execution.execution_id)) == 1

    with pytest.raises(NotFoundError):
        await store.apply(TENANT, [UpdateExecution(execution_id="missing")])


@pytest.mark.asyncio
async def test_action_reserved_once_and_settled_once(store):
    execution, genesis = await _create(store)
    reservation = _result(execution, genesis)

    outcomes = await asyncio.gather(*(store.reserve_action(reservation) for _ in range(5)))
    assert outcomes.count(True) == 1

    settle = RecordActionResult(
        idempotency_key=reservation.idempotency_key,
        status=ActionStatus.SUCCEEDED,
        result={"sent": True},
        completed_at=utcnow(),
    )
    await store.apply(TENANT, [settle])
    with pytest.raises(ConflictError):
        await store.apply(TENANT, [settle])

    stored = await store.get_action_result(TENANT, reservation.idempotency_key)
    assert stored.success
    assert stored.result == {"sent": True}
    assert stored.parameters == {"channel": "email"}
    results = await store.list_action_results(TENANT, execution.execution_id)
    assert len(results) == 1


@pytest.mark.asyncio
async def test_retry_claim_moves_back_to_pending_once(store):
    execution, genesis = await _create(store)
    reservation = _result(execution, genesis)
    await store.reserve_action(reservation)
    key = reservation.idempotency_key

    assert not await store.claim_action_retry(TENANT, key, 2)
    await store.apply(
        TENANT,
        [RecordActionResult(idempotency_key=key, status=ActionStatus.RETRY_SCHEDULED, error_message="flaky")],
    )
    outcomes = await asyncio.gather(*(store.claim_action_retry(TENANT, key, 2) for _ in range(3)))
    assert outcomes.count(True) == 1

    stored = await store.get_action_result(TENANT, key)
    assert stored.status == ActionStatus.PENDING
    assert stored.attempts == 2


@pytest.mark.asyncio
async def test_dependencies_are_idempotent(store):
    execution, genesis = await _create(store)
    edge = WorkflowActionDependency(
        tenant=TENANT,
        execution_id=execution.execution_id,
        event_id=genesis.event_id,
        action_id="charge",
        depends_on_id="reserve",
        dependency_type=DependencyType.MUST_COMPLETE,
    )
    await store.add_dependencies(TENANT, [edge])
    await store.add_dependencies(TENANT, [edge])

    (stored,) = await store.list_dependencies(TENANT, genesis.event_id)
    assert stored.dependency_type == DependencyType.MUST_COMPLETE


@pytest.mark.asyncio
async def test_sync_point_satisfied_exactly_once(store):
    execution, genesis = await _create(store)
    point = WorkflowSyncPoint(
        sync_id=f"{execution.execution_id}:reviews:1",
        tenant=TENANT,
        execution_id=execution.execution_id,
        event_id=genesis.event_id,
        name="reviews",
        total_actions=3,
        continuation_event="Approved",
    )
    assert await store.create_sync_point(point)
    assert not await store.create_sync_point(point)

    first = await store.increment_sync_point(TENANT, point.sync_id, "m1")
    duplicate = await store.increment_sync_point(TENANT, point.sync_id, "m1")
    assert not first.satisfied
    assert duplicate.duplicate
    assert duplicate.sync_point.completed_actions == 1

    outcomes = await asyncio.gather(
        *(store.increment_sync_point(TENANT, point.sync_id, f"m{i}") for i in range(2, 8))
    )
    assert sum(1 for o in outcomes if o.satisfied) == 1

    stored = await store.get_sync_point(TENANT, point.sync_id)
    assert stored.status == SyncPointStatus.SATISFIED
    assert stored.completed_actions == 3
    assert len(await store.list_sync_arrivals(TENANT, point.sync_id)) == 3
    assert await store.list_open_sync_points() == []
    assert not await store.fail_sync_point(TENANT, point.sync_id)
    with pytest.raises(NotFoundError):
        await store.increment_sync_point(TENANT, "missing")


@pytest.mark.asyncio
async def test_timer_claim_with_successor(store):
    execution, _ = await _create(store)
    now = utcnow()
    timer = WorkflowTimer(
        tenant=TENANT,
        execution_id=execution.execution_id,
        name="digest",
        event_name="Remind",
        fire_time=now + timedelta(hours=1),
        recurrence="daily",
        state_name="Draft",
        payload=Payload(data={"n": 1}),
    )
    await store.create_timer(timer)
    later = WorkflowTimer(
        tenant=TENANT,
        execution_id=execution.execution_id,
        name="escalate",
        event_name="Escalate",
        fire_time=now + timedelta(days=3),
    )
    await store.apply(TENANT, [InsertTimer(timer=later)])

    due_at = now + timedelta(hours=2)
    (due,) = await store.list_due_timers(due_at)
    assert due.timer_id == timer.timer_id
    assert due.payload.data == {"n": 1}

    successor = due.model_copy(
        update={"timer_id": "successor", "fire_time": now + timedelta(hours=25)}
    )
    assert await store.claim_timer(TENANT, timer.timer_id, due_at, successor)
    assert not await store.claim_timer(TENANT, timer.timer_id, due_at, successor)

    timers = {t.timer_id: t for t in await store.list_timers(TENANT, execution.execution_id)}
    assert timers[timer.timer_id].status == TimerStatus.FIRED
    assert timers[timer.timer_id].fired_at == due_at
    assert timers["successor"].status == TimerStatus.PENDING

    await store.apply(TENANT, [CancelTimers(execution_id=execution.execution_id, state_name="Draft")])
    timers = {t.timer_id: t for t in await store.list_timers(TENANT, execution.execution_id)}
    assert timers["successor"].status == TimerStatus.CANCELLED
    assert timers[later.timer_id].status == TimerStatus.PENDING
    assert await store.cancel_timers(TENANT, execution.execution_id) == 1


@pytest.mark.asyncio
async def test_snapshots_latest_and_prune(store):
    execution, _ = await _create(store)
    for version in (2, 4, 6, 8):
        snapshot = WorkflowSnapshot(
            tenant=TENANT,
            execution_id=execution.execution_id,
            version=version,
            current_state=f"S{version}",
        )
        assert await store.put_snapshot(snapshot)
    assert not await store.put_snapshot(snapshot)

    latest = await store.latest_snapshot(TENANT, execution.execution_id)
    assert latest.version == 8
    assert await store.prune_snapshots(TENANT, execution.execution_id, keep=2) == 2
    assert (await store.latest_snapshot(TENANT, execution.execution_id)).version == 8
    assert await store.prune_snapshots(TENANT, execution.execution_id, keep=2) == 0
