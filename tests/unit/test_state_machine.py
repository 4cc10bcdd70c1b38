import pytest

from conftest import APPROVAL, TENANT, make_config, make_engine
from flowcore.config import SnapshotConfig
from flowcore.definitions import WorkflowDefinition
from flowcore.errors import InconsistentStateError, ValidationError
from flowcore.models import WorkflowEvent
from flowcore.persistence import AppendEvent, UpdateExecution
from flowcore.state_machine import fold, resolve

DEFINITION = WorkflowDefinition.model_validate(APPROVAL)


def _event(sequence, name, from_state, to_state):
    return WorkflowEvent(
        tenant=TENANT,
        execution_id="exec-1",
        sequence=sequence,
        event_name=name,
        from_state=from_state,
        to_state=to_state,
    )


def test_resolve_returns_transition_or_raises():
    assert resolve(DEFINITION, "Draft", "Submit").to_state == "PendingApproval"
    with pytest.raises(ValidationError, match="no transition"):
        resolve(DEFINITION, "Draft", "Approved")


def test_fold_follows_transition_table():
    state = fold(DEFINITION, None, _event(1, "workflow.started", None, "Draft"))
    state = fold(DEFINITION, state, _event(2, "Submit", "Draft", "PendingApproval"))
    state = fold(DEFINITION, state, _event(3, "workflow.cancelled", state, state))
    assert state == "PendingApproval"


@pytest.mark.parametrize(
    "state, event",
    [
        ("Draft", _event(1, "workflow.started", None, "Draft")),
        (None, _event(2, "Submit", "Draft", "PendingApproval")),
        ("Draft", _event(2, "Submit", "Reviewing", "PendingApproval")),
        ("Draft", _event(2, "Submit", "Draft", "Done")),
        ("Draft", _event(2, "workflow.cancelled", "Draft", "Done")),
    ],
)
def test_fold_rejects_divergent_events(state, event):
    with pytest.raises(InconsistentStateError):
        fold(DEFINITION, state, event)


@pytest.mark.asyncio
async def test_replay_is_deterministic(engine):
    execution = await engine.start_execution(TENANT, "approval", "1", {"amount": 5})
    await engine.append_event(TENANT, execution.execution_id, "Submit")
    await engine.append_event(TENANT, execution.execution_id, "Remind")

    first = await engine.replay(TENANT, execution.execution_id)
    second = await engine.replay(TENANT, execution.execution_id)
    assert first == second
    assert first.current_state == "PendingApproval"
    assert first.version == 3
    assert first.events_applied == 3


@pytest.mark.asyncio
async def test_snapshot_replay_matches_full_replay(recorder):
    config = make_config(snapshots=SnapshotConfig(event_threshold=2, interval_seconds=3600, keep=2))
    engine = make_engine(recorder, config=config)
    execution = await engine.start_execution(TENANT, "approval", "1")
    for name in ("Submit", "Remind", "Remind", "Remind", "Remind"):
        await engine.append_event(TENANT, execution.execution_id, name)

    snapshot = await engine.snapshots.latest(TENANT, execution.execution_id)
    assert snapshot is not None
    assert snapshot.version == 6

    from_snapshot = await engine.replay(TENANT, execution.execution_id)
    from_genesis = await engine.replay(TENANT, execution.execution_id, use_snapshots=False)
    assert from_snapshot.from_snapshot
    assert from_snapshot.snapshot_version == 6
    assert from_snapshot.events_applied == 0
    assert from_genesis.events_applied == 6
    assert (from_snapshot.current_state, from_snapshot.version) == (
        from_genesis.current_state,
        from_genesis.version,
    )


@pytest.mark.asyncio
async def test_snapshot_policy_by_count_and_interval(engine):
    execution = await engine.start_execution(TENANT, "approval", "1")
    snapshots = engine.snapshots
    snapshots.event_threshold = 3

    assert not snapshots.is_due(1, None, execution.created_at, execution.created_at)
    assert snapshots.is_due(3, None, execution.created_at, execution.created_at)
    later = execution.created_at + snapshots.interval
    assert snapshots.is_due(1, None, execution.created_at, later)

    taken = await snapshots.take(execution)
    assert not snapshots.is_due(taken.version, taken, execution.created_at, later)


@pytest.mark.asyncio
async def test_gap_in_log_is_inconsistent(engine):
    execution = await engine.start_execution(TENANT, "approval", "1")
    gap = _event(3, "Submit", "Draft", "PendingApproval").model_copy(
        update={"execution_id": execution.execution_id}
    )
    await engine.store.apply(TENANT, [AppendEvent(event=gap)])

    with pytest.raises(InconsistentStateError, match="jumps"):
        await engine.replay(TENANT, execution.execution_id)


@pytest.mark.asyncio
async def test_append_to_diverged_execution_fails_it(engine):
    execution = await engine.start_execution(TENANT, "approval", "1")
    await engine.store.apply(
        TENANT,
        [UpdateExecution(execution_id=execution.execution_id, current_state="Reviewing")],
    )

    with pytest.raises(InconsistentStateError):
        await engine.append_event(TENANT, execution.execution_id, "Approved")

    failed = await engine.get_execution(TENANT, execution.execution_id)
    assert failed.status.value == "failed"
    assert "Replay" in failed.error_message
    assert len(await engine.get_history(TENANT, execution.execution_id)) == 1
