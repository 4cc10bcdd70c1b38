"""Transition resolution and deterministic replay of execution state."""

from __future__ import annotations

import logging
from typing import Optional

from .constants import CANCELLED_EVENT, STARTED_EVENT
from .definitions import DefinitionRegistry, Transition, WorkflowDefinition
from .errors import InconsistentStateError, NotFoundError, ValidationError
from .models import ReplayResult, WorkflowEvent
from .persistence import WorkflowStore
from .snapshots import SnapshotManager

logger = logging.getLogger(__name__)


def resolve(definition: WorkflowDefinition, state: str, event_name: str) -> Transition:
    """Return the transition taken by ``event_name`` in ``state``."""
    transition = definition.transition(state, event_name)
    if transition is None:
        raise ValidationError(
            f"{definition.name}@{definition.version} has no transition "
            f"from {state!r} on {event_name!r}"
        )
    return transition


def fold(definition: WorkflowDefinition, state: Optional[str], event: WorkflowEvent) -> str:
    """Apply one recorded event to ``state``.

    The event must start from the running state and agree with the
    transition table; anything else means the log and the definition
    disagree and is never repaired silently.
    """
    where = f"event #{event.sequence} ({event.event_name}) of {event.execution_id}"
    if event.event_name == STARTED_EVENT:
        if state is not None or event.to_state != definition.initial_state:
            raise InconsistentStateError(
                f"{where} starts at {event.to_state!r} but state is {state!r}"
            )
        return event.to_state
    if state is None:
        raise InconsistentStateError(f"{where} precedes the genesis event")
    if event.from_state != state:
        raise InconsistentStateError(
            f"{where} departs {event.from_state!r} but replayed state is {state!r}"
        )
    if event.event_name == CANCELLED_EVENT:
        if event.to_state != state:
            raise InconsistentStateError(f"{where} changes state on cancellation")
        return state
    transition = definition.transition(state, event.event_name)
    if transition is None or transition.to_state != event.to_state:
        raise InconsistentStateError(
            f"{where} records {event.from_state!r} -> {event.to_state!r}, "
            "which the transition table does not allow"
        )
    return event.to_state


class StateMachine:
    """Rebuild execution state from the newest snapshot plus later events."""

    def __init__(
        self,
        store: WorkflowStore,
        definitions: DefinitionRegistry,
        snapshots: SnapshotManager,
    ) -> None:
        self.store = store
        self.definitions = definitions
        self.snapshots = snapshots

    async def replay(
        self, tenant: str, execution_id: str, use_snapshots: bool = True
    ) -> ReplayResult:
        execution = await self.store.get_execution(tenant, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found for tenant {tenant}")
        definition = self.definitions.get(
            execution.workflow_name, execution.workflow_version
        )

        state: Optional[str] = None
        version = 0
        snapshot = None
        if use_snapshots:
            snapshot = await self.snapshots.latest(tenant, execution_id)
            if snapshot is not None:
                state = snapshot.current_state
                version = snapshot.version

        events = await self.store.list_events(tenant, execution_id, after_sequence=version)
        for event in events:
            if event.sequence != version + 1:
                raise InconsistentStateError(
                    f"Event log of {execution_id} jumps from {version} to {event.sequence}"
                )
            state = fold(definition, state, event)
            version = event.sequence

        if state is None:
            raise InconsistentStateError(f"Execution {execution_id} has no events")
        return ReplayResult(
            current_state=state,
            version=version,
            events_applied=len(events),
            from_snapshot=snapshot is not None,
            snapshot_version=snapshot.version if snapshot else None,
        )


__all__ = ["resolve", "fold", "StateMachine"]
