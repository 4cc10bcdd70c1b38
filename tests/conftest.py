"""Shared fixtures: workflow definitions, scripted action handlers and engines."""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from flowcore.actions import ActionContext, ActionRegistry, FunctionAction
from flowcore.config import FlowcoreConfig, RetryConfig, SnapshotConfig, WorkerConfig
from flowcore.definitions import WorkflowDefinition
from flowcore.engine import WorkflowEngine
from flowcore.locks import DistributedLock, InMemoryLockManager
from flowcore.persistence import InMemoryWorkflowStore, WorkflowStore
from flowcore.transports import InMemoryTransport

TENANT = "acme"

APPROVAL = {
    "name": "approval",
    "version": "1",
    "initial_state": "Draft",
    "final_states": ["Done", "Rejected"],
    "transitions": [
        {
            "from": "Draft",
            "event": "Submit",
            "to": "PendingApproval",
            "actions": [{"id": "notify_approver", "kind": "notify"}],
            "timers": [{"name": "reminder", "event": "Remind", "delay_seconds": 3600}],
        },
        {"from": "PendingApproval", "event": "Remind", "to": "PendingApproval"},
        {
            "from": "PendingApproval",
            "event": "Review",
            "to": "Reviewing",
            "actions": [
                {"id": "legal", "kind": "review", "sync_point": "reviews"},
                {"id": "finance", "kind": "review", "sync_point": "reviews"},
                {"id": "security", "kind": "review", "sync_point": "reviews"},
            ],
            "joins": [{"name": "reviews", "continuation_event": "Approved"}],
        },
        {"from": "Reviewing", "event": "Approved", "to": "Done"},
        {"from": "PendingApproval", "event": "Reject", "to": "Rejected"},
    ],
}

PIPELINE = {
    "name": "pipeline",
    "version": "1",
    "initial_state": "idle",
    "final_states": ["published"],
    "transitions": [
        {
            "from": "idle",
            "event": "run",
            "to": "running",
            "actions": [
                {"id": "extract", "kind": "extract"},
                {"id": "transform", "kind": "transform", "depends_on": ["extract"]},
                {"id": "load", "kind": "load", "depends_on": ["transform"]},
                {
                    "id": "audit",
                    "kind": "audit",
                    "depends_on": [{"action_id": "transform", "type": "must-complete"}],
                },
            ],
        },
        {"from": "running", "event": "publish", "to": "published"},
    ],
}


class Recorder:
    """Scripted handlers: records every call and raises queued failures."""

    def __init__(self) -> None:
        self.calls: List[tuple[str, int]] = []
        self.failures: Dict[str, List[Exception]] = {}

    def fail(self, action_id: str, *errors: Exception) -> None:
        self.failures.setdefault(action_id, []).extend(errors)

    def count(self, action_id: str) -> int:
        return sum(1 for called, _ in self.calls if called == action_id)

    def handler(self):
        async def run(ctx: ActionContext):
            self.calls.append((ctx.action_id, ctx.attempt))
            pending = self.failures.get(ctx.action_id)
            if pending:
                raise pending.pop(0)
            return {"action": ctx.action_id, "attempt": ctx.attempt}

        return run


def make_config(**overrides) -> FlowcoreConfig:
    config = FlowcoreConfig(
        retry=RetryConfig(
            max_attempts=3,
            initial_delay_seconds=0.01,
            max_delay_seconds=0.05,
            jitter=False,
        ),
        snapshots=SnapshotConfig(event_threshold=1000, interval_seconds=3600),
        worker=WorkerConfig(
            worker_count=1,
            poll_interval_seconds=0.01,
            batch_size=10,
            health_check_interval_seconds=0.05,
            action_timeout_seconds=1.0,
        ),
    )
    return config.model_copy(update=overrides)


def make_locks() -> DistributedLock:
    return DistributedLock(
        InMemoryLockManager(),
        ttl_seconds=5.0,
        wait_seconds=2.0,
        retry_interval_seconds=0.01,
    )


def make_engine(
    recorder: Recorder,
    store: Optional[WorkflowStore] = None,
    config: Optional[FlowcoreConfig] = None,
) -> WorkflowEngine:
    actions = ActionRegistry()
    for kind in ("notify", "review", "extract", "transform", "load", "audit"):
        actions.register(kind, FunctionAction(recorder.handler()))
    engine = WorkflowEngine(
        store or InMemoryWorkflowStore(),
        make_locks(),
        actions,
        transport=InMemoryTransport(poll_interval=0.01),
        config=config or make_config(),
    )
    engine.register_definition(WorkflowDefinition.model_validate(APPROVAL))
    engine.register_definition(WorkflowDefinition.model_validate(PIPELINE))
    return engine


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def engine(recorder) -> WorkflowEngine:
    return make_engine(recorder)
