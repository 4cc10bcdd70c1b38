from conftest import PIPELINE
from flowcore.definitions import WorkflowDefinition
from flowcore.models import ActionStatus, DependencyType
from flowcore.scheduler import ActionDependencyGraph, idempotency_key

TRANSITION = WorkflowDefinition.model_validate(PIPELINE).transition("idle", "run")


def test_idempotency_key_format():
    assert idempotency_key("E1", "notify_approver", 1) == "E1:notify_approver:1"


def test_graph_structure():
    graph = ActionDependencyGraph(TRANSITION)

    assert graph.roots() == ["extract"]
    assert graph.dependents("transform") == ["load", "audit"]
    assert sorted(graph.transitive_dependents("extract")) == ["audit", "load", "transform"]
    assert graph.dependencies("audit") == [("transform", DependencyType.MUST_COMPLETE)]

    edges = graph.edges("acme", "exec-1", "event-1")
    assert {(e.action_id, e.depends_on_id) for e in edges} == {
        ("transform", "extract"),
        ("load", "transform"),
        ("audit", "transform"),
    }


def test_ready_frontier_follows_results():
    graph = ActionDependencyGraph(TRANSITION)

    assert graph.ready({}) == ["extract"]
    assert graph.ready({"extract": ActionStatus.PENDING}) == []
    assert graph.ready({"extract": ActionStatus.SUCCEEDED}) == ["transform"]
    assert graph.ready(
        {"extract": ActionStatus.SUCCEEDED, "transform": ActionStatus.SUCCEEDED}
    ) == ["load", "audit"]


def test_failed_dependency_blocks_only_must_succeed_dependents():
    graph = ActionDependencyGraph(TRANSITION)
    statuses = {"extract": ActionStatus.SUCCEEDED, "transform": ActionStatus.FAILED}

    assert graph.blocked(statuses) == ["load"]
    assert graph.ready(statuses) == ["audit"]


def test_retrying_dependency_blocks_nothing_yet():
    graph = ActionDependencyGraph(TRANSITION)
    statuses = {"extract": ActionStatus.SUCCEEDED, "transform": ActionStatus.RETRY_SCHEDULED}

    assert graph.blocked(statuses) == []
    assert graph.ready(statuses) == []


def test_skipped_dependency_cascades():
    graph = ActionDependencyGraph(TRANSITION)
    statuses = {"extract": ActionStatus.FAILED}

    assert graph.blocked(statuses) == ["transform"]
    statuses["transform"] = ActionStatus.SKIPPED
    assert graph.blocked(statuses) == ["load", "audit"]
