"""Workflow definitions: transition tables with their actions, joins and timers."""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .actions import ActionRegistry
from .constants import MARKER_EVENTS
from .errors import NotFoundError, ValidationError
from .models import DependencyType
from .timers import parse_recurrence

logger = logging.getLogger(__name__)


class DependencySpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_id: str
    dependency_type: str = Field(DependencyType.MUST_SUCCEED.value, alias="type")


class ActionSpec(BaseModel):
    """One action triggered when a transition is taken."""

    id: str
    kind: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[DependencySpec] = Field(default_factory=list)
    sync_point: Optional[str] = None
    timeout_seconds: Optional[float] = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _expand_shorthand(cls, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return [{"action_id": v} if isinstance(v, str) else v for v in value]
        return value


class JoinSpec(BaseModel):
    """Barrier over the actions naming it; fires ``continuation_event`` once all arrive."""

    name: str
    continuation_event: Optional[str] = None


class TimerSpec(BaseModel):
    name: str
    event: str
    delay_seconds: float
    recurrence: Optional[str] = None


class Transition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_state: str = Field(alias="from")
    event: str
    to_state: str = Field(alias="to")
    actions: List[ActionSpec] = Field(default_factory=list)
    joins: List[JoinSpec] = Field(default_factory=list)
    timers: List[TimerSpec] = Field(default_factory=list)

    def action(self, action_id: str) -> ActionSpec:
        for spec in self.actions:
            if spec.id == action_id:
                return spec
        raise NotFoundError(f"Transition {self.from_state}->{self.event} has no action {action_id}")

    def join(self, name: str) -> JoinSpec:
        for spec in self.joins:
            if spec.name == name:
                return spec
        raise NotFoundError(f"Transition {self.from_state}->{self.event} has no join {name}")

    def members(self, join_name: str) -> List[ActionSpec]:
        return [a for a in self.actions if a.sync_point == join_name]


class WorkflowDefinition(BaseModel):
    name: str
    version: str = "1"
    initial_state: str
    final_states: List[str] = Field(default_factory=list)
    transitions: List[Transition] = Field(default_factory=list)

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: Any) -> Any:
        return str(value) if isinstance(value, (int, float)) else value

    def transition(self, state: str, event_name: str) -> Optional[Transition]:
        for transition in self.transitions:
            if transition.from_state == state and transition.event == event_name:
                return transition
        return None

    def states(self) -> set[str]:
        states = {self.initial_state, *self.final_states}
        for transition in self.transitions:
            states.update((transition.from_state, transition.to_state))
        return states


def topological_order(transition: Transition) -> List[str]:
    """Order action ids so every action follows its dependencies.

    Raises :class:`ValidationError` if the dependencies contain a cycle.
    """
    indegree = {a.id: 0 for a in transition.actions}
    dependents: Dict[str, List[str]] = {a.id: [] for a in transition.actions}
    for action in transition.actions:
        for dep in action.depends_on:
            indegree[action.id] += 1
            dependents[dep.action_id].append(action.id)
    queue = deque(a.id for a in transition.actions if indegree[a.id] == 0)
    order: List[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for child in dependents[node]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)
    if len(order) != len(transition.actions):
        cyclic = sorted(n for n, d in indegree.items() if d > 0)
        raise ValidationError(
            f"Actions of {transition.from_state}->{transition.event} form a cycle: {cyclic}"
        )
    return order


def validate_definition(
    definition: WorkflowDefinition, actions: Optional[ActionRegistry] = None
) -> None:
    """Check a definition for structural errors; raises :class:`ValidationError`."""
    label = f"{definition.name}@{definition.version}"
    if not definition.transitions and definition.initial_state not in definition.final_states:
        raise ValidationError(f"{label} has no transitions")
    seen: set[Tuple[str, str]] = set()
    allowed_types = {t.value for t in DependencyType}
    for transition in definition.transitions:
        key = (transition.from_state, transition.event)
        where = f"{label} {transition.from_state}->{transition.event}"
        if key in seen:
            raise ValidationError(f"{where} is declared twice")
        seen.add(key)
        if transition.event in MARKER_EVENTS:
            raise ValidationError(f"{where} uses reserved event name {transition.event}")
        if transition.from_state in definition.final_states:
            raise ValidationError(f"{where} leaves final state {transition.from_state}")

        ids = [a.id for a in transition.actions]
        if len(ids) != len(set(ids)):
            raise ValidationError(f"{where} has duplicate action ids")
        joins = {j.name for j in transition.joins}
        if len(joins) != len(transition.joins):
            raise ValidationError(f"{where} has duplicate join names")
        for action in transition.actions:
            if actions is not None and action.kind not in actions:
                raise ValidationError(f"{where} action {action.id} has unknown kind {action.kind}")
            if action.timeout_seconds is not None and action.timeout_seconds <= 0:
                raise ValidationError(f"{where} action {action.id} has non-positive timeout")
            if action.sync_point is not None and action.sync_point not in joins:
                raise ValidationError(
                    f"{where} action {action.id} joins undeclared sync point {action.sync_point}"
                )
            for dep in action.depends_on:
                if dep.dependency_type not in allowed_types:
                    raise ValidationError(
                        f"{where} action {action.id} has unknown dependency type "
                        f"{dep.dependency_type!r}"
                    )
                if dep.action_id == action.id:
                    raise ValidationError(f"{where} action {action.id} depends on itself")
                if dep.action_id not in ids:
                    raise ValidationError(
                        f"{where} action {action.id} depends on unknown action {dep.action_id}"
                    )
        topological_order(transition)
        for join in transition.joins:
            if not transition.members(join.name):
                raise ValidationError(f"{where} join {join.name} has no member actions")
        for timer in transition.timers:
            if timer.delay_seconds <= 0:
                raise ValidationError(f"{where} timer {timer.name} must fire in the future")
            if timer.recurrence is not None:
                parse_recurrence(timer.recurrence)


class DefinitionRegistry:
    """Validated workflow definitions keyed by name and version."""

    def __init__(self, actions: Optional[ActionRegistry] = None) -> None:
        self.actions = actions
        self._definitions: Dict[Tuple[str, str], WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        validate_definition(definition, self.actions)
        self._definitions[(definition.name, definition.version)] = definition
        logger.info(f"Registered workflow {definition.name}@{definition.version}")
        return definition

    def get(self, name: str, version: str) -> WorkflowDefinition:
        try:
            return self._definitions[(name, version)]
        except KeyError:
            raise NotFoundError(f"Workflow {name}@{version} is not registered") from None

    def list(self) -> List[WorkflowDefinition]:
        return list(self._definitions.values())


def parse_definitions(data: Any) -> List[WorkflowDefinition]:
    """Build definitions from parsed YAML (one mapping, a list, or ``workflows:``)."""
    if isinstance(data, dict) and "workflows" in data:
        data = data["workflows"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError("Definition document must be a mapping or a list")
    try:
        return [WorkflowDefinition.model_validate(item) for item in data]
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid workflow definition: {exc}") from exc


def load_definitions(path: str | Path) -> List[WorkflowDefinition]:
    """Load workflow definitions from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f)
    return parse_definitions(data)


__all__ = [
    "DependencySpec",
    "ActionSpec",
    "JoinSpec",
    "TimerSpec",
    "Transition",
    "WorkflowDefinition",
    "DefinitionRegistry",
    "topological_order",
    "validate_definition",
    "parse_definitions",
    "load_definitions",
]
