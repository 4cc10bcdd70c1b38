"""Dependency-gated, idempotent dispatch of the actions of a transition."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .actions import ActionContext, ActionRegistry
from .constants import DEFAULT_ACTION_TIMEOUT_SECONDS
from .definitions import ActionSpec, DefinitionRegistry, Transition, topological_order
from .errors import ActionTimeoutError, ConflictError, NotFoundError
from .locks import DistributedLock
from .models import (
    ActionStatus,
    DependencyType,
    ExecutionStatus,
    Payload,
    SyncCompletion,
    TimerKind,
    WorkflowActionDependency,
    WorkflowActionResult,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowTimer,
    utcnow,
)
from .persistence import (
    InsertTimer,
    RecordActionResult,
    UpdateExecution,
    WorkflowStore,
    WriteOp,
)
from .retry import ErrorCategory, ErrorClassifier, retry_async
from .state_machine import resolve
from .sync_points import SyncPointCoordinator, sync_point_id
from .transaction import DistributedTransaction

logger = logging.getLogger(__name__)


def idempotency_key(execution_id: str, action_id: str, event_sequence: int) -> str:
    return f"{execution_id}:{action_id}:{event_sequence}"


class ActionDependencyGraph:
    """The actions of one transition and the edges between them."""

    def __init__(self, transition: Transition) -> None:
        self.transition = transition
        self.nodes: Dict[str, ActionSpec] = {a.id: a for a in transition.actions}
        self.order = topological_order(transition)
        self._dependents: Dict[str, List[str]] = {a: [] for a in self.nodes}
        for action in transition.actions:
            for dep in action.depends_on:
                self._dependents[dep.action_id].append(action.id)

    def dependencies(self, action_id: str) -> List[tuple[str, DependencyType]]:
        return [
            (dep.action_id, DependencyType(dep.dependency_type))
            for dep in self.nodes[action_id].depends_on
        ]

    def dependents(self, action_id: str) -> List[str]:
        return list(self._dependents[action_id])

    def transitive_dependents(self, action_id: str) -> List[str]:
        seen: List[str] = []
        stack = list(self._dependents[action_id])
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.append(node)
            stack.extend(self._dependents[node])
        return seen

    def roots(self) -> List[str]:
        return [a for a in self.order if not self.nodes[a].depends_on]

    def ready(self, statuses: Dict[str, ActionStatus]) -> List[str]:
        """Actions without a result whose dependencies are all satisfied."""
        return [
            a
            for a in self.order
            if a not in statuses
            and all(
                dep in statuses and kind.satisfied_by(statuses[dep])
                for dep, kind in self.dependencies(a)
            )
        ]

    def blocked(self, statuses: Dict[str, ActionStatus]) -> List[str]:
        """Actions without a result that can never run because a dependency settled badly."""
        return [
            a
            for a in self.order
            if a not in statuses
            and any(
                dep in statuses
                and statuses[dep].is_final
                and not kind.satisfied_by(statuses[dep])
                for dep, kind in self.dependencies(a)
            )
        ]

    def edges(self, tenant: str, execution_id: str, event_id: str) -> List[WorkflowActionDependency]:
        return [
            WorkflowActionDependency(
                tenant=tenant,
                execution_id=execution_id,
                event_id=event_id,
                action_id=action.id,
                depends_on_id=dep.action_id,
                dependency_type=DependencyType(dep.dependency_type),
            )
            for action in self.transition.actions
            for dep in action.depends_on
        ]


class DispatchReport(BaseModel):
    """Action results of one event and the sync points satisfied while dispatching."""

    results: List[WorkflowActionResult] = Field(default_factory=list)
    satisfied: List[SyncCompletion] = Field(default_factory=list)


class ActionOutcome(BaseModel):
    """Everything written when a handler finishes, committed as one batch.

    Serialized into an ``action_settle`` timer when it cannot be recorded
    right away, so the outcome of a handler that already ran is never lost.
    """

    record: RecordActionResult
    retry_timer: Optional[WorkflowTimer] = None
    fail_execution: Optional[UpdateExecution] = None

    def ops(self) -> List[WriteOp]:
        ops: List[WriteOp] = [self.record]
        if self.retry_timer is not None:
            ops.append(InsertTimer(timer=self.retry_timer))
        if self.fail_execution is not None:
            ops.append(self.fail_execution)
        return ops


class ActionScheduler:
    """Run the actions of a transition in dependency order.

    Readiness is recomputed from persisted results on every pass, so calling
    :meth:`advance` again after a crash or a retry resumes where the
    previous dispatch stopped. The execution lock is only held while a
    result is recorded, never while a handler runs.
    """

    def __init__(
        self,
        store: WorkflowStore,
        locks: DistributedLock,
        actions: ActionRegistry,
        definitions: DefinitionRegistry,
        sync_points: SyncPointCoordinator,
        classifier: ErrorClassifier,
        concurrency_limit: int = 5,
        default_timeout: float = DEFAULT_ACTION_TIMEOUT_SECONDS,
    ) -> None:
        self.store = store
        self.locks = locks
        self.actions = actions
        self.definitions = definitions
        self.sync_points = sync_points
        self.classifier = classifier
        self.default_timeout = default_timeout
        self._semaphore = asyncio.Semaphore(concurrency_limit)

    # ------------------------------------------------------------------
    # Frontier expansion
    async def advance(
        self,
        execution: WorkflowExecution,
        event: WorkflowEvent,
        transition: Transition,
        deadline: Optional[float] = None,
    ) -> DispatchReport:
        tenant = execution.tenant
        report = DispatchReport()
        if not transition.actions:
            return report
        graph = ActionDependencyGraph(transition)
        await self.store.add_dependencies(
            tenant, graph.edges(tenant, execution.execution_id, event.event_id)
        )
        for join in transition.joins:
            await self.sync_points.create(
                tenant,
                execution.execution_id,
                event.event_id,
                event.sequence,
                join.name,
                total_actions=len(transition.members(join.name)),
                continuation_event=join.continuation_event,
            )

        while True:
            current = await self.store.get_execution(tenant, execution.execution_id)
            if current is None or current.is_terminal:
                break
            statuses = await self._statuses(tenant, execution.execution_id, event.event_id)
            blocked = graph.blocked(statuses)
            for action_id in blocked:
                await self._skip(current, event, graph.nodes[action_id])
            ready = graph.ready(statuses)
            if not ready and not blocked:
                break
            outcomes = await asyncio.gather(
                *(
                    self._dispatch(current, event, graph.nodes[a], deadline)
                    for a in ready
                ),
                return_exceptions=True,
            )
            failures: List[BaseException] = []
            for action_id, outcome in zip(ready, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(
                        f"Dispatch of {action_id} for {execution.execution_id} failed: {outcome!r}"
                    )
                    failures.append(outcome)
                elif outcome is not None:
                    report.satisfied.append(outcome)
            if failures:
                raise failures[0]

        report.results = await self.store.list_action_results(
            tenant, execution.execution_id, event.event_id
        )
        return report

    async def _statuses(
        self, tenant: str, execution_id: str, event_id: str
    ) -> Dict[str, ActionStatus]:
        results = await self.store.list_action_results(tenant, execution_id, event_id)
        return {r.action_id: r.status for r in results}

    def _sync_id(self, execution_id: str, event: WorkflowEvent, spec: ActionSpec) -> Optional[str]:
        if spec.sync_point is None:
            return None
        return sync_point_id(execution_id, spec.sync_point, event.sequence)

    async def _skip(
        self, execution: WorkflowExecution, event: WorkflowEvent, spec: ActionSpec
    ) -> None:
        now = utcnow()
        sync_id = self._sync_id(execution.execution_id, event, spec)
        skipped = WorkflowActionResult(
            tenant=execution.tenant,
            execution_id=execution.execution_id,
            event_id=event.event_id,
            event_sequence=event.sequence,
            action_id=spec.id,
            action_kind=spec.kind,
            parameters=spec.parameters,
            status=ActionStatus.SKIPPED,
            error_message="A required dependency did not complete",
            idempotency_key=idempotency_key(execution.execution_id, spec.id, event.sequence),
            ready_to_execute=False,
            attempts=0,
            sync_point_id=sync_id,
            completed_at=now,
        )
        if await self.store.reserve_action(skipped):
            logger.info(f"Skipped action {spec.id} of {execution.execution_id}")
            if sync_id is not None:
                await self.sync_points.fail(execution.tenant, sync_id)

    # ------------------------------------------------------------------
    # Dispatch
    async def _dispatch(
        self,
        execution: WorkflowExecution,
        event: WorkflowEvent,
        spec: ActionSpec,
        deadline: Optional[float],
    ) -> Optional[SyncCompletion]:
        key = idempotency_key(execution.execution_id, spec.id, event.sequence)
        reservation = WorkflowActionResult(
            tenant=execution.tenant,
            execution_id=execution.execution_id,
            event_id=event.event_id,
            event_sequence=event.sequence,
            action_id=spec.id,
            action_kind=spec.kind,
            parameters=spec.parameters,
            idempotency_key=key,
            sync_point_id=self._sync_id(execution.execution_id, event, spec),
            started_at=utcnow(),
        )
        if not await self.store.reserve_action(reservation):
            logger.debug(f"Action {key} already reserved; skipping dispatch")
            return None
        return await self._execute(execution, event, spec, reservation, deadline)

    async def _execute(
        self,
        execution: WorkflowExecution,
        event: WorkflowEvent,
        spec: ActionSpec,
        reservation: WorkflowActionResult,
        deadline: Optional[float],
    ) -> Optional[SyncCompletion]:
        key = reservation.idempotency_key
        attempt = reservation.attempts
        timeout = deadline or spec.timeout_seconds or self.default_timeout
        ctx = ActionContext(
            tenant=execution.tenant,
            execution_id=execution.execution_id,
            event_id=event.event_id,
            event_name=event.event_name,
            event_sequence=event.sequence,
            action_id=spec.id,
            parameters=dict(spec.parameters),
            idempotency_key=key,
            attempt=attempt,
            payload=event.payload,
            context_data=execution.context_data,
            user_id=event.user_id,
        )
        try:
            handler = self.actions.get(spec.kind)
            async with self._semaphore:
                try:
                    output = await asyncio.wait_for(handler.execute(ctx), timeout)
                except asyncio.TimeoutError:
                    raise ActionTimeoutError(
                        f"Action {spec.id} exceeded its {timeout}s deadline"
                    ) from None
        except Exception as exc:
            return await self._record(
                execution,
                reservation,
                self._failure_outcome(execution, spec, reservation, exc, deadline),
                deadline,
            )

        logger.info(f"Action {key} succeeded on attempt {attempt}")
        return await self._record(
            execution,
            reservation,
            ActionOutcome(
                record=RecordActionResult(
                    idempotency_key=key,
                    status=ActionStatus.SUCCEEDED,
                    result=output or {},
                    completed_at=utcnow(),
                )
            ),
            deadline,
        )

    def _failure_outcome(
        self,
        execution: WorkflowExecution,
        spec: ActionSpec,
        reservation: WorkflowActionResult,
        exc: Exception,
        deadline: Optional[float],
    ) -> ActionOutcome:
        key = reservation.idempotency_key
        attempt = reservation.attempts
        classification = self.classifier.classify(exc, attempt)
        now = utcnow()
        if classification.retryable:
            delay = self.classifier.policy.compute_backoff(attempt - 1)
            logger.warning(
                f"Action {key} failed on attempt {attempt} ({classification.description}); "
                f"retrying in {delay:.2f}s"
            )
            return ActionOutcome(
                record=RecordActionResult(
                    idempotency_key=key,
                    status=ActionStatus.RETRY_SCHEDULED,
                    error_message=classification.description,
                ),
                retry_timer=WorkflowTimer(
                    tenant=execution.tenant,
                    execution_id=execution.execution_id,
                    name=f"retry:{spec.id}",
                    kind=TimerKind.ACTION_RETRY,
                    fire_time=now + timedelta(seconds=delay),
                    payload=Payload(
                        data={
                            "idempotency_key": key,
                            "attempt": attempt + 1,
                            "deadline": deadline,
                        }
                    ),
                ),
            )

        logger.error(f"Action {key} failed permanently: {classification.description}")
        record = RecordActionResult(
            idempotency_key=key,
            status=ActionStatus.FAILED,
            error_message=classification.description,
            completed_at=now,
        )
        if classification.category != ErrorCategory.POISON:
            return ActionOutcome(record=record)
        return ActionOutcome(
            record=record,
            fail_execution=UpdateExecution(
                execution_id=execution.execution_id,
                status=ExecutionStatus.FAILED,
                error_message=classification.description,
                completed_at=now,
            ),
        )

    # ------------------------------------------------------------------
    # Recording outcomes
    async def _record(
        self,
        execution: WorkflowExecution,
        reservation: WorkflowActionResult,
        outcome: ActionOutcome,
        deadline: Optional[float],
    ) -> Optional[SyncCompletion]:
        """Write ``outcome`` and report the action's arrival at its sync point.

        Returns the completion when this arrival satisfied the sync point.
        When the outcome cannot be written because the lease stays
        contended, it is handed to an ``action_settle`` timer instead.
        """
        try:
            settled = await self._settle(execution, *outcome.ops())
        except Exception as exc:
            category, description = self.classifier.category_of(exc)
            if category != ErrorCategory.TRANSIENT:
                raise
            await self._defer(execution, reservation, outcome, description, deadline)
            return None
        sync_id = reservation.sync_point_id
        if not settled or sync_id is None:
            return None
        if outcome.record.status == ActionStatus.SUCCEEDED:
            completion = await self.sync_points.complete(
                execution.tenant, sync_id, member=reservation.idempotency_key
            )
            return completion if completion.satisfied else None
        if outcome.record.status == ActionStatus.FAILED:
            await self.sync_points.fail(execution.tenant, sync_id)
        return None

    async def _settle(self, execution: WorkflowExecution, *ops: WriteOp) -> bool:
        """Commit ``ops`` under the execution lease; False if they were discarded.

        Lease contention is retried with backoff; the last error is raised
        once the retry policy is exhausted.
        """
        try:
            await retry_async(lambda: self._commit(execution, ops), self.classifier)
        except ConflictError as exc:
            logger.warning(f"Discarded action outcome: {exc}")
            return False
        return True

    async def _commit(self, execution: WorkflowExecution, ops: tuple[WriteOp, ...]) -> None:
        tenant = execution.tenant
        async with DistributedTransaction(
            self.locks, self.store, tenant, execution.execution_id
        ) as tx:
            current = await self.store.get_execution(tenant, execution.execution_id)
            if current is None or current.is_terminal:
                raise ConflictError(f"Execution {execution.execution_id} is no longer active")
            tx.stage(*ops)
            await tx.commit()

    async def _defer(
        self,
        execution: WorkflowExecution,
        reservation: WorkflowActionResult,
        outcome: ActionOutcome,
        reason: str,
        deadline: Optional[float],
    ) -> WorkflowTimer:
        key = reservation.idempotency_key
        delay = self.classifier.policy.compute_backoff(0)
        timer = WorkflowTimer(
            tenant=execution.tenant,
            execution_id=execution.execution_id,
            name=f"settle:{reservation.action_id}",
            kind=TimerKind.ACTION_SETTLE,
            fire_time=utcnow() + timedelta(seconds=delay),
            payload=Payload(
                data={
                    "idempotency_key": key,
                    "outcome": outcome.model_dump(mode="json", exclude_unset=True),
                    "deadline": deadline,
                }
            ),
        )
        await self.store.create_timer(timer)
        logger.warning(
            f"Could not record outcome of {key} ({reason}); retrying in {delay:.2f}s"
        )
        return timer

    # ------------------------------------------------------------------
    # Timer-driven resumption
    async def retry_action(self, timer: WorkflowTimer) -> DispatchReport:
        """Re-dispatch the action named by a fired ``action_retry`` timer."""
        tenant = timer.tenant
        key = timer.payload.data["idempotency_key"]
        attempt = int(timer.payload.data["attempt"])
        deadline = timer.payload.data.get("deadline")
        if not await self.store.claim_action_retry(tenant, key, attempt):
            logger.debug(f"Retry of {key} already claimed or no longer scheduled")
            return DispatchReport()
        reservation, execution, event, transition = await self._load(timer, key)
        spec = transition.action(reservation.action_id)
        completion = await self._execute(execution, event, spec, reservation, deadline)
        return await self._resume(execution, event, transition, completion, deadline)

    async def settle_action(self, timer: WorkflowTimer) -> DispatchReport:
        """Record the outcome carried by a fired ``action_settle`` timer."""
        key = timer.payload.data["idempotency_key"]
        deadline = timer.payload.data.get("deadline")
        reservation, execution, event, transition = await self._load(timer, key)
        if reservation.status != ActionStatus.PENDING:
            logger.debug(f"Outcome of {key} already recorded as {reservation.status.value}")
            return DispatchReport()
        outcome = ActionOutcome.model_validate(timer.payload.data["outcome"])
        completion = await self._record(execution, reservation, outcome, deadline)
        return await self._resume(execution, event, transition, completion, deadline)

    async def _load(
        self, timer: WorkflowTimer, key: str
    ) -> tuple[WorkflowActionResult, WorkflowExecution, WorkflowEvent, Transition]:
        tenant = timer.tenant
        reservation = await self.store.get_action_result(tenant, key)
        execution = await self.store.get_execution(tenant, timer.execution_id)
        if reservation is None or execution is None:
            raise NotFoundError(f"Action {key} of {timer.execution_id} not found")
        event = await self.store.get_event(tenant, reservation.event_id)
        if event is None:
            raise NotFoundError(f"Event {reservation.event_id} not found")
        definition = self.definitions.get(execution.workflow_name, execution.workflow_version)
        transition = resolve(definition, event.from_state, event.event_name)
        return reservation, execution, event, transition

    async def _resume(
        self,
        execution: WorkflowExecution,
        event: WorkflowEvent,
        transition: Transition,
        completion: Optional[SyncCompletion],
        deadline: Optional[float],
    ) -> DispatchReport:
        report = DispatchReport()
        if completion is not None:
            report.satisfied.append(completion)
        follow_up = await self.advance(execution, event, transition, deadline)
        report.satisfied.extend(follow_up.satisfied)
        report.results = follow_up.results
        return report


__all__ = [
    "idempotency_key",
    "ActionDependencyGraph",
    "DispatchReport",
    "ActionOutcome",
    "ActionScheduler",
]
