"""Outbound API of the workflow execution core."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .actions import ActionRegistry
from .config import FlowcoreConfig
from .constants import CANCELLED_EVENT, MARKER_EVENTS, STARTED_EVENT
from .definitions import DefinitionRegistry, WorkflowDefinition
from .errors import (
    ConcurrencyError,
    ConflictError,
    InconsistentStateError,
    LockLeaseExpiredError,
    NotFoundError,
    TransactionError,
    ValidationError,
)
from .event_store import EventStore
from .locks import DistributedLock
from .models import (
    ActionStatus,
    AppendResult,
    EventEnvelope,
    ExecutionStatus,
    Payload,
    ReplayResult,
    SyncCompletion,
    SyncPointStatus,
    TimerKind,
    TimerStatus,
    WorkflowActionResult,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowSyncPoint,
    WorkflowTimer,
    new_id,
    utcnow,
)
from .persistence import (
    CancelTimers,
    InsertTimer,
    UpdateExecution,
    WorkflowStore,
    get_store,
)
from .retry import ErrorClassifier, RetryPolicy
from .scheduler import ActionScheduler, DispatchReport
from .snapshots import SnapshotManager
from .state_machine import StateMachine, resolve
from .sync_points import SyncPointCoordinator
from .timers import TimerService
from .transaction import DistributedTransaction
from .transports import BaseTransport, get_transport
from .triggers import TriggerRegistry

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Start executions, append events and answer queries.

    All durable state lives in the store; an engine instance can be
    discarded and rebuilt at any time, and any number of engines may share
    one store as long as they also share the lock backend.
    """

    def __init__(
        self,
        store: WorkflowStore,
        locks: DistributedLock,
        actions: Optional[ActionRegistry] = None,
        *,
        definitions: Optional[DefinitionRegistry] = None,
        triggers: Optional[TriggerRegistry] = None,
        transport: Optional[BaseTransport] = None,
        config: Optional[FlowcoreConfig] = None,
    ) -> None:
        self.config = config or FlowcoreConfig()
        self.store = store
        self.locks = locks
        self.actions = actions or ActionRegistry()
        self.definitions = definitions or DefinitionRegistry(self.actions)
        self.triggers = triggers
        self.transport = transport

        self.events = EventStore(store, locks)
        self.snapshots = SnapshotManager(
            store,
            event_threshold=self.config.snapshots.event_threshold,
            interval_seconds=self.config.snapshots.interval_seconds,
            keep=self.config.snapshots.keep,
        )
        self.state_machine = StateMachine(store, self.definitions, self.snapshots)
        self.timers = TimerService(store)
        self.sync_points = SyncPointCoordinator(store)
        self.retry_policy = RetryPolicy.from_config(self.config.retry)
        self.classifier = ErrorClassifier(self.retry_policy)
        self.scheduler = ActionScheduler(
            store,
            locks,
            self.actions,
            self.definitions,
            self.sync_points,
            self.classifier,
            concurrency_limit=self.config.worker.concurrency_limit,
            default_timeout=self.config.worker.action_timeout_seconds,
        )

    @classmethod
    def from_config(
        cls,
        config: FlowcoreConfig,
        actions: Optional[ActionRegistry] = None,
        triggers: Optional[TriggerRegistry] = None,
    ) -> "WorkflowEngine":
        return cls(
            get_store(config=config),
            DistributedLock.from_config(config.locks),
            actions,
            triggers=triggers,
            transport=get_transport(config=config),
            config=config,
        )

    async def close(self) -> None:
        await self.store.close()
        await self.locks.close()
        if self.transport is not None:
            await self.transport.disconnect()

    # ------------------------------------------------------------------
    # Definitions and executions
    def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self.definitions.register(definition)

    async def start_execution(
        self,
        tenant: str,
        workflow_name: str,
        workflow_version: str,
        initial_context: Optional[Payload | Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> WorkflowExecution:
        definition = self.definitions.get(workflow_name, workflow_version)
        context = Payload.wrap(initial_context)
        execution = WorkflowExecution(
            tenant=tenant,
            workflow_name=definition.name,
            workflow_version=definition.version,
            current_state=definition.initial_state,
            context_data=context,
            last_sequence=1,
        )
        genesis = WorkflowEvent(
            tenant=tenant,
            execution_id=execution.execution_id,
            sequence=1,
            event_name=STARTED_EVENT,
            from_state=None,
            to_state=definition.initial_state,
            user_id=user_id,
            payload=context,
        )
        await self.store.create_execution(execution, genesis)
        logger.info(
            f"Started {workflow_name}@{workflow_version} as {execution.execution_id} "
            f"for tenant {tenant}"
        )
        await self.refresh_status(tenant, execution.execution_id)
        return await self.get_execution(tenant, execution.execution_id)

    async def start_from_trigger(
        self,
        tenant: str,
        event_type: str,
        initial_context: Optional[Payload | Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> WorkflowExecution:
        if self.triggers is None:
            raise NotFoundError("No trigger registry configured")
        resolution = await self.triggers.resolve_trigger(tenant, event_type)
        return await self.start_execution(
            tenant,
            resolution.workflow_name,
            resolution.workflow_version,
            initial_context,
            user_id=user_id,
        )

    async def append_event(
        self,
        tenant: str,
        execution_id: str,
        event_name: str,
        payload: Optional[Payload | Dict[str, Any]] = None,
        user_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> AppendResult:
        """Record ``event_name`` and dispatch the actions of the transition it takes.

        ``deadline`` bounds each action dispatch, in seconds.
        """
        if event_name in MARKER_EVENTS:
            raise ValidationError(f"{event_name} is reserved; use the dedicated operation")

        async with DistributedTransaction(self.locks, self.store, tenant, execution_id) as tx:
            execution = await self._require_execution(tenant, execution_id)
            if execution.is_terminal:
                raise ConflictError(
                    f"Execution {execution_id} is {execution.status.value}; "
                    f"event {event_name} rejected"
                )
            definition = self.definitions.get(
                execution.workflow_name, execution.workflow_version
            )
            try:
                await self._verify_replay(execution)
            except InconsistentStateError as exc:
                logger.error(f"Execution {execution_id} is inconsistent: {exc}")
                tx.stage(
                    UpdateExecution(
                        execution_id=execution_id,
                        status=ExecutionStatus.FAILED,
                        error_message=str(exc),
                        completed_at=utcnow(),
                    ),
                    CancelTimers(execution_id=execution_id),
                )
                await tx.commit()
                raise

            transition = resolve(definition, execution.current_state, event_name)
            event = WorkflowEvent(
                tenant=tenant,
                execution_id=execution_id,
                event_name=event_name,
                from_state=execution.current_state,
                to_state=transition.to_state,
                user_id=user_id,
                payload=Payload.wrap(payload),
            )
            sequence = await self.events.append(
                tenant,
                execution_id,
                event,
                changes={"status": ExecutionStatus.RUNNING},
                tx=tx,
            )
            if transition.to_state != transition.from_state:
                tx.stage(CancelTimers(execution_id=execution_id, state_name=transition.from_state))
            for spec in transition.timers:
                timer = self.timers.build(
                    tenant,
                    execution_id,
                    spec.name,
                    delay_seconds=spec.delay_seconds,
                    event_name=spec.event,
                    recurrence=spec.recurrence,
                    state_name=transition.to_state,
                )
                tx.stage(InsertTimer(timer=timer))
            await tx.commit()

        logger.info(
            f"Execution {execution_id}: {event_name} moved {transition.from_state} -> "
            f"{transition.to_state} (#{sequence})"
        )
        execution = await self._require_execution(tenant, execution_id)
        await self.snapshots.maybe_snapshot(execution)

        report = await self.scheduler.advance(execution, event, transition, deadline)
        await self._continue(report)
        try:
            execution = await self.refresh_status(tenant, execution_id)
        except (TransactionError, LockLeaseExpiredError, ConcurrencyError) as exc:
            # The event is committed; the next writer recomputes the status.
            logger.warning(f"Status of {execution_id} not refreshed after {event_name}: {exc}")
            execution = await self._require_execution(tenant, execution_id)
        return AppendResult(
            execution_id=execution_id,
            sequence=sequence,
            current_state=execution.current_state,
            status=execution.status,
            action_results=report.results,
        )

    async def _verify_replay(self, execution: WorkflowExecution) -> ReplayResult:
        replay = await self.state_machine.replay(execution.tenant, execution.execution_id)
        if (
            replay.current_state != execution.current_state
            or replay.version != execution.last_sequence
        ):
            raise InconsistentStateError(
                f"Replay of {execution.execution_id} yields {replay.current_state!r} "
                f"at #{replay.version}, execution row says {execution.current_state!r} "
                f"at #{execution.last_sequence}"
            )
        return replay

    async def cancel_execution(
        self,
        tenant: str,
        execution_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> WorkflowExecution:
        async with DistributedTransaction(self.locks, self.store, tenant, execution_id) as tx:
            execution = await self._require_execution(tenant, execution_id)
            if execution.is_terminal:
                raise ConflictError(
                    f"Execution {execution_id} is already {execution.status.value}"
                )
            marker = WorkflowEvent(
                tenant=tenant,
                execution_id=execution_id,
                event_name=CANCELLED_EVENT,
                from_state=execution.current_state,
                to_state=execution.current_state,
                user_id=user_id,
                payload=Payload(data={"reason": reason} if reason else {}),
            )
            await self.events.append(
                tenant,
                execution_id,
                marker,
                changes={
                    "status": ExecutionStatus.CANCELLED,
                    "error_message": reason,
                    "completed_at": utcnow(),
                },
                tx=tx,
            )
            tx.stage(CancelTimers(execution_id=execution_id))
            await tx.commit()
        logger.info(f"Cancelled execution {execution_id}")
        return await self._require_execution(tenant, execution_id)

    async def enqueue_event(
        self,
        tenant: str,
        execution_id: str,
        event_name: str,
        payload: Optional[Payload | Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> EventEnvelope:
        """Queue an event for asynchronous processing by a worker."""
        if self.transport is None:
            raise ValidationError("No transport configured for queued events")
        envelope = EventEnvelope(
            tenant=tenant,
            execution_id=execution_id,
            event_name=event_name,
            payload=Payload.wrap(payload),
            user_id=user_id,
        )
        await self.transport.publish(self.config.transport.topic, envelope)
        return envelope

    async def process_envelope(self, envelope: EventEnvelope) -> AppendResult:
        return await self.append_event(
            envelope.tenant,
            envelope.execution_id,
            envelope.event_name,
            envelope.payload,
            user_id=envelope.user_id,
        )

    # ------------------------------------------------------------------
    # Timers and sync points
    async def schedule_timer(
        self,
        tenant: str,
        execution_id: str,
        name: str,
        event_name: str,
        *,
        fire_time: Optional[datetime] = None,
        delay_seconds: Optional[float] = None,
        recurrence: Optional[str] = None,
        state_name: Optional[str] = None,
        payload: Optional[Payload | Dict[str, Any]] = None,
    ) -> WorkflowTimer:
        execution = await self._require_execution(tenant, execution_id)
        if execution.is_terminal:
            raise ConflictError(f"Execution {execution_id} is {execution.status.value}")
        timer = await self.timers.schedule(
            tenant,
            execution_id,
            name,
            fire_time=fire_time,
            delay_seconds=delay_seconds,
            event_name=event_name,
            recurrence=recurrence,
            state_name=state_name,
            payload=payload,
        )
        await self.refresh_status(tenant, execution_id)
        return timer

    async def fire_due_timers(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> int:
        """Claim and process due timers; returns how many were fired.

        Every claimed timer is processed even when an earlier one fails.
        Transient failures put the timer back; after the whole batch the
        first unexpected error is raised.
        """
        claimed = await self.timers.claim_due(now, limit)
        errors: list[Exception] = []
        for timer in claimed:
            try:
                await self._fire(timer)
            except (ConflictError, NotFoundError) as exc:
                logger.info(f"Timer {timer.name} of {timer.execution_id} no longer applies: {exc}")
            except (ValidationError, InconsistentStateError) as exc:
                logger.error(f"Timer {timer.name} of {timer.execution_id} rejected: {exc}")
            except Exception as exc:
                classification = self.classifier.classify(exc)
                if not classification.retryable:
                    logger.error(
                        f"Timer {timer.name} of {timer.execution_id} failed permanently: "
                        f"{classification.description}"
                    )
                    errors.append(exc)
                    continue
                try:
                    await self._redeliver(timer, exc)
                except Exception as redeliver_exc:
                    logger.exception(
                        f"Could not redeliver timer {timer.name} of {timer.execution_id}"
                    )
                    errors.append(redeliver_exc)
        if errors:
            raise errors[0]
        return len(claimed)

    async def _redeliver(self, timer: WorkflowTimer, exc: Exception) -> None:
        """Put a claimed timer back after a transient failure while processing it."""
        now = utcnow()
        delay = self.retry_policy.compute_backoff(0)
        retry = timer.model_copy(
            update={
                "timer_id": new_id(),
                "status": TimerStatus.PENDING,
                "fire_time": now + timedelta(seconds=delay),
                "recurrence": None,
                "created_at": now,
                "fired_at": None,
            },
            deep=True,
        )
        await self.store.create_timer(retry)
        logger.warning(
            f"Timer {timer.name} of {timer.execution_id} failed ({exc}); "
            f"redelivering in {delay:.2f}s"
        )

    async def _fire(self, timer: WorkflowTimer) -> None:
        logger.debug(f"Firing timer {timer.name} ({timer.kind.value}) of {timer.execution_id}")
        if timer.kind in (TimerKind.ACTION_RETRY, TimerKind.ACTION_SETTLE):
            if timer.kind == TimerKind.ACTION_RETRY:
                report = await self.scheduler.retry_action(timer)
            else:
                report = await self.scheduler.settle_action(timer)
            await self._continue(report)
            await self.refresh_status(timer.tenant, timer.execution_id)
        else:
            await self.append_event(
                timer.tenant,
                timer.execution_id,
                timer.event_name,
                timer.payload,
            )

    async def complete_sync_point(
        self, tenant: str, sync_id: str, member: Optional[str] = None
    ) -> SyncCompletion:
        completion = await self.sync_points.complete(tenant, sync_id, member)
        if completion.satisfied:
            await self._continue(DispatchReport(satisfied=[completion]))
            await self.refresh_status(tenant, completion.sync_point.execution_id)
        return completion

    async def reconcile_sync_points(self, limit: int = 100) -> int:
        completions = await self.sync_points.reconcile(limit)
        await self._continue(DispatchReport(satisfied=completions))
        for completion in completions:
            await self.refresh_status(completion.sync_point.tenant, completion.sync_point.execution_id)
        return len(completions)

    async def _continue(self, report: DispatchReport) -> None:
        """Append the continuation events of sync points satisfied by this caller."""
        for completion in report.satisfied:
            point = completion.sync_point
            if not point.continuation_event:
                continue
            try:
                await self.append_event(
                    point.tenant,
                    point.execution_id,
                    point.continuation_event,
                    {"sync_id": point.sync_id},
                )
            except ConflictError as exc:
                logger.info(f"Continuation of {point.sync_id} discarded: {exc}")

    # ------------------------------------------------------------------
    # Status
    async def refresh_status(self, tenant: str, execution_id: str) -> WorkflowExecution:
        """Recompute the execution status from durable state."""
        async with DistributedTransaction(self.locks, self.store, tenant, execution_id) as tx:
            execution = await self._require_execution(tenant, execution_id)
            if execution.is_terminal:
                return execution
            definition = self.definitions.get(
                execution.workflow_name, execution.workflow_version
            )
            results = await self.store.list_action_results(tenant, execution_id)
            actions_open = any(
                r.status in (ActionStatus.PENDING, ActionStatus.RETRY_SCHEDULED)
                for r in results
            )
            points_open = any(
                p.status == SyncPointStatus.OPEN
                for p in await self.store.list_sync_points(tenant, execution_id)
            )
            timers_open = any(
                t.status == TimerStatus.PENDING
                for t in await self.store.list_timers(tenant, execution_id)
            )

            if execution.current_state in definition.final_states and not (
                actions_open or points_open
            ):
                status = ExecutionStatus.COMPLETED
            elif actions_open or points_open or timers_open:
                status = ExecutionStatus.WAITING
            else:
                status = ExecutionStatus.RUNNING

            if status == execution.status:
                return execution
            if status == ExecutionStatus.COMPLETED:
                tx.stage(
                    UpdateExecution(
                        execution_id=execution_id,
                        expected_sequence=execution.last_sequence,
                        status=status,
                        completed_at=utcnow(),
                    ),
                    CancelTimers(execution_id=execution_id),
                )
            else:
                tx.stage(
                    UpdateExecution(
                        execution_id=execution_id,
                        expected_sequence=execution.last_sequence,
                        status=status,
                    )
                )
            await tx.commit()
        if status == ExecutionStatus.COMPLETED:
            logger.info(f"Execution {execution_id} completed in {execution.current_state}")
        return await self._require_execution(tenant, execution_id)

    # ------------------------------------------------------------------
    # Queries
    async def _require_execution(self, tenant: str, execution_id: str) -> WorkflowExecution:
        execution = await self.store.get_execution(tenant, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found for tenant {tenant}")
        return execution

    async def get_execution(self, tenant: str, execution_id: str) -> WorkflowExecution:
        return await self._require_execution(tenant, execution_id)

    async def get_history(
        self, tenant: str, execution_id: str, after_sequence: int = 0
    ) -> list[WorkflowEvent]:
        await self._require_execution(tenant, execution_id)
        return await self.events.read(tenant, execution_id, after_sequence)

    async def get_action_results(
        self, tenant: str, execution_id: str
    ) -> list[WorkflowActionResult]:
        await self._require_execution(tenant, execution_id)
        return await self.store.list_action_results(tenant, execution_id)

    async def list_executions(
        self, tenant: str, status: Optional[ExecutionStatus] = None
    ) -> list[WorkflowExecution]:
        return await self.store.list_executions(tenant, status)

    async def list_timers(self, tenant: str, execution_id: str) -> list[WorkflowTimer]:
        await self._require_execution(tenant, execution_id)
        return await self.timers.list(tenant, execution_id)

    async def list_sync_points(
        self, tenant: str, execution_id: str
    ) -> list[WorkflowSyncPoint]:
        await self._require_execution(tenant, execution_id)
        return await self.sync_points.list(tenant, execution_id)

    async def replay(
        self, tenant: str, execution_id: str, use_snapshots: bool = True
    ) -> ReplayResult:
        return await self.state_machine.replay(tenant, execution_id, use_snapshots)


__all__ = ["WorkflowEngine"]
