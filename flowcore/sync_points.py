"""Join barriers for parallel action branches."""

from __future__ import annotations

import logging
from typing import Optional

from .errors import NotFoundError
from .models import (
    ActionStatus,
    SyncCompletion,
    SyncPointStatus,
    WorkflowSyncPoint,
)
from .persistence import WorkflowStore

logger = logging.getLogger(__name__)


def sync_point_id(execution_id: str, name: str, event_sequence: int) -> str:
    return f"{execution_id}:{name}:{event_sequence}"


class SyncPointCoordinator:
    """Count branch arrivals so that exactly one caller observes satisfaction."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    async def create(
        self,
        tenant: str,
        execution_id: str,
        event_id: str,
        event_sequence: int,
        name: str,
        total_actions: int,
        continuation_event: Optional[str] = None,
    ) -> WorkflowSyncPoint:
        """Create the sync point, or return it unchanged if it already exists."""
        sync_point = WorkflowSyncPoint(
            sync_id=sync_point_id(execution_id, name, event_sequence),
            tenant=tenant,
            execution_id=execution_id,
            event_id=event_id,
            name=name,
            total_actions=total_actions,
            continuation_event=continuation_event,
        )
        if await self.store.create_sync_point(sync_point):
            logger.debug(f"Created sync point {sync_point.sync_id} for {total_actions} actions")
            return sync_point
        existing = await self.store.get_sync_point(tenant, sync_point.sync_id)
        if existing is None:
            raise NotFoundError(f"Sync point {sync_point.sync_id} vanished")
        return existing

    async def complete(
        self, tenant: str, sync_id: str, member: Optional[str] = None
    ) -> SyncCompletion:
        completion = await self.store.increment_sync_point(tenant, sync_id, member)
        point = completion.sync_point
        if completion.satisfied:
            logger.info(f"Sync point {sync_id} satisfied ({point.completed_actions}/{point.total_actions})")
        elif completion.duplicate:
            logger.debug(f"Duplicate arrival of {member} at sync point {sync_id}")
        return completion

    async def fail(self, tenant: str, sync_id: str) -> bool:
        failed = await self.store.fail_sync_point(tenant, sync_id)
        if failed:
            logger.warning(f"Sync point {sync_id} failed")
        return failed

    async def reconcile(self, limit: int = 100) -> list[SyncCompletion]:
        """Replay arrivals lost between a member's result write and its increment.

        Returns the completions that satisfied a sync point during this pass;
        the caller is responsible for appending their continuation events.
        """
        satisfied: list[SyncCompletion] = []
        for point in await self.store.list_open_sync_points(limit):
            results = [
                r
                for r in await self.store.list_action_results(
                    point.tenant, point.execution_id, point.event_id
                )
                if r.sync_point_id == point.sync_id
            ]
            if any(r.status in (ActionStatus.FAILED, ActionStatus.SKIPPED) for r in results):
                await self.fail(point.tenant, point.sync_id)
                continue
            arrived = set(await self.store.list_sync_arrivals(point.tenant, point.sync_id))
            for result in results:
                if result.status != ActionStatus.SUCCEEDED or result.idempotency_key in arrived:
                    continue
                logger.info(f"Recovering lost arrival of {result.action_id} at {point.sync_id}")
                completion = await self.complete(
                    point.tenant, point.sync_id, member=result.idempotency_key
                )
                if completion.satisfied:
                    satisfied.append(completion)
                if completion.sync_point.status != SyncPointStatus.OPEN:
                    break
        return satisfied

    async def list(self, tenant: str, execution_id: str) -> list[WorkflowSyncPoint]:
        return await self.store.list_sync_points(tenant, execution_id)


__all__ = ["sync_point_id", "SyncPointCoordinator"]
