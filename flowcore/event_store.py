"""Append-only per-execution event log."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .errors import ConflictError, NotFoundError
from .locks import DistributedLock
from .models import WorkflowEvent
from .persistence import AppendEvent, UpdateExecution, WorkflowStore
from .transaction import DistributedTransaction

logger = logging.getLogger(__name__)


class EventStore:
    """Persist events with gap-free sequences, one writer per execution at a time."""

    def __init__(self, store: WorkflowStore, locks: DistributedLock) -> None:
        self.store = store
        self.locks = locks

    async def append(
        self,
        tenant: str,
        execution_id: str,
        event: WorkflowEvent,
        *,
        changes: Optional[Dict[str, Any]] = None,
        tx: Optional[DistributedTransaction] = None,
    ) -> int:
        """Append ``event`` and update the execution row; returns the new sequence.

        With ``tx`` the writes are staged on the caller's open transaction
        and become durable when it commits. Otherwise a transaction is
        opened and committed here.
        """
        if tx is not None:
            return await self._stage(tenant, execution_id, event, changes, tx)
        async with DistributedTransaction(
            self.locks, self.store, tenant, execution_id
        ) as own_tx:
            sequence = await self._stage(tenant, execution_id, event, changes, own_tx)
            await own_tx.commit()
        logger.debug(f"Appended {event.event_name} #{sequence} to {execution_id}")
        return sequence

    async def _stage(
        self,
        tenant: str,
        execution_id: str,
        event: WorkflowEvent,
        changes: Optional[Dict[str, Any]],
        tx: DistributedTransaction,
    ) -> int:
        execution = await self.store.get_execution(tenant, execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found for tenant {tenant}")
        if execution.is_terminal:
            raise ConflictError(
                f"Execution {execution_id} is {execution.status.value}; "
                f"event {event.event_name} rejected"
            )
        sequence = execution.last_sequence + 1
        event.tenant = tenant
        event.execution_id = execution_id
        event.sequence = sequence
        tx.stage(
            AppendEvent(event=event),
            UpdateExecution(
                execution_id=execution_id,
                expected_sequence=execution.last_sequence,
                last_sequence=sequence,
                current_state=event.to_state,
                **(changes or {}),
            ),
        )
        return sequence

    async def read(
        self, tenant: str, execution_id: str, after_sequence: int = 0
    ) -> list[WorkflowEvent]:
        return await self.store.list_events(tenant, execution_id, after_sequence)


__all__ = ["EventStore"]
