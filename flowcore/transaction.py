"""Lease-guarded atomic write batches for one execution."""

from __future__ import annotations

import logging
from typing import List, Optional

from .errors import (
    FlowcoreError,
    LockError,
    TransactionError,
    TransactionErrorType,
)
from .locks import DistributedLock, Lease
from .persistence import WorkflowStore, WriteOp

logger = logging.getLogger(__name__)


class DistributedTransaction:
    """Collect write operations under an execution lease and commit them at once.

    Usage::

        async with DistributedTransaction(locks, store, tenant, execution_id) as tx:
            tx.stage(AppendEvent(event=event))
            await tx.commit()

    Leaving the block without committing discards the staged operations.
    The lease is verified right before the batch is applied; a lease lost
    in the meantime raises :class:`LockLeaseExpiredError` and nothing is
    written.
    """

    def __init__(
        self,
        locks: DistributedLock,
        store: WorkflowStore,
        tenant: str,
        execution_id: str,
        *,
        owner: Optional[str] = None,
        ttl: Optional[float] = None,
        wait: Optional[float] = None,
    ) -> None:
        self.locks = locks
        self.store = store
        self.tenant = tenant
        self.execution_id = execution_id
        self.owner = owner
        self.ttl = ttl
        self.wait = wait
        self.lease: Lease | None = None
        self.committed = False
        self._ops: List[WriteOp] = []

    async def __aenter__(self) -> "DistributedTransaction":
        try:
            self.lease = await self.locks.acquire(
                self.tenant,
                self.execution_id,
                owner=self.owner,
                ttl=self.ttl,
                wait=self.wait,
            )
        except LockError as exc:
            raise TransactionError(
                f"Could not lock execution {self.execution_id}: {exc}",
                TransactionErrorType.LOCK_ACQUISITION_FAILED,
            ) from exc
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.committed and self._ops:
            logger.debug(
                f"Discarding {len(self._ops)} staged operations for {self.execution_id}"
            )
        self._ops.clear()
        if self.lease is not None:
            try:
                await self.lease.release()
            except LockError as release_exc:
                logger.warning(f"Failed to release lease: {release_exc}")

    @property
    def operations(self) -> List[WriteOp]:
        return list(self._ops)

    def stage(self, *ops: WriteOp) -> None:
        if self.committed:
            raise TransactionError(
                "Transaction already committed", TransactionErrorType.INTERNAL_ERROR
            )
        self._ops.extend(ops)

    async def commit(self) -> None:
        if self.lease is None:
            raise TransactionError(
                "Transaction is not active", TransactionErrorType.INTERNAL_ERROR
            )
        if self.committed:
            raise TransactionError(
                "Transaction already committed", TransactionErrorType.INTERNAL_ERROR
            )
        await self.lease.ensure_held()
        if self._ops:
            await self.store.apply(self.tenant, self._ops)
        self.committed = True
        self._ops.clear()


async def run_in_transaction(
    locks: DistributedLock,
    store: WorkflowStore,
    tenant: str,
    execution_id: str,
    *ops: WriteOp,
) -> None:
    """Apply ``ops`` in a single transaction, mapping unexpected errors."""
    async with DistributedTransaction(locks, store, tenant, execution_id) as tx:
        tx.stage(*ops)
        try:
            await tx.commit()
        except FlowcoreError:
            raise
        except Exception as exc:
            raise TransactionError(
                f"Transaction on {execution_id} failed: {exc}",
                TransactionErrorType.TRANSACTION_FAILED,
            ) from exc


__all__ = ["DistributedTransaction", "run_in_transaction"]
