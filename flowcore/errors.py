"""Exception taxonomy for the workflow execution core."""

from __future__ import annotations

from enum import Enum


class FlowcoreError(Exception):
    """Base class for all engine errors."""


class ConflictError(FlowcoreError):
    """Write rejected because it conflicts with durable state.

    Raised for appends to terminal executions and duplicate idempotency
    keys. For duplicates it is a no-op signal rather than a failure.
    """


class NotFoundError(FlowcoreError):
    """Unknown execution, definition, trigger or record."""


class InconsistentStateError(FlowcoreError):
    """Replay produced a state that contradicts the event log.

    Always fatal for the execution; never corrected silently.
    """


class ValidationError(FlowcoreError):
    """Bad payload, impossible transition or invalid definition."""


class TransientError(FlowcoreError):
    """Retryable infrastructure fault."""


class ActionTimeoutError(TransientError):
    """An action dispatch exceeded its deadline."""


class ConcurrencyError(TransientError):
    """The execution row advanced underneath a writer (fencing check failed)."""


class LockLeaseExpiredError(FlowcoreError):
    """Exclusivity was lost mid-operation.

    Callers must re-read state before resuming and must not assume that
    their write succeeded.
    """


class LockErrorType(str, Enum):
    ACQUISITION_FAILED = "acquisition_failed"
    RELEASE_FAILED = "release_failed"
    EXTENSION_FAILED = "extension_failed"
    BACKEND_ERROR = "backend_error"
    TIMEOUT = "timeout"


class LockError(FlowcoreError):
    """Distributed lock operation failed."""

    def __init__(self, message: str, error_type: LockErrorType) -> None:
        super().__init__(message)
        self.type = error_type


class TransactionErrorType(str, Enum):
    LOCK_ACQUISITION_FAILED = "lock_acquisition_failed"
    TRANSACTION_FAILED = "transaction_failed"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"


class TransactionError(FlowcoreError):
    """Distributed transaction could not be committed."""

    def __init__(self, message: str, error_type: TransactionErrorType) -> None:
        super().__init__(message)
        self.type = error_type


__all__ = [
    "FlowcoreError",
    "ConflictError",
    "NotFoundError",
    "InconsistentStateError",
    "ValidationError",
    "TransientError",
    "ActionTimeoutError",
    "ConcurrencyError",
    "LockLeaseExpiredError",
    "LockError",
    "LockErrorType",
    "TransactionError",
    "TransactionErrorType",
]
