"""Failure classification and backoff policy."""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel

from .config import RetryConfig
from .constants import DEFAULT_MAX_ATTEMPTS
from .errors import (
    ConflictError,
    InconsistentStateError,
    LockError,
    LockLeaseExpiredError,
    NotFoundError,
    TransactionError,
    TransactionErrorType,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_HINTS = ("timeout", "timed out", "connection", "econnrefused", "deadlock", "lock wait")
PERMANENT_HINTS = ("constraint", "duplicate", "unique", "permission", "unauthorized", "forbidden")


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    VALIDATION = "validation"
    POISON = "poison"


class Classification(BaseModel):
    category: ErrorCategory
    retryable: bool
    exhausted: bool = False
    description: str


class RetryPolicy:
    """Exponential backoff: ``initial_delay * 2**retry`` capped at ``max_delay``.

    With jitter enabled the delay is scaled by a random factor in [0.8, 1.2].
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
    ) -> None:
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay_seconds,
            max_delay=config.max_delay_seconds,
            jitter=config.jitter,
        )

    def compute_backoff(self, retry: int) -> float:
        """Delay in seconds before retry number ``retry`` (0-based)."""
        delay = min(self.initial_delay * (2 ** retry), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.8, 1.2)
        return delay

    def can_retry(self, attempt: int) -> bool:
        """Whether another attempt may follow ``attempt`` (1-based)."""
        return attempt < self.max_attempts


class ErrorClassifier:
    """Map exceptions to transient, validation or poison failures."""

    def __init__(self, policy: Optional[RetryPolicy] = None) -> None:
        self.policy = policy or RetryPolicy()

    def category_of(self, exc: BaseException) -> tuple[ErrorCategory, str]:
        message = str(exc)
        if isinstance(exc, InconsistentStateError):
            return ErrorCategory.POISON, f"Inconsistent state: {message}"
        if isinstance(exc, (ValidationError, NotFoundError, ConflictError)):
            return ErrorCategory.VALIDATION, message
        if isinstance(exc, TransactionError):
            if exc.type == TransactionErrorType.INTERNAL_ERROR:
                return ErrorCategory.VALIDATION, f"Internal error in transaction: {message}"
            return ErrorCategory.TRANSIENT, f"Transaction failed: {message}"
        if isinstance(exc, LockError):
            return ErrorCategory.TRANSIENT, f"Distributed lock error ({exc.type.value}): {message}"
        if isinstance(exc, (TransientError, LockLeaseExpiredError)):
            return ErrorCategory.TRANSIENT, message
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return ErrorCategory.TRANSIENT, f"Operation timed out: {message}"
        if isinstance(exc, PermissionError):
            return ErrorCategory.VALIDATION, f"Permission denied: {message}"
        if isinstance(exc, ConnectionError):
            return ErrorCategory.TRANSIENT, f"Connection error: {message}"
        lowered = message.lower()
        if any(hint in lowered for hint in TRANSIENT_HINTS):
            return ErrorCategory.TRANSIENT, message
        if any(hint in lowered for hint in PERMANENT_HINTS):
            return ErrorCategory.VALIDATION, message
        return ErrorCategory.TRANSIENT, f"Unclassified error: {type(exc).__name__}: {message}"

    def classify(self, exc: BaseException, attempt: int = 1) -> Classification:
        category, description = self.category_of(exc)
        retryable = category == ErrorCategory.TRANSIENT
        exhausted = False
        if retryable and not self.policy.can_retry(attempt):
            retryable = False
            exhausted = True
            description = (
                f"Maximum retry attempts ({self.policy.max_attempts}) exceeded: {description}"
            )
        logger.debug(
            f"Classified {type(exc).__name__} on attempt {attempt} as {category.value} "
            f"(retryable={retryable})"
        )
        return Classification(
            category=category,
            retryable=retryable,
            exhausted=exhausted,
            description=description,
        )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    classifier: ErrorClassifier,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``func`` until it succeeds or fails non-retryably, sleeping between tries.

    Only for infrastructure calls inside a worker; action retries go
    through durable timers instead.
    """
    attempt = 1
    while True:
        try:
            return await func()
        except Exception as exc:
            classification = classifier.classify(exc, attempt)
            if not classification.retryable:
                raise
            delay = classifier.policy.compute_backoff(attempt - 1)
            logger.warning(
                f"Attempt {attempt} failed ({classification.description}); retrying in {delay:.2f}s"
            )
            await sleep(delay)
            attempt += 1


__all__ = [
    "ErrorCategory",
    "Classification",
    "RetryPolicy",
    "ErrorClassifier",
    "retry_async",
]
