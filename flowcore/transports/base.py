"""Base transport interface for queued workflow events."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..models import EventEnvelope

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Queue of :class:`EventEnvelope` requests consumed by workers.

    Delivery is at-least-once. A worker settles every message it receives
    exactly once: :meth:`ack` after the event was appended, :meth:`nack`
    with ``requeue=True`` when appending failed on infrastructure and the
    message must be delivered again, and :meth:`nack` with
    ``requeue=False`` when the event was rejected and must be dropped.
    """

    async def connect(self) -> None:
        """Open the broker connection; no-op for brokerless transports."""
        pass

    async def disconnect(self) -> None:
        """Close the broker connection; no-op for brokerless transports."""
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """Append an envelope to the queue named by ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EventEnvelope]]:
        """Yield ``(raw, envelope)`` pairs in queue order.

        ``raw`` is the handle to pass back to :meth:`ack` or :meth:`nack`.
        Messages that do not decode into an envelope are logged and
        skipped. With a ``lifespan`` (seconds) the iterator ends after that
        long; without one it runs until cancelled.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a message as processed; it is never delivered again."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Give a message back after a failure.

        With ``requeue`` the message is delivered again later. Transports
        that cannot requeue treat every nack as a drop.
        """
        await self.ack(raw_message)
