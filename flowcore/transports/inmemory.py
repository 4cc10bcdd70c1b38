"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

import pydantic

from ..models import EventEnvelope
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process queue; raw messages are ``(topic, json)`` pairs."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[str]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """Publish envelope to in-memory queue."""
        async with self._lock:
            self._queues[topic].append(envelope.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, EventEnvelope]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                data = self._queues[topic].popleft() if self._queues[topic] else None
            if data is None:
                await asyncio.sleep(self.poll_interval)
                continue
            try:
                envelope = EventEnvelope.from_json(data)
            except pydantic.ValidationError as e:
                logger.error(f"Dropping malformed message on {topic}: {e}")
                continue
            yield (topic, data), envelope

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        """Put the message back at the end of its queue, or drop it."""
        if requeue:
            topic, data = raw_message
            async with self._lock:
                self._queues[topic].append(data)

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
