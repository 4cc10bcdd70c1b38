"""Redis transport for cross-process event queues."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

import pydantic
import redis.asyncio as redis

from ..models import EventEnvelope
from .base import BaseTransport

logger = logging.getLogger(__name__)

RawMessage = Tuple[str, str]


class RedisTransport(BaseTransport[RawMessage]):
    """Redis lists used as work queues (``LPUSH`` / ``BRPOP``)."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"flowcore:{topic}"

    async def publish(self, topic: str, envelope: EventEnvelope) -> None:
        """Publish envelope to Redis list (acting as queue)."""
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.queue_name(topic), envelope.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessage, EventEnvelope]]:
        """Consume envelopes from the Redis queue."""
        if not self._redis:
            await self.connect()

        queue = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue, timeout=1)
            if not result:
                continue
            _, data = result
            try:
                envelope = EventEnvelope.from_json(data)
            except pydantic.ValidationError as e:
                logger.error(f"Dropping malformed message on {queue}: {e}")
                continue
            yield (queue, data), envelope

    async def ack(self, raw_message: RawMessage) -> None:
        """No-op acknowledgment for Redis transport (message already consumed)."""
        pass

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            queue, data = raw_message
            await self._redis.rpush(queue, data)
