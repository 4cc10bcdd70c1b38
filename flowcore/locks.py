"""Lease locks serializing writes to one execution.

Two backends are provided: an in-process manager for tests and single-node
deployments and a Redis manager (``SET NX PX`` plus owner-checked Lua
scripts) for fleets of workers.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import socket
import time
import uuid
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from .config import LockConfig
from .errors import LockError, LockErrorType, LockLeaseExpiredError

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


def lock_key(tenant: str, execution_id: str) -> str:
    return f"flowcore:lock:{tenant}:{execution_id}"


def default_owner() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class LockManager(abc.ABC):
    """Backend primitive: a key held by one owner until its TTL lapses."""

    @abc.abstractmethod
    async def try_acquire(self, key: str, owner: str, ttl: float) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def release(self, key: str, owner: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def extend(self, key: str, owner: str, ttl: float) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    async def owner_of(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        pass


class InMemoryLockManager(LockManager):
    """Process-local lock table with monotonic expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._locks: Dict[str, Tuple[str, float]] = {}

    def _current(self, key: str) -> Optional[Tuple[str, float]]:
        entry = self._locks.get(key)
        if entry and entry[1] <= self._clock():
            del self._locks[key]
            return None
        return entry

    async def try_acquire(self, key: str, owner: str, ttl: float) -> bool:
        if self._current(key) is not None:
            return False
        self._locks[key] = (owner, self._clock() + ttl)
        return True

    async def release(self, key: str, owner: str) -> bool:
        entry = self._current(key)
        if entry is None or entry[0] != owner:
            return False
        del self._locks[key]
        return True

    async def extend(self, key: str, owner: str, ttl: float) -> bool:
        entry = self._current(key)
        if entry is None or entry[0] != owner:
            return False
        self._locks[key] = (owner, self._clock() + ttl)
        return True

    async def owner_of(self, key: str) -> Optional[str]:
        entry = self._current(key)
        return entry[0] if entry else None


class RedisLockManager(LockManager):
    """Redis-backed locks shared by every worker connected to the same server."""

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

    async def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        return self._redis

    async def try_acquire(self, key: str, owner: str, ttl: float) -> bool:
        client = await self._client()
        try:
            result = await client.set(key, owner, nx=True, px=int(ttl * 1000))
        except redis.RedisError as exc:
            raise LockError(
                f"Redis error acquiring lock {key}: {exc}", LockErrorType.BACKEND_ERROR
            ) from exc
        return bool(result)

    async def release(self, key: str, owner: str) -> bool:
        client = await self._client()
        try:
            result = await client.eval(RELEASE_SCRIPT, 1, key, owner)
        except redis.RedisError as exc:
            raise LockError(
                f"Redis error releasing lock {key}: {exc}", LockErrorType.BACKEND_ERROR
            ) from exc
        return result == 1

    async def extend(self, key: str, owner: str, ttl: float) -> bool:
        client = await self._client()
        try:
            result = await client.eval(EXTEND_SCRIPT, 1, key, owner, int(ttl * 1000))
        except redis.RedisError as exc:
            raise LockError(
                f"Redis error extending lock {key}: {exc}", LockErrorType.BACKEND_ERROR
            ) from exc
        return result == 1

    async def owner_of(self, key: str) -> Optional[str]:
        client = await self._client()
        try:
            return await client.get(key)
        except redis.RedisError as exc:
            raise LockError(
                f"Redis error reading lock {key}: {exc}", LockErrorType.BACKEND_ERROR
            ) from exc

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None


class Lease:
    """A held lock; usable as an async context manager that releases on exit."""

    def __init__(
        self, lock: "DistributedLock", key: str, owner: str, ttl: float
    ) -> None:
        self._lock = lock
        self.key = key
        self.owner = owner
        self.ttl = ttl
        self.expires_at = time.monotonic() + ttl
        self.released = False

    @property
    def remaining(self) -> float:
        return self.expires_at - time.monotonic()

    async def renew(self, ttl: Optional[float] = None) -> None:
        await self._lock.extend(self, ttl)

    async def ensure_held(self) -> None:
        """Raise :class:`LockLeaseExpiredError` unless this lease still owns the key."""
        if self.released or self.remaining <= 0:
            raise LockLeaseExpiredError(f"Lease on {self.key} expired")
        holder = await self._lock.manager.owner_of(self.key)
        if holder != self.owner:
            raise LockLeaseExpiredError(
                f"Lease on {self.key} is now held by {holder or 'nobody'}"
            )

    async def release(self) -> bool:
        if self.released:
            return False
        self.released = True
        return await self._lock.release(self)

    async def __aenter__(self) -> "Lease":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class DistributedLock:
    """Acquire, extend and release execution leases with bounded waiting."""

    def __init__(
        self,
        manager: LockManager,
        ttl_seconds: float,
        wait_seconds: float,
        retry_interval_seconds: float,
    ) -> None:
        self.manager = manager
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.retry_interval_seconds = retry_interval_seconds

    @classmethod
    def from_config(cls, config: LockConfig) -> "DistributedLock":
        return cls(
            get_lock_manager(config),
            ttl_seconds=config.ttl_seconds,
            wait_seconds=config.wait_seconds,
            retry_interval_seconds=config.retry_interval_seconds,
        )

    async def acquire(
        self,
        tenant: str,
        execution_id: str,
        *,
        owner: Optional[str] = None,
        ttl: Optional[float] = None,
        wait: Optional[float] = None,
    ) -> Lease:
        key = lock_key(tenant, execution_id)
        owner = owner or default_owner()
        ttl = ttl if ttl is not None else self.ttl_seconds
        wait = wait if wait is not None else self.wait_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait
        while True:
            if await self.manager.try_acquire(key, owner, ttl):
                logger.debug(f"Acquired lock {key} for owner {owner}")
                return Lease(self, key, owner, ttl)
            if loop.time() >= deadline:
                logger.warning(f"Failed to acquire lock {key} after {wait}s")
                raise LockError(
                    f"Failed to acquire lock {key} after {wait}s", LockErrorType.TIMEOUT
                )
            await asyncio.sleep(self.retry_interval_seconds)

    async def release(self, lease: Lease) -> bool:
        try:
            released = await self.manager.release(lease.key, lease.owner)
        except LockError as exc:
            raise LockError(str(exc), LockErrorType.RELEASE_FAILED) from exc
        if released:
            logger.debug(f"Released lock {lease.key} for owner {lease.owner}")
        else:
            logger.warning(
                f"Failed to release lock {lease.key} for owner {lease.owner} "
                "(not owner or lock expired)"
            )
        return released

    async def extend(self, lease: Lease, ttl: Optional[float] = None) -> None:
        ttl = ttl if ttl is not None else lease.ttl
        try:
            extended = await self.manager.extend(lease.key, lease.owner, ttl)
        except LockError as exc:
            raise LockError(str(exc), LockErrorType.EXTENSION_FAILED) from exc
        if not extended:
            raise LockError(
                f"Failed to extend lock {lease.key} for owner {lease.owner}",
                LockErrorType.EXTENSION_FAILED,
            )
        lease.ttl = ttl
        lease.expires_at = time.monotonic() + ttl
        logger.debug(f"Extended lock {lease.key} for owner {lease.owner} by {ttl}s")

    async def close(self) -> None:
        await self.manager.close()


def get_lock_manager(config: LockConfig) -> LockManager:
    """Return a lock manager for the configured backend."""
    if config.backend == "inmemory":
        return InMemoryLockManager()
    if config.backend == "redis":
        return RedisLockManager(
            host=config.redis.host,
            port=config.redis.port,
            db=config.redis.db,
            password=config.redis.password,
        )
    raise ValueError(f"Unknown lock backend: {config.backend}")


__all__ = [
    "LockManager",
    "InMemoryLockManager",
    "RedisLockManager",
    "Lease",
    "DistributedLock",
    "get_lock_manager",
    "lock_key",
    "default_owner",
]
