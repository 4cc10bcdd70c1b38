import asyncio

import pytest

from flowcore.errors import LockError, LockErrorType, LockLeaseExpiredError
from flowcore.locks import DistributedLock, InMemoryLockManager, lock_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _locks(manager=None, wait=0.05):
    return DistributedLock(
        manager or InMemoryLockManager(),
        ttl_seconds=5.0,
        wait_seconds=wait,
        retry_interval_seconds=0.01,
    )


@pytest.mark.asyncio
async def test_acquire_and_release():
    locks = _locks()
    lease = await locks.acquire("acme", "exec-1", owner="worker-a")

    assert lease.key == lock_key("acme", "exec-1") == "flowcore:lock:acme:exec-1"
    assert await locks.manager.owner_of(lease.key) == "worker-a"
    await lease.ensure_held()

    assert await lease.release() is True
    assert await locks.manager.owner_of(lease.key) is None
    assert await lease.release() is False


@pytest.mark.asyncio
async def test_contended_lock_times_out():
    locks = _locks()
    await locks.acquire("acme", "exec-1", owner="worker-a")

    with pytest.raises(LockError) as excinfo:
        await locks.acquire("acme", "exec-1", owner="worker-b")
    assert excinfo.value.type == LockErrorType.TIMEOUT


@pytest.mark.asyncio
async def test_waiter_acquires_after_release():
    locks = _locks(wait=1.0)
    first = await locks.acquire("acme", "exec-1", owner="worker-a")

    async def release_soon():
        await asyncio.sleep(0.05)
        await first.release()

    releaser = asyncio.create_task(release_soon())
    second = await locks.acquire("acme", "exec-1", owner="worker-b")
    await releaser
    assert second.owner == "worker-b"


@pytest.mark.asyncio
async def test_only_one_of_many_contenders_holds_the_lock():
    manager = InMemoryLockManager()
    results = await asyncio.gather(
        *(manager.try_acquire("k", f"owner-{i}", 5.0) for i in range(10))
    )
    assert sum(results) == 1


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over():
    clock = FakeClock()
    locks = _locks(InMemoryLockManager(clock=clock))
    stale = await locks.acquire("acme", "exec-1", owner="worker-a", ttl=1.0)

    clock.now += 2.0
    fresh = await locks.acquire("acme", "exec-1", owner="worker-b")
    assert fresh.owner == "worker-b"

    with pytest.raises(LockLeaseExpiredError):
        await stale.ensure_held()
    with pytest.raises(LockError) as excinfo:
        await stale.renew()
    assert excinfo.value.type == LockErrorType.EXTENSION_FAILED
    # The stale holder cannot release someone else's lock.
    assert await stale.release() is False
    assert await locks.manager.owner_of(fresh.key) == "worker-b"


@pytest.mark.asyncio
async def test_renew_extends_expiry():
    clock = FakeClock()
    locks = _locks(InMemoryLockManager(clock=clock))
    lease = await locks.acquire("acme", "exec-1", owner="worker-a", ttl=1.0)

    clock.now += 0.8
    await lease.renew(2.0)
    clock.now += 0.8
    assert await locks.manager.owner_of(lease.key) == "worker-a"
    assert lease.ttl == 2.0


@pytest.mark.asyncio
async def test_lease_context_manager_releases():
    locks = _locks()
    async with await locks.acquire("acme", "exec-1") as lease:
        assert await locks.manager.owner_of(lease.key) == lease.owner
    assert await locks.manager.owner_of(lease.key) is None
