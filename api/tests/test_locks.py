"""Tests for the Redis-backed operation lock."""

import pytest
from redis.exceptions import LockError

from api.src.services.errors import OperationInProgressError
from api.src.services.locks import OperationLocks

class FakeLock:
    def __init__(self, acquired: bool, expired: bool = False):
        self.acquired = acquired
        self.expired = expired
        self.released = False

    async def acquire(self):
        return self.acquired

    async def release(self):
        if self.expired:
            raise LockError("Cannot release an unlocked lock")
        self.released = True

class FakeRedis:
    def __init__(self, lock: FakeLock):
        self._lock = lock
        self.requests = []

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.requests.append((name, timeout, blocking_timeout))
        return self._lock

@pytest.mark.asyncio
async def test_lock_is_held_for_the_block_and_released():
    lock = FakeLock(acquired=True)
    client = FakeRedis(lock)

    async with OperationLocks(client, timeout=60, wait=5).hold(1, "develop"):
        assert not lock.released

    assert lock.released
    assert client.requests == [("deploymate:lock:1:develop", 60, 5)]

@pytest.mark.asyncio
async def test_busy_lock_raises_operation_in_progress():
    locks = OperationLocks(FakeRedis(FakeLock(acquired=False)), timeout=60, wait=0)

    with pytest.raises(OperationInProgressError):
        async with locks.hold(1, "develop"):
            pass

@pytest.mark.asyncio
async def test_expired_lock_does_not_mask_the_result():
    ran = []

    async with OperationLocks(FakeRedis(FakeLock(acquired=True, expired=True))).hold(1, "main"):
        ran.append(True)

    assert ran == [True]
