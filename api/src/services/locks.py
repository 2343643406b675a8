"""
Per-(group, branch) operation lock backed by Redis.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import LockError

from api.src.config import get_settings
from api.src.services.errors import OperationInProgressError

logger = logging.getLogger(__name__)
settings = get_settings()

LOCK_PREFIX = "deploymate:lock"

class OperationLocks:
    """Serializes deploy, release and promote calls for the same group and branch."""

    def __init__(
        self,
        client: redis.Redis,
        timeout: Optional[int] = None,
        wait: Optional[float] = None,
    ):
        self.client = client
        self.timeout = timeout or settings.operation_lock_timeout
        self.wait = settings.operation_lock_wait if wait is None else wait

    @staticmethod
    def key(group_id: int, branch: str) -> str:
        return f"{LOCK_PREFIX}:{group_id}:{branch}"

    @asynccontextmanager
    async def hold(self, group_id: int, branch: str):
        name = self.key(group_id, branch)
        lock = self.client.lock(name, timeout=self.timeout, blocking_timeout=self.wait)

        if not await lock.acquire():
            raise OperationInProgressError(
                f"Another operation is running for group {group_id} on {branch}"
            )
        logger.debug(f"Acquired {name}")

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning(f"Lock {name} expired before the operation finished")
