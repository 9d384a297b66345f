"""
Per-space mutual exclusion

The in-memory store has no transactional isolation of its own, so every
transaction holds the lock of the space it touches. LocalSpaceLocks works
within one event loop; RedisSpaceLocks extends the guarantee across
processes.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Hashable, Optional

import redis.asyncio as redis

from .exceptions import StorageConflictError

logger = logging.getLogger(__name__)


class SpaceLocks(ABC):
    """Hands out one exclusive lock per space id"""

    @abstractmethod
    def hold(self, space_id: Hashable) -> AsyncContextManager[None]:
        """Async context manager that holds the space lock for its body"""


class LocalSpaceLocks(SpaceLocks):
    """
    asyncio.Lock per space, with a bounded wait

    A space's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self, wait_seconds: float = 2.0):
        self.wait_seconds = wait_seconds
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._users: Dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, space_id: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(space_id, asyncio.Lock())
        self._users[space_id] = self._users.get(space_id, 0) + 1
        try:
            try:
                async with asyncio.timeout(self.wait_seconds):
                    await lock.acquire()
            except TimeoutError:
                logger.warning(f"Timed out waiting {self.wait_seconds}s for space lock {space_id}")
                raise StorageConflictError(
                    f"Could not acquire lock for space {space_id}",
                    resource=f"space:{space_id}"
                )

            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[space_id] -= 1
            if not self._users[space_id]:
                del self._users[space_id]
                del self._locks[space_id]

    def tracked_spaces(self) -> int:
        """Number of spaces with a live lock"""
        return len(self._locks)


class RedisSpaceLocks(SpaceLocks):
    """
    Distributed space lock on Redis (SET NX EX)

    Polls until wait_seconds elapse, then fails with StorageConflictError.
    The lock expires after timeout_seconds so a crashed holder cannot
    wedge a space. Release only deletes the key if we still own it.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        timeout_seconds: int = 10,
        wait_seconds: float = 2.0,
        poll_interval: float = 0.05,
        key_prefix: str = "lock:space"
    ):
        self.redis_client = redis_client
        self.timeout_seconds = timeout_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval
        self.key_prefix = key_prefix

    @classmethod
    def from_settings(cls, settings, redis_client: Optional[redis.Redis] = None) -> "RedisSpaceLocks":
        return cls(
            redis_client or redis.from_url(settings.redis_url),
            timeout_seconds=settings.lock_timeout_seconds,
            wait_seconds=settings.lock_wait_seconds,
        )

    @asynccontextmanager
    async def hold(self, space_id: Hashable) -> AsyncIterator[None]:
        lock_key = f"{self.key_prefix}:{space_id}"
        lock_value = uuid.uuid4().hex
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds

        while True:
            acquired = await self.redis_client.set(
                lock_key,
                lock_value,
                nx=True,  # Only set if not exists
                ex=self.timeout_seconds
            )
            if acquired:
                break
            if loop.time() >= deadline:
                raise StorageConflictError(
                    f"Could not acquire lock for space {space_id}",
                    resource=lock_key
                )
            await asyncio.sleep(self.poll_interval)

        try:
            yield
        finally:
            current = await self.redis_client.get(lock_key)
            if isinstance(current, bytes):
                current = current.decode()
            if current == lock_value:
                await self.redis_client.delete(lock_key)
            else:
                logger.warning(f"Space lock {lock_key} expired before release")


def build_space_locks(settings, redis_client: Optional[redis.Redis] = None) -> SpaceLocks:
    """Pick the lock backend named by settings.lock_backend"""
    if settings.lock_backend == "redis":
        return RedisSpaceLocks.from_settings(settings, redis_client)
    return LocalSpaceLocks(wait_seconds=settings.lock_wait_seconds)
