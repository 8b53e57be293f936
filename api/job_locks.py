"""
Per-job locks for retry sequences.

A retry sequence for one job must never overlap with another for the same
job, whether the second one comes from an operator request or the scheduled
sweep. Within one process an asyncio.Lock per job is enough. When REDIS_URL
is configured the lock is taken in Redis instead, so several scheduler or
admin processes serialize too; if Redis is unreachable the in-process lock
is used and a warning is logged.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from config import REDIS_SOCKET_TIMEOUT, REDIS_URL, RETRY_LOCK_PREFIX, RETRY_LOCK_TIMEOUT

logger = logging.getLogger(__name__)


class JobLockBusy(Exception):
    """Another retry sequence already holds the lock for this job."""

    def __init__(self, job_id: int):
        self.job_id = job_id
        super().__init__(f"Retry already in progress for job {job_id}")


class JobLease:
    """A held job lock; `extend` pushes out the Redis expiry before long waits."""

    def __init__(self, job_id: int, lock_timeout: int, redis_lock=None):
        self.job_id = job_id
        self.lock_timeout = lock_timeout
        self._redis_lock = redis_lock

    async def extend(self, seconds: float) -> None:
        """
        Make the Redis lock live at least `seconds` longer (never below the base timeout).

        A lease without a Redis lock has nothing to extend.
        """
        if self._redis_lock is None:
            return
        ttl = max(float(self.lock_timeout), seconds)
        try:
            await self._redis_lock.extend(ttl, replace_ttl=True)
        except LockError:
            logger.error(f"Retry lock for job {self.job_id} was lost before it could be extended")
        except RedisError as e:
            logger.warning(f"Failed to extend retry lock for job {self.job_id}: {e}")


class JobLockRegistry:
    """Hands out one lock per job id."""

    def __init__(self, redis_url: str = REDIS_URL, lock_timeout: int = RETRY_LOCK_TIMEOUT):
        self.redis_url = redis_url
        self.lock_timeout = lock_timeout
        self._local: Dict[int, asyncio.Lock] = {}
        self._redis: Optional[Redis] = None

    def _local_lock(self, job_id: int) -> asyncio.Lock:
        lock = self._local.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._local[job_id] = lock
        return lock

    def _get_redis(self) -> Optional[Redis]:
        if not self.redis_url:
            return None
        if self._redis is None:
            self._redis = Redis.from_url(
                self.redis_url,
                socket_timeout=REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT,
                decode_responses=True,
            )
        return self._redis

    def is_locked(self, job_id: int) -> bool:
        """In-process view only; used by tests and status output."""
        lock = self._local.get(job_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, job_id: int) -> AsyncIterator[JobLease]:
        """
        Hold the lock for `job_id` for the duration of the block.

        Yields:
            A JobLease the holder extends before waits that may outlive the lock timeout

        Raises:
            JobLockBusy: the lock is already held (the caller does not wait)
        """
        local = self._local_lock(job_id)
        if local.locked():
            raise JobLockBusy(job_id)

        try:
            async with local:
                redis_lock = await self._acquire_redis(job_id)
                try:
                    yield JobLease(job_id, self.lock_timeout, redis_lock)
                finally:
                    if redis_lock is not None:
                        await self._release_redis(job_id, redis_lock)
        finally:
            # Drop the entry unless another holder took the same lock meanwhile
            if not local.locked() and self._local.get(job_id) is local:
                del self._local[job_id]

    async def _acquire_redis(self, job_id: int):
        client = self._get_redis()
        if client is None:
            return None

        lock = client.lock(
            f"{RETRY_LOCK_PREFIX}:{job_id}",
            timeout=self.lock_timeout,
            blocking=False,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.warning(f"Redis unavailable for job {job_id} retry lock, using in-process lock only: {e}")
            return None

        if not acquired:
            raise JobLockBusy(job_id)
        return lock

    async def _release_redis(self, job_id: int, lock) -> None:
        try:
            await lock.release()
        except LockError:
            # Expired before release; another holder may now own it
            logger.warning(f"Retry lock for job {job_id} expired before release")
        except RedisError as e:
            logger.warning(f"Failed to release retry lock for job {job_id}: {e}")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Application-wide registry
job_locks = JobLockRegistry()
