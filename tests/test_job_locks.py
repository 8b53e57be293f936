"""Tests for per-job retry locks."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError, RedisError

from api.job_locks import JobLockBusy, JobLockRegistry


def _registry_with_redis_lock(lock) -> JobLockRegistry:
    registry = JobLockRegistry(redis_url="redis://redis.test:6379", lock_timeout=60)
    client = MagicMock()
    client.lock = MagicMock(return_value=lock)
    client.aclose = AsyncMock()
    registry._redis = client
    return registry


class TestLocalLocks:
    """Tests for the in-process lock."""

    async def test_hold_and_release(self):
        registry = JobLockRegistry(redis_url="")

        async with registry.hold(1):
            assert registry.is_locked(1)
            assert not registry.is_locked(2)

        assert not registry.is_locked(1)

    async def test_second_holder_is_refused(self):
        registry = JobLockRegistry(redis_url="")

        async with registry.hold(1):
            with pytest.raises(JobLockBusy) as exc_info:
                async with registry.hold(1):
                    pass
            assert exc_info.value.job_id == 1

        # Released again afterwards
        async with registry.hold(1):
            pass

    async def test_released_on_error(self):
        registry = JobLockRegistry(redis_url="")

        with pytest.raises(RuntimeError):
            async with registry.hold(1):
                raise RuntimeError("boom")

        assert not registry.is_locked(1)

    async def test_entries_dropped_after_release(self):
        registry = JobLockRegistry(redis_url="")

        for job_id in range(1000):
            async with registry.hold(job_id):
                pass

        assert registry._local == {}

    async def test_entry_dropped_after_error(self):
        registry = JobLockRegistry(redis_url="")

        with pytest.raises(RuntimeError):
            async with registry.hold(1):
                raise RuntimeError("boom")

        assert registry._local == {}

    async def test_refused_holder_leaves_owner_entry(self):
        registry = JobLockRegistry(redis_url="")

        async with registry.hold(1):
            with pytest.raises(JobLockBusy):
                async with registry.hold(1):
                    pass
            assert registry.is_locked(1)

        assert registry._local == {}

    async def test_lease_without_redis_extends_nothing(self):
        registry = JobLockRegistry(redis_url="")

        async with registry.hold(1) as lease:
            await lease.extend(5000)


class TestRedisLocks:
    """Tests for the cross-process lock."""

    async def test_acquired_and_released(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()
        registry = _registry_with_redis_lock(lock)

        async with registry.hold(5):
            pass

        registry._redis.lock.assert_called_once_with("reelwatch:retry-lock:5", timeout=60, blocking=False)
        lock.release.assert_awaited_once()

    async def test_held_elsewhere_is_busy(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        registry = _registry_with_redis_lock(lock)

        with pytest.raises(JobLockBusy):
            async with registry.hold(5):
                pass
        assert not registry.is_locked(5)

    async def test_unreachable_redis_falls_back_to_local(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(side_effect=RedisError("connection refused"))
        registry = _registry_with_redis_lock(lock)

        entered = False
        async with registry.hold(5):
            entered = True
            assert registry.is_locked(5)
        assert entered

    async def test_expired_lock_release_is_logged(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock(side_effect=LockError("not owned"))
        registry = _registry_with_redis_lock(lock)

        async with registry.hold(5):
            pass

    async def test_close(self):
        lock = MagicMock()
        registry = _registry_with_redis_lock(lock)
        client = registry._redis

        await registry.close()

        client.aclose.assert_awaited_once()
        assert registry._redis is None

    async def test_busy_redis_lock_leaves_no_entry(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=False)
        registry = _registry_with_redis_lock(lock)

        with pytest.raises(JobLockBusy):
            async with registry.hold(5):
                pass
        assert registry._local == {}


class TestLeaseExtension:
    """Tests for extending a held Redis lock."""

    def _lock(self):
        lock = MagicMock()
        lock.acquire = AsyncMock(return_value=True)
        lock.release = AsyncMock()
        lock.extend = AsyncMock()
        return lock

    async def test_extend_replaces_ttl(self):
        lock = self._lock()
        registry = _registry_with_redis_lock(lock)

        async with registry.hold(5) as lease:
            await lease.extend(400)

        lock.extend.assert_awaited_once_with(400.0, replace_ttl=True)

    async def test_extend_never_shortens_below_base_timeout(self):
        lock = self._lock()
        registry = _registry_with_redis_lock(lock)

        async with registry.hold(5) as lease:
            await lease.extend(10)

        lock.extend.assert_awaited_once_with(60.0, replace_ttl=True)

    async def test_lost_lock_is_logged_not_raised(self, caplog):
        lock = self._lock()
        lock.extend.side_effect = LockError("not owned")
        registry = _registry_with_redis_lock(lock)

        async with registry.hold(5) as lease:
            await lease.extend(400)

        assert "was lost" in caplog.text

    async def test_redis_error_on_extend_is_logged(self, caplog):
        lock = self._lock()
        lock.extend.side_effect = RedisError("timeout")
        registry = _registry_with_redis_lock(lock)

        async with registry.hold(5) as lease:
            await lease.extend(400)

        assert "Failed to extend retry lock for job 5" in caplog.text
