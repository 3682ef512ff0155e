"""
tests/unit/test_locks.py — Unit tests for per-organization lock tables.
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockError

from medqueue.queue.errors import StoreIOError
from medqueue.queue.locks import LocalLockTable, RedisLockTable


class TestLocalLockTable:
    @pytest.mark.asyncio
    async def test_same_organization_is_serialized(self):
        locks = LocalLockTable()
        trace: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("org"):
                trace.append(f"{name}-in")
                await asyncio.sleep(0.01)
                trace.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert trace in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_organizations_do_not_block(self):
        locks = LocalLockTable()
        entered = asyncio.Event()

        async def holder() -> None:
            async with locks.hold("org-a"):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other() -> None:
            async with locks.hold("org-b"):
                entered.set()

        await asyncio.gather(holder(), other())
        assert entered.is_set()

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = LocalLockTable()
        async with locks.hold("org"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = LocalLockTable()
        with pytest.raises(RuntimeError):
            async with locks.hold("org"):
                raise RuntimeError("boom")
        async with locks.hold("org"):
            pass
        assert len(locks) == 0


def _redis_with_lock(lock: MagicMock) -> MagicMock:
    redis = MagicMock()
    redis.lock.return_value = lock
    return redis


class TestRedisLockTable:
    @pytest.mark.asyncio
    async def test_acquires_and_releases_named_lock(self):
        lock = MagicMock(acquire=AsyncMock(return_value=True), release=AsyncMock())
        redis = _redis_with_lock(lock)
        table = RedisLockTable(redis, timeout=5)

        async with table.hold("org-1"):
            lock.release.assert_not_awaited()

        redis.lock.assert_called_once_with(
            "medqueue:queue-lock:org-1", timeout=5, blocking_timeout=5
        )
        lock.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_acquire_timeout_is_an_io_error(self):
        lock = MagicMock(acquire=AsyncMock(return_value=False), release=AsyncMock())
        table = RedisLockTable(_redis_with_lock(lock), timeout=1)

        with pytest.raises(StoreIOError, match="Timed out"):
            async with table.hold("org-1"):
                pytest.fail("body must not run without the lock")
        lock.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_failure_is_an_io_error(self):
        lock = MagicMock(acquire=AsyncMock(side_effect=RedisConnectionError("down")))
        table = RedisLockTable(_redis_with_lock(lock), timeout=1)

        with pytest.raises(StoreIOError) as excinfo:
            async with table.hold("org-1"):
                pass
        assert isinstance(excinfo.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_expired_lock_on_release_does_not_fail_the_work(self):
        lock = MagicMock(
            acquire=AsyncMock(return_value=True),
            release=AsyncMock(side_effect=LockError("expired")),
        )
        table = RedisLockTable(_redis_with_lock(lock), timeout=1)
        done = False
        async with table.hold("org-1"):
            done = True
        assert done
