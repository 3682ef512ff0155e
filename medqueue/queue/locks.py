"""
medqueue/queue/locks.py — Per-organization critical sections.

Position assignment and renumbering must not interleave within one
organization. Different organizations never contend.

- LocalLockTable: asyncio locks, correct for a single API process.
- RedisLockTable: redis.asyncio locks, for several API replicas.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from medqueue.queue.errors import StoreIOError

logger = logging.getLogger(__name__)


class LockTable(Protocol):
    def hold(self, organization_id: str) -> AbstractAsyncContextManager[None]: ...


class LocalLockTable:
    """asyncio.Lock per organization, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, organization_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(organization_id, asyncio.Lock())
        self._users[organization_id] = self._users.get(organization_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[organization_id] -= 1
            if self._users[organization_id] == 0:
                del self._users[organization_id]
                del self._locks[organization_id]

    def __len__(self) -> int:
        return len(self._locks)


class RedisLockTable:
    def __init__(
        self,
        redis: aioredis.Redis,
        timeout: float,
        blocking_timeout: float | None = None,
        prefix: str = "medqueue:queue-lock",
    ) -> None:
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = timeout if blocking_timeout is None else blocking_timeout
        self._prefix = prefix

    def key(self, organization_id: str) -> str:
        return f"{self._prefix}:{organization_id}"

    @asynccontextmanager
    async def hold(self, organization_id: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            self.key(organization_id),
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise StoreIOError(
                f"Could not acquire queue lock for organization {organization_id}."
            ) from exc
        if not acquired:
            raise StoreIOError(
                f"Timed out waiting for queue lock of organization {organization_id}."
            )
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # Lock expired while held; the protected work already finished.
                logger.warning(
                    "Queue lock for organization %s expired before release", organization_id
                )
