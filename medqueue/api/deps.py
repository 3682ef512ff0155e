"""
medqueue/api/deps.py — FastAPI shared dependencies.

Centralizes:
- JWT authentication + RBAC enforcement
- Queue store / engine / read model wiring
- Organization lock table (Redis when configured)
"""
from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.exceptions import RedisError

from medqueue.auth.security import decode_token, has_permission
from medqueue.config import get_settings
from medqueue.db.session import AsyncSessionLocal
from medqueue.queue.engine import QueueEngine
from medqueue.queue.errors import StoreIOError
from medqueue.queue.events import EventBus, QueueEventType, log_patient_called
from medqueue.queue.locks import LocalLockTable, LockTable, RedisLockTable
from medqueue.queue.read_model import QueueReadModel
from medqueue.queue.store import QueueStore

logger = logging.getLogger(__name__)

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=True)

# ── Queue wiring (singletons) ────────────────────────────────────────────────
_lock_table: LockTable | None = None
_lock_table_init = asyncio.Lock()
_event_bus = EventBus()
_event_bus.subscribe(QueueEventType.CALLED, log_patient_called)


def get_event_bus() -> EventBus:
    return _event_bus


async def get_lock_table() -> LockTable:
    """
    The process-wide organization lock table.

    With the redis backend an unreachable Redis fails the request with
    StoreIOError and the next request tries again. It never falls back to
    in-process locks.
    """
    global _lock_table
    if _lock_table is not None:
        return _lock_table
    async with _lock_table_init:
        if _lock_table is None:
            _lock_table = await _build_lock_table()
    return _lock_table


async def _build_lock_table() -> LockTable:
    if settings.queue_lock_backend != "redis":
        return LocalLockTable()
    client = aioredis.from_url(
        str(settings.redis_url),
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=1,
    )
    try:
        await client.ping()
    except RedisError as exc:
        logger.warning("Redis not available for queue locks (%s); rejecting request", exc)
        await client.aclose()
        raise StoreIOError("Queue lock service is unavailable.") from exc
    return RedisLockTable(client, timeout=settings.queue_lock_timeout_seconds)


@lru_cache(maxsize=1)
def get_queue_store() -> QueueStore:
    return QueueStore(AsyncSessionLocal)


def get_queue_engine(
    store: Annotated[QueueStore, Depends(get_queue_store)],
    locks: Annotated[LockTable, Depends(get_lock_table)],
    events: Annotated[EventBus, Depends(get_event_bus)],
) -> QueueEngine:
    return QueueEngine(
        store,
        locks,
        events,
        minutes_per_position=settings.queue_minutes_per_position,
    )


def get_read_model(
    store: Annotated[QueueStore, Depends(get_queue_store)],
) -> QueueReadModel:
    return QueueReadModel(AsyncSessionLocal, store, clinic_timezone=settings.clinic_timezone)


# ── JWT Auth Dependency ──────────────────────────────────────────────────────

async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Security(bearer_scheme)],
) -> dict:
    """
    Validate Bearer token and return the caller's identity.
    Raises 401 if token is missing/invalid.
    """
    token = credentials.credentials
    try:
        payload = decode_token(token)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc

    return {
        "user_id": payload.sub,
        "role": payload.role,
        "organization_id": payload.org,
    }


def require_permission(permission: str):
    """
    Dependency factory for RBAC enforcement.

    Usage:
        @router.delete("/{queue_id}")
        async def remove_entry(
            _=Depends(require_permission("delete")),
            ...
        ): ...
    """
    async def _check(
        current_user: Annotated[dict, Depends(get_current_user)],
    ) -> dict:
        role = current_user["role"]
        if not has_permission(role, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{role}' does not have '{permission}' permission.",
            )
        return current_user

    return _check


# ── Tenant scoping ───────────────────────────────────────────────────────────

def ensure_organization_access(current_user: dict, organization_id: str) -> None:
    """Callers act only on their own organization's queue; superadmins on any."""
    if current_user["role"] == "superadmin":
        return
    if current_user["organization_id"] != organization_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"No access to the queue of organization {organization_id}.",
        )


def ensure_patient_access(current_user: dict, patient_id: str) -> None:
    """Patients may only look up their own queue entry."""
    if current_user["role"] == "patient" and current_user["user_id"] != patient_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Patients can only view their own queue entry.",
        )
