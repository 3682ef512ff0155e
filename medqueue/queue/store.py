"""
medqueue/queue/store.py — Durable queue entry storage on async SQLAlchemy.

The store persists what the engine hands it and performs no transition
checks, with two exceptions:

- create() refuses a second non-terminal entry for the same appointment
  (pre-check plus the partial unique index, both inside one transaction),
  and reports an unknown appointment or organization as NotFoundError.
- renumber_waiting() rewrites positions for a whole organization atomically.

Every operation opens its own short transaction. SQLAlchemy failures surface
as StoreIOError with the driver error chained.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medqueue.db.models import PatientQueue
from medqueue.queue.domain import ACTIVE_STATUSES, QueueEntry, QueueStats, QueueStatus
from medqueue.queue.errors import ConflictError, NotFoundError, QueueError, StoreIOError

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_SERVING = [QueueStatus.CALLED.value, QueueStatus.IN_PROGRESS.value]
_WAITING = QueueStatus.WAITING.value
_ACTIVE_APPOINTMENT_INDEX = "uq_patient_queues_active_appointment"


@asynccontextmanager
async def store_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: str,
    **context: Any,
) -> AsyncIterator[AsyncSession]:
    """One session + one transaction; commits on success, rolls back otherwise."""
    try:
        async with session_factory() as session, session.begin():
            yield session
    except SQLAlchemyError as exc:
        logger.error("Queue store operation '%s' failed %s: %s", operation, context, exc)
        raise StoreIOError(f"Queue store operation '{operation}' failed.") from exc


def entry_from_row(row: PatientQueue) -> QueueEntry:
    return QueueEntry(
        id=row.id,
        appointment_id=row.appointment_id,
        organization_id=row.organization_id,
        position=row.position,
        estimated_wait_time=row.estimated_wait_time,
        status=QueueStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _admission_error(entry: QueueEntry, exc: IntegrityError) -> QueueError:
    """Translate an INSERT failure on patient_queues by the constraint it hit."""
    message = str(exc.orig).lower()
    if "foreign key" in message:
        return NotFoundError(
            f"Appointment {entry.appointment_id} or organization "
            f"{entry.organization_id} not found."
        )
    # Postgres names the partial index; SQLite names the indexed column
    if _ACTIVE_APPOINTMENT_INDEX in message or "patient_queues.appointment_id" in message:
        return ConflictError(
            f"Appointment {entry.appointment_id} already has an active queue entry."
        )
    logger.error("Queue entry insert rejected by the database: %s", exc.orig)
    return StoreIOError("Queue store operation 'create' failed.")


class QueueStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    def _transaction(self, operation: str, **context: Any):
        return store_transaction(self._session_factory, operation, **context)

    # ── CRUD ──────────────────────────────────────────────────────────────────

    async def create(self, entry: QueueEntry) -> QueueEntry:
        async with self._transaction(
            "create", organization_id=entry.organization_id, appointment_id=entry.appointment_id
        ) as session:
            existing = await session.scalar(
                select(PatientQueue.id).where(
                    PatientQueue.appointment_id == entry.appointment_id,
                    PatientQueue.status.in_(_ACTIVE),
                )
            )
            if existing is not None:
                raise ConflictError(
                    f"Appointment {entry.appointment_id} already has an active queue entry."
                )

            row = PatientQueue(
                id=entry.id,
                appointment_id=entry.appointment_id,
                organization_id=entry.organization_id,
                position=entry.position,
                estimated_wait_time=entry.estimated_wait_time,
                status=entry.status.value,
            )
            session.add(row)
            try:
                await session.flush()
            except IntegrityError as exc:
                raise _admission_error(entry, exc) from exc
            return entry_from_row(row)

    async def get_by_id(self, queue_id: str) -> QueueEntry:
        async with self._transaction("get_by_id", queue_id=queue_id) as session:
            row = await session.get(PatientQueue, queue_id)
            if row is None:
                raise NotFoundError(f"Queue entry {queue_id} not found.")
            return entry_from_row(row)

    async def get_by_appointment(self, appointment_id: str) -> QueueEntry | None:
        """The appointment's non-terminal entry, if it has one."""
        async with self._transaction("get_by_appointment", appointment_id=appointment_id) as session:
            row = await session.scalar(
                select(PatientQueue).where(
                    PatientQueue.appointment_id == appointment_id,
                    PatientQueue.status.in_(_ACTIVE),
                )
            )
            return entry_from_row(row) if row is not None else None

    async def get_by_organization(
        self, organization_id: str, limit: int, offset: int = 0
    ) -> list[QueueEntry]:
        async with self._transaction(
            "get_by_organization", organization_id=organization_id
        ) as session:
            rows = await session.scalars(
                select(PatientQueue)
                .where(PatientQueue.organization_id == organization_id)
                .order_by(PatientQueue.position.asc(), PatientQueue.created_at.asc())
                .limit(limit)
                .offset(offset)
            )
            return [entry_from_row(r) for r in rows]

    async def count_by_organization(self, organization_id: str) -> int:
        async with self._transaction(
            "count_by_organization", organization_id=organization_id
        ) as session:
            count = await session.scalar(
                select(func.count())
                .select_from(PatientQueue)
                .where(PatientQueue.organization_id == organization_id)
            )
            return int(count or 0)

    async def update(self, entry: QueueEntry) -> QueueEntry:
        """Full overwrite of the mutable columns. No transition checks here."""
        async with self._transaction(
            "update", organization_id=entry.organization_id, queue_id=entry.id
        ) as session:
            row = await session.get(PatientQueue, entry.id)
            if row is None:
                raise NotFoundError(f"Queue entry {entry.id} not found.")
            row.position = entry.position
            row.estimated_wait_time = entry.estimated_wait_time
            row.status = entry.status.value
            row.updated_at = _now()
            await session.flush()
            return entry_from_row(row)

    async def delete(self, queue_id: str) -> None:
        async with self._transaction("delete", queue_id=queue_id) as session:
            result = await session.execute(
                delete(PatientQueue).where(PatientQueue.id == queue_id)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Queue entry {queue_id} not found.")

    # ── Ordering lookups ──────────────────────────────────────────────────────

    async def get_next_waiting(self, organization_id: str) -> QueueEntry | None:
        """Waiting entry holding the highest position: the tail of the line."""
        async with self._transaction("get_next_waiting", organization_id=organization_id) as session:
            row = await session.scalar(
                select(PatientQueue)
                .where(
                    PatientQueue.organization_id == organization_id,
                    PatientQueue.status == _WAITING,
                )
                .order_by(PatientQueue.position.desc(), PatientQueue.created_at.desc())
                .limit(1)
            )
            return entry_from_row(row) if row is not None else None

    async def get_longest_waiting(self, organization_id: str) -> QueueEntry | None:
        """Waiting entry admitted first (created_at, then id)."""
        async with self._transaction(
            "get_longest_waiting", organization_id=organization_id
        ) as session:
            row = await session.scalar(
                select(PatientQueue)
                .where(
                    PatientQueue.organization_id == organization_id,
                    PatientQueue.status == _WAITING,
                )
                .order_by(PatientQueue.created_at.asc(), PatientQueue.id.asc())
                .limit(1)
            )
            return entry_from_row(row) if row is not None else None

    async def get_max_active_position(self, organization_id: str) -> int:
        async with self._transaction(
            "get_max_active_position", organization_id=organization_id
        ) as session:
            current = await session.scalar(
                select(func.max(PatientQueue.position)).where(
                    PatientQueue.organization_id == organization_id,
                    PatientQueue.status.in_(_ACTIVE),
                )
            )
            return int(current or 0)

    # ── Bulk renumbering ──────────────────────────────────────────────────────

    async def renumber_waiting(self, organization_id: str, minutes_per_position: int) -> int:
        """
        Rewrite positions of one organization inside a single transaction.

        Waiting entries get dense positions 1..N ordered by (created_at, id) and
        a fresh wait estimate. Called and in-progress entries follow at N+1..
        in the same order so no non-terminal entries share a position.
        Returns N.
        """
        pq = PatientQueue.__table__
        ahead = pq.alias("ahead")

        def _rank(statuses: list[str]):
            return (
                select(func.count())
                .select_from(ahead)
                .where(
                    ahead.c.organization_id == pq.c.organization_id,
                    ahead.c.status.in_(statuses),
                    or_(
                        ahead.c.created_at < pq.c.created_at,
                        and_(ahead.c.created_at == pq.c.created_at, ahead.c.id <= pq.c.id),
                    ),
                )
                .correlate(pq)
                .scalar_subquery()
            )

        waiting_rank = _rank([_WAITING])
        serving_rank = _rank(_SERVING)
        waiting_total = (
            select(func.count())
            .select_from(ahead)
            .where(
                ahead.c.organization_id == pq.c.organization_id,
                ahead.c.status == _WAITING,
            )
            .correlate(pq)
            .scalar_subquery()
        )
        now = _now()

        async with self._transaction(
            "renumber_waiting", organization_id=organization_id
        ) as session:
            result = await session.execute(
                update(pq)
                .where(pq.c.organization_id == organization_id, pq.c.status == _WAITING)
                .values(
                    position=waiting_rank,
                    estimated_wait_time=waiting_rank * minutes_per_position,
                    updated_at=now,
                )
            )
            await session.execute(
                update(pq)
                .where(pq.c.organization_id == organization_id, pq.c.status.in_(_SERVING))
                .values(position=waiting_total + serving_rank, updated_at=now)
            )
            return result.rowcount

    # ── Aggregates ────────────────────────────────────────────────────────────

    async def get_stats(self, organization_id: str) -> QueueStats:
        def _count(status: str):
            return func.coalesce(func.sum(case((PatientQueue.status == status, 1), else_=0)), 0)

        async with self._transaction("get_stats", organization_id=organization_id) as session:
            row = (
                await session.execute(
                    select(
                        func.count(),
                        _count(_WAITING),
                        _count(QueueStatus.CALLED.value),
                        _count(QueueStatus.IN_PROGRESS.value),
                        func.avg(
                            case(
                                (PatientQueue.status == _WAITING, PatientQueue.estimated_wait_time),
                                else_=None,
                            )
                        ),
                    ).where(PatientQueue.organization_id == organization_id)
                )
            ).one()

        total, waiting, called, in_progress, average = row
        return QueueStats(
            total=int(total),
            waiting=int(waiting),
            called=int(called),
            in_progress=int(in_progress),
            average_wait_minutes=round(float(average), 1) if average is not None else 0.0,
        )
