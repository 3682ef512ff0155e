"""
medqueue/queue/engine.py — Patient queue business rules.

The engine is the only writer of queue entries. It owns:
- admission at the tail of an organization's line
- call-next selection (longest waiting, i.e. earliest created_at)
- status transitions along the state machine in queue.domain
- renumbering after an entry leaves the line (complete, cancel, remove)

Every mutation runs inside the organization's lock, and so does the
renumber that follows it. Renumbering after a committed mutation is
best-effort: a failure is logged and the mutation still succeeds.
"""
from __future__ import annotations

import structlog

from medqueue.queue.domain import (
    QueueEntry,
    QueueStatus,
    can_transition,
    estimate_wait_minutes,
)
from medqueue.queue.errors import (
    ConflictError,
    EmptyQueueError,
    InvalidTransitionError,
    NotFoundError,
    QueueError,
)
from medqueue.queue.events import EventBus, QueueEvent, QueueEventType
from medqueue.queue.locks import LockTable
from medqueue.queue.store import QueueStore

logger = structlog.get_logger(__name__)

DEFAULT_MINUTES_PER_POSITION = 15

_TRANSITION_EVENTS: dict[QueueStatus, QueueEventType] = {
    QueueStatus.CALLED: QueueEventType.CALLED,
    QueueStatus.IN_PROGRESS: QueueEventType.STARTED,
    QueueStatus.COMPLETED: QueueEventType.COMPLETED,
    QueueStatus.CANCELLED: QueueEventType.CANCELLED,
}


class QueueEngine:
    def __init__(
        self,
        store: QueueStore,
        locks: LockTable,
        events: EventBus | None = None,
        minutes_per_position: int = DEFAULT_MINUTES_PER_POSITION,
    ) -> None:
        self._store = store
        self._locks = locks
        self._events = events or EventBus()
        self._minutes_per_position = minutes_per_position

    async def get(self, queue_id: str) -> QueueEntry:
        return await self._store.get_by_id(queue_id)

    # ── Admission ─────────────────────────────────────────────────────────────

    async def admit(self, appointment_id: str, organization_id: str) -> QueueEntry:
        """
        Put an appointment at the tail of its organization's line.

        Raises:
            ConflictError: the appointment already has a non-terminal entry.
        """
        log = logger.bind(
            operation="admit", organization_id=organization_id, appointment_id=appointment_id
        )
        async with self._locks.hold(organization_id):
            existing = await self._store.get_by_appointment(appointment_id)
            if existing is not None:
                log.info("queue_admission_rejected", queue_id=existing.id)
                raise ConflictError(
                    f"Appointment {appointment_id} is already queued as {existing.id}."
                )

            position = await self._store.get_max_active_position(organization_id) + 1
            entry = await self._store.create(
                QueueEntry(
                    appointment_id=appointment_id,
                    organization_id=organization_id,
                    position=position,
                    estimated_wait_time=estimate_wait_minutes(
                        position, self._minutes_per_position
                    ),
                )
            )

        log.info("queue_entry_admitted", queue_id=entry.id, position=entry.position)
        await self._publish(QueueEventType.ADMITTED, entry)
        return entry

    # ── Transitions ───────────────────────────────────────────────────────────

    async def call_next(self, organization_id: str) -> QueueEntry:
        """
        Call the patient who has been waiting longest.

        Positions are display order only; created_at decides who is called.
        Positions are left untouched.

        Raises:
            EmptyQueueError: nobody is waiting in this organization.
        """
        log = logger.bind(operation="call_next", organization_id=organization_id)
        async with self._locks.hold(organization_id):
            candidate = await self._store.get_longest_waiting(organization_id)
            if candidate is None:
                raise EmptyQueueError(f"No patients waiting in organization {organization_id}.")
            called = await self._store.update(candidate.with_status(QueueStatus.CALLED))

        log.info("queue_patient_called", queue_id=called.id, position=called.position)
        await self._publish(QueueEventType.CALLED, called)
        return called

    async def start_consultation(self, queue_id: str) -> QueueEntry:
        """called → in_progress; waiting → in_progress when the clinic skips calling."""
        return await self._transition(queue_id, QueueStatus.IN_PROGRESS, "start_consultation")

    async def complete_consultation(self, queue_id: str) -> QueueEntry:
        try:
            return await self._transition(
                queue_id, QueueStatus.COMPLETED, "complete_consultation", renumber=True
            )
        except NotFoundError as exc:
            raise NotFoundError(f"queue entry not found for completion: {queue_id}") from exc

    async def cancel(self, queue_id: str) -> QueueEntry:
        return await self._transition(queue_id, QueueStatus.CANCELLED, "cancel", renumber=True)

    async def remove(self, queue_id: str) -> None:
        """Administrative delete. Normal exits go through complete or cancel."""
        log = logger.bind(operation="remove", queue_id=queue_id)
        entry = await self._store.get_by_id(queue_id)
        async with self._locks.hold(entry.organization_id):
            await self._store.delete(queue_id)
            await self._renumber(entry.organization_id, log)

        log.info("queue_entry_removed", organization_id=entry.organization_id)
        await self._publish(QueueEventType.REMOVED, entry)

    async def _transition(
        self,
        queue_id: str,
        target: QueueStatus,
        operation: str,
        *,
        renumber: bool = False,
    ) -> QueueEntry:
        log = logger.bind(operation=operation, queue_id=queue_id)
        entry = await self._store.get_by_id(queue_id)
        async with self._locks.hold(entry.organization_id):
            # Another request may have moved the entry while we waited for the lock
            entry = await self._store.get_by_id(queue_id)
            if not can_transition(entry.status, target):
                log.info("queue_transition_rejected", status=entry.status.value, target=target.value)
                raise InvalidTransitionError(entry.id, entry.status.value, target.value)

            updated = await self._store.update(entry.with_status(target))
            if renumber:
                await self._renumber(updated.organization_id, log)

        log.info(
            "queue_status_changed",
            organization_id=updated.organization_id,
            previous=entry.status.value,
            status=updated.status.value,
        )
        await self._publish(_TRANSITION_EVENTS[target], updated)
        return updated

    # ── Renumbering ───────────────────────────────────────────────────────────

    async def renumber(self, organization_id: str) -> int:
        """Close gaps in an organization's waiting line. Errors propagate."""
        async with self._locks.hold(organization_id):
            count = await self._store.renumber_waiting(
                organization_id, self._minutes_per_position
            )
        await self._events.publish(
            QueueEvent(type=QueueEventType.RENUMBERED, organization_id=organization_id)
        )
        return count

    async def _renumber(self, organization_id: str, log: structlog.stdlib.BoundLogger) -> None:
        # Caller holds the organization lock and has already committed its mutation
        try:
            count = await self._store.renumber_waiting(
                organization_id, self._minutes_per_position
            )
        except QueueError as exc:
            log.error(
                "queue_renumber_failed",
                organization_id=organization_id,
                error=str(exc),
                exc_info=exc,
            )
            return
        log.debug("queue_renumbered", organization_id=organization_id, waiting=count)
        await self._events.publish(
            QueueEvent(type=QueueEventType.RENUMBERED, organization_id=organization_id)
        )

    async def _publish(self, event_type: QueueEventType, entry: QueueEntry) -> None:
        await self._events.publish(
            QueueEvent(
                type=event_type,
                organization_id=entry.organization_id,
                entry_id=entry.id,
                status=entry.status.value,
                position=entry.position,
            )
        )
