"""
medqueue/queue/domain.py — Queue entry types and the status state machine.

    waiting --call--> called --start--> in_progress --complete--> completed
    waiting ---------------start-----------------> in_progress
    {waiting, called, in_progress} --cancel--> cancelled
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from enum import Enum


class QueueStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[QueueStatus] = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.CANCELLED}
)
ACTIVE_STATUSES: tuple[QueueStatus, ...] = (
    QueueStatus.WAITING,
    QueueStatus.CALLED,
    QueueStatus.IN_PROGRESS,
)

TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.WAITING: frozenset(
        {QueueStatus.CALLED, QueueStatus.IN_PROGRESS, QueueStatus.CANCELLED}
    ),
    QueueStatus.CALLED: frozenset({QueueStatus.IN_PROGRESS, QueueStatus.CANCELLED}),
    QueueStatus.IN_PROGRESS: frozenset({QueueStatus.COMPLETED, QueueStatus.CANCELLED}),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.CANCELLED: frozenset(),
}


def can_transition(current: QueueStatus, target: QueueStatus) -> bool:
    return target in TRANSITIONS[current]


def estimate_wait_minutes(position: int, minutes_per_position: int) -> int:
    """Advisory wait estimate: every place ahead (including your own) costs a slot."""
    return position * minutes_per_position


@dataclass
class QueueEntry:
    appointment_id: str
    organization_id: str
    position: int
    estimated_wait_time: int
    status: QueueStatus = QueueStatus.WAITING
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def with_status(self, status: QueueStatus) -> QueueEntry:
        return replace(self, status=status)


@dataclass(frozen=True)
class QueueStats:
    total: int
    waiting: int
    called: int
    in_progress: int
    average_wait_minutes: float


@dataclass(frozen=True)
class QueuePage:
    entries: list[QueueEntry]
    total: int


@dataclass(frozen=True)
class EnrichedQueueEntry:
    """A queue entry joined with the patient, doctor and appointment it belongs to."""

    entry: QueueEntry
    patient_id: str
    patient_name: str
    doctor_id: str
    doctor_name: str
    appointment_date: date
    appointment_time: time
    appointment_type: str
    appointment_status: str
