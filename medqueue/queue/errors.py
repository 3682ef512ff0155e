"""
medqueue/queue/errors.py — Error hierarchy for the patient queue.

Every error carries an ErrorKind and the HTTP status the API maps it to.
Causes are preserved with ``raise ... from exc`` so the chain survives into
the logs.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EMPTY_QUEUE = "empty_queue"
    INVALID_TRANSITION = "invalid_transition"
    IO = "io_error"


class QueueError(Exception):
    """Base class for all queue failures."""

    kind: ErrorKind = ErrorKind.IO
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(QueueError):
    """Queue entry (or appointment) does not exist."""

    kind = ErrorKind.NOT_FOUND
    status_code = 404


class ConflictError(QueueError):
    """Duplicate active entry for an appointment, or a position collision."""

    kind = ErrorKind.CONFLICT
    status_code = 409


class EmptyQueueError(QueueError):
    """call_next found nobody waiting. A "nothing to do" outcome, not a crash."""

    kind = ErrorKind.EMPTY_QUEUE
    status_code = 409


class InvalidTransitionError(QueueError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = 400

    def __init__(self, entry_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Queue entry {entry_id} cannot move from '{current}' to '{target}'."
        )
        self.entry_id = entry_id
        self.current = current
        self.target = target


class StoreIOError(QueueError):
    """Underlying persistence failure (connection loss, timeout, lock wait)."""

    kind = ErrorKind.IO
    status_code = 500
