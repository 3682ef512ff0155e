"""
medqueue/queue/events.py — Best-effort, in-process queue event bus.

Delivery is at-most-once. A failing handler is logged and skipped; it never
fails the queue mutation that produced the event.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class QueueEventType(str, Enum):
    ADMITTED = "queue.admitted"
    CALLED = "queue.called"
    STARTED = "queue.started"
    COMPLETED = "queue.completed"
    CANCELLED = "queue.cancelled"
    REMOVED = "queue.removed"
    RENUMBERED = "queue.renumbered"


@dataclass(frozen=True)
class QueueEvent:
    type: QueueEventType
    organization_id: str
    entry_id: str | None = None
    status: str | None = None
    position: int | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


EventHandler = Callable[[QueueEvent], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[QueueEventType, list[EventHandler]] = {}

    def subscribe(self, event_type: QueueEventType, handler: EventHandler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(self, event: QueueEvent) -> None:
        for handler in list(self._handlers.get(event.type, ())):
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "queue_event_handler_failed",
                    event_type=event.type.value,
                    organization_id=event.organization_id,
                    queue_id=event.entry_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                )


async def log_patient_called(event: QueueEvent) -> None:
    """Default "you are next" hook until a notification channel subscribes."""
    logger.info(
        "patient_called",
        organization_id=event.organization_id,
        queue_id=event.entry_id,
        position=event.position,
    )
