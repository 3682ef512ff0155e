"""
medqueue/api/routers/queues.py — Patient queue endpoints.

Staff actions map one-to-one onto QueueEngine operations; reads go through
QueueReadModel. Queue errors are translated to HTTP responses by the
exception handler registered in medqueue.api.main. Callers only see and act
on their own organization's queue; superadmins on any.
"""
from datetime import date, datetime, time
from typing import Annotated, Generic, TypeVar

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from medqueue.api.deps import (
    ensure_organization_access,
    ensure_patient_access,
    get_queue_engine,
    get_read_model,
    require_permission,
)
from medqueue.api.rate_limit import limiter
from medqueue.config import get_settings
from medqueue.queue.domain import EnrichedQueueEntry, QueueEntry, QueueStats
from medqueue.queue.engine import QueueEngine
from medqueue.queue.errors import NotFoundError
from medqueue.queue.read_model import QueueReadModel

settings = get_settings()
router = APIRouter()

T = TypeVar("T")

Engine = Annotated[QueueEngine, Depends(get_queue_engine)]
ReadModel = Annotated[QueueReadModel, Depends(get_read_model)]


# ─── Request / Response Schemas ──────────────────────────────────────────────

class AdmitRequest(BaseModel):
    appointment_id: str = Field(..., min_length=1, max_length=36)
    organization_id: str = Field(..., min_length=1, max_length=36)


class OrganizationRequest(BaseModel):
    organization_id: str = Field(..., min_length=1, max_length=36)


class QueueEntryOut(BaseModel):
    id: str
    appointment_id: str
    organization_id: str
    position: int
    estimated_wait_time: int = Field(..., description="Advisory wait in minutes")
    status: str
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryOut":
        return cls(
            id=entry.id,
            appointment_id=entry.appointment_id,
            organization_id=entry.organization_id,
            position=entry.position,
            estimated_wait_time=entry.estimated_wait_time,
            status=entry.status.value,
            created_at=entry.created_at,
            updated_at=entry.updated_at,
        )


class PatientQueueOut(QueueEntryOut):
    patient_id: str
    patient_name: str
    doctor_id: str
    doctor_name: str
    appointment_date: date
    appointment_time: time
    appointment_type: str
    appointment_status: str

    @classmethod
    def from_enriched(cls, enriched: EnrichedQueueEntry) -> "PatientQueueOut":
        return cls(
            **QueueEntryOut.from_entry(enriched.entry).model_dump(),
            patient_id=enriched.patient_id,
            patient_name=enriched.patient_name,
            doctor_id=enriched.doctor_id,
            doctor_name=enriched.doctor_name,
            appointment_date=enriched.appointment_date,
            appointment_time=enriched.appointment_time,
            appointment_type=enriched.appointment_type,
            appointment_status=enriched.appointment_status,
        )


class QueueStatsOut(BaseModel):
    total: int
    waiting: int
    called: int
    in_progress: int
    average_wait_minutes: float

    @classmethod
    def from_stats(cls, stats: QueueStats) -> "QueueStatsOut":
        return cls(
            total=stats.total,
            waiting=stats.waiting,
            called=stats.called,
            in_progress=stats.in_progress,
            average_wait_minutes=stats.average_wait_minutes,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class QueueListData(BaseModel):
    queues: list[QueueEntryOut]
    pagination: Pagination


class Envelope(BaseModel, Generic[T]):
    success: bool = True
    data: T
    message: str


# ─── Reads ────────────────────────────────────────────────────────────────────

@router.get("/", response_model=Envelope[QueueListData])
async def list_queue(
    read_model: ReadModel,
    user: Annotated[dict, Depends(require_permission("read"))],
    organization_id: Annotated[str, Query(min_length=1)],
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = settings.default_page_size,
) -> Envelope[QueueListData]:
    """
    Page of an organization's queue entries in position order.

    After a renumber the waiting line holds positions 1..N; patients already
    called or with the doctor follow at N+1.., so they are listed after it.
    """
    ensure_organization_access(user, organization_id)
    result = await read_model.list_by_organization(organization_id, limit, (page - 1) * limit)
    return Envelope(
        data=QueueListData(
            queues=[QueueEntryOut.from_entry(e) for e in result.entries],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=result.total,
                total_pages=(result.total + limit - 1) // limit,
            ),
        ),
        message="Queues retrieved successfully",
    )


@router.get("/stats", response_model=Envelope[QueueStatsOut])
async def queue_stats(
    read_model: ReadModel,
    user: Annotated[dict, Depends(require_permission("read"))],
    organization_id: Annotated[str, Query(min_length=1)],
) -> Envelope[QueueStatsOut]:
    ensure_organization_access(user, organization_id)
    stats = await read_model.get_stats_by_organization(organization_id)
    return Envelope(data=QueueStatsOut.from_stats(stats), message="Queue statistics retrieved")


@router.get("/patients/{patient_id}", response_model=Envelope[PatientQueueOut | None])
async def patient_queue(
    patient_id: str,
    read_model: ReadModel,
    user: Annotated[dict, Depends(require_permission("read"))],
) -> Envelope[PatientQueueOut | None]:
    """Today's queue entry for a patient; ``data`` is null when there is none."""
    ensure_patient_access(user, patient_id)
    enriched = await read_model.get_enriched_by_patient(patient_id)
    if enriched is None:
        return Envelope(data=None, message="No queue entry for today")
    ensure_organization_access(user, enriched.entry.organization_id)
    return Envelope(data=PatientQueueOut.from_enriched(enriched), message="Queue entry retrieved")


@router.get("/{queue_id}", response_model=Envelope[QueueEntryOut])
async def get_queue_entry(
    queue_id: str,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("read"))],
) -> Envelope[QueueEntryOut]:
    entry = await engine.get(queue_id)
    ensure_organization_access(user, entry.organization_id)
    return Envelope(data=QueueEntryOut.from_entry(entry), message="Queue entry retrieved")


# ─── Staff actions ────────────────────────────────────────────────────────────

async def _authorize_entry(engine: QueueEngine, user: dict, queue_id: str) -> None:
    entry = await engine.get(queue_id)
    ensure_organization_access(user, entry.organization_id)


@router.post("/", response_model=Envelope[QueueEntryOut], status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.rate_limit_mutation)
async def admit_patient(
    request: Request,
    payload: AdmitRequest,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("write"))],
) -> Envelope[QueueEntryOut]:
    """Admit an appointment at the tail of its organization's queue."""
    ensure_organization_access(user, payload.organization_id)
    entry = await engine.admit(payload.appointment_id, payload.organization_id)
    return Envelope(data=QueueEntryOut.from_entry(entry), message="Patient added to queue")


@router.post("/call-next", response_model=Envelope[QueueEntryOut])
@limiter.limit(settings.rate_limit_mutation)
async def call_next_patient(
    request: Request,
    payload: OrganizationRequest,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("write"))],
) -> Envelope[QueueEntryOut]:
    ensure_organization_access(user, payload.organization_id)
    entry = await engine.call_next(payload.organization_id)
    return Envelope(data=QueueEntryOut.from_entry(entry), message="Next patient called")


@router.post("/renumber", response_model=Envelope[int])
@limiter.limit(settings.rate_limit_mutation)
async def renumber_queue(
    request: Request,
    payload: OrganizationRequest,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("admin"))],
) -> Envelope[int]:
    """Repair an organization's positions; returns the number of waiting entries."""
    ensure_organization_access(user, payload.organization_id)
    count = await engine.renumber(payload.organization_id)
    return Envelope(data=count, message="Queue renumbered")


@router.post("/{queue_id}/start", response_model=Envelope[QueueEntryOut])
@limiter.limit(settings.rate_limit_mutation)
async def start_consultation(
    request: Request,
    queue_id: str,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("write"))],
) -> Envelope[QueueEntryOut]:
    await _authorize_entry(engine, user, queue_id)
    entry = await engine.start_consultation(queue_id)
    return Envelope(data=QueueEntryOut.from_entry(entry), message="Consultation started")


@router.post("/{queue_id}/complete", response_model=Envelope[QueueEntryOut])
@limiter.limit(settings.rate_limit_mutation)
async def complete_consultation(
    request: Request,
    queue_id: str,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("write"))],
) -> Envelope[QueueEntryOut]:
    try:
        await _authorize_entry(engine, user, queue_id)
    except NotFoundError:
        # The engine raises its own completion-specific not-found error below
        pass
    entry = await engine.complete_consultation(queue_id)
    return Envelope(data=QueueEntryOut.from_entry(entry), message="Consultation completed")


@router.post("/{queue_id}/cancel", response_model=Envelope[QueueEntryOut])
@limiter.limit(settings.rate_limit_mutation)
async def cancel_entry(
    request: Request,
    queue_id: str,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("write"))],
) -> Envelope[QueueEntryOut]:
    await _authorize_entry(engine, user, queue_id)
    entry = await engine.cancel(queue_id)
    return Envelope(data=QueueEntryOut.from_entry(entry), message="Queue entry cancelled")


@router.delete("/{queue_id}", response_model=Envelope[None])
@limiter.limit(settings.rate_limit_mutation)
async def remove_entry(
    request: Request,
    queue_id: str,
    engine: Engine,
    user: Annotated[dict, Depends(require_permission("delete"))],
) -> Envelope[None]:
    await _authorize_entry(engine, user, queue_id)
    await engine.remove(queue_id)
    return Envelope(data=None, message="Queue entry deleted successfully")
