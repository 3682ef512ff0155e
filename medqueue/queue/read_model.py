"""
medqueue/queue/read_model.py — Read-only queue views for patients and dashboards.

Nothing here writes. A patient with no queue entry today is a normal state,
so get_enriched_by_patient() returns None rather than raising.
"""
from __future__ import annotations

from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from medqueue.db.models import Appointment, PatientQueue, User
from medqueue.queue.domain import ACTIVE_STATUSES, EnrichedQueueEntry, QueuePage, QueueStats
from medqueue.queue.store import QueueStore, entry_from_row, store_transaction


class QueueReadModel:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: QueueStore,
        clinic_timezone: str = "UTC",
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._tz = ZoneInfo(clinic_timezone)

    def today(self) -> date:
        return datetime.now(tz=self._tz).date()

    async def get_enriched_by_patient(
        self, patient_id: str, on_date: date | None = None
    ) -> EnrichedQueueEntry | None:
        """
        The patient's queue entry for an appointment on ``on_date`` (default:
        today in the clinic's timezone), joined with patient, doctor and
        appointment details.

        An active entry wins over finished ones; among equals the newest wins.
        Returns None when the patient has nothing queued that day.
        """
        day = on_date or self.today()
        patient = aliased(User, name="patient")
        doctor = aliased(User, name="doctor")
        stmt = (
            select(PatientQueue, Appointment, patient.name, doctor.name)
            .join(Appointment, PatientQueue.appointment_id == Appointment.id)
            .join(patient, Appointment.patient_id == patient.id)
            .join(doctor, Appointment.doctor_id == doctor.id)
            .where(Appointment.patient_id == patient_id, Appointment.date == day)
            .order_by(
                case(
                    (PatientQueue.status.in_([s.value for s in ACTIVE_STATUSES]), 0),
                    else_=1,
                ),
                PatientQueue.created_at.desc(),
            )
            .limit(1)
        )

        async with store_transaction(
            self._session_factory, "get_enriched_by_patient", patient_id=patient_id
        ) as session:
            row = (await session.execute(stmt)).first()
            if row is None:
                return None
            queue_row, appointment, patient_name, doctor_name = row
            return EnrichedQueueEntry(
                entry=entry_from_row(queue_row),
                patient_id=appointment.patient_id,
                patient_name=patient_name,
                doctor_id=appointment.doctor_id,
                doctor_name=doctor_name,
                appointment_date=appointment.date,
                appointment_time=appointment.start_time,
                appointment_type=appointment.type,
                appointment_status=appointment.status,
            )

    async def get_stats_by_organization(self, organization_id: str) -> QueueStats:
        return await self._store.get_stats(organization_id)

    async def list_by_organization(
        self, organization_id: str, limit: int, offset: int = 0
    ) -> QueuePage:
        entries = await self._store.get_by_organization(organization_id, limit, offset)
        total = await self._store.count_by_organization(organization_id)
        return QueuePage(entries=entries, total=total)
