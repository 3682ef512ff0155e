"""
medqueue/db/models.py — SQLAlchemy ORM models for all database entities.

Uses SQLAlchemy 2.0 declarative style with type annotations.
Every table includes audit columns (created_at, updated_at).

Only patient_queues is written by this service; organizations, users and
appointments are owned by the surrounding clinic backend and are mapped here
so the queue read model can join against them.
"""
from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Time,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> dt.datetime:
    # Microsecond precision keeps created_at usable as the queue ordering key
    return dt.datetime.now(tz=dt.timezone.utc)


class Base(DeclarativeBase):
    """Abstract base with shared audit columns."""

    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )


def _uuid() -> str:
    return str(uuid.uuid4())


# ─── Organizations ────────────────────────────────────────────────────────────

class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


# ─── Users (staff, doctors and patients) ─────────────────────────────────────

class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("organizations.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    role: Mapped[str] = mapped_column(
        String(50), nullable=False, default="patient"
    )  # admin | doctor | nurse | receptionist | patient


# ─── Appointments ─────────────────────────────────────────────────────────────

class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    organization_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("organizations.id"), nullable=False, index=True
    )
    patient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False, index=True
    )
    doctor_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[dt.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[dt.time | None] = mapped_column(Time)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="consultation")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="scheduled"
    )  # scheduled | confirmed | in_progress | completed | cancelled

    patient: Mapped["User"] = relationship(foreign_keys=[patient_id])
    doctor: Mapped["User"] = relationship(foreign_keys=[doctor_id])


# ─── Patient Queue ────────────────────────────────────────────────────────────

_ACTIVE_ROWS = text("status IN ('waiting', 'called', 'in_progress')")


class PatientQueue(Base):
    __tablename__ = "patient_queues"
    __table_args__ = (
        # At most one non-terminal entry per appointment
        Index(
            "uq_patient_queues_active_appointment",
            "appointment_id",
            unique=True,
            postgresql_where=_ACTIVE_ROWS,
            sqlite_where=_ACTIVE_ROWS,
        ),
        Index("ix_patient_queues_org_status_created", "organization_id", "status", "created_at"),
        Index("ix_patient_queues_org_position", "organization_id", "position"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    appointment_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("organizations.id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    estimated_wait_time: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minutes
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="waiting")

    appointment: Mapped["Appointment"] = relationship()
