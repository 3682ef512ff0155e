"""Initial schema — organizations, users, appointments, patient_queues.

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00.000000 UTC

Creates the four tables the queue service needs:
  - organizations   (tenants; queue partition key)
  - users           (staff, doctors and patients)
  - appointments    (what a queue entry is admitted for)
  - patient_queues  (one row per queue slot)

The partial unique index on patient_queues.appointment_id keeps at most one
non-terminal entry per appointment.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Revision identifiers ──────────────────────────────────────────────────────
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

_ACTIVE_ROWS = sa.text("status IN ('waiting', 'called', 'in_progress')")


def _audit_columns() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    # ── organizations ─────────────────────────────────────────────────────────
    op.create_table(
        "organizations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        *_audit_columns(),
    )

    # ── users ─────────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.String(36), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("role", sa.String(50), nullable=False, server_default="patient"),
        *_audit_columns(),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            name="fk_users_organization_id",
            ondelete="SET NULL",
        ),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_organization_id", "users", ["organization_id"], unique=False)

    # ── appointments ──────────────────────────────────────────────────────────
    op.create_table(
        "appointments",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("organization_id", sa.String(36), nullable=False),
        sa.Column("patient_id", sa.String(36), nullable=False),
        sa.Column("doctor_id", sa.String(36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=True),
        sa.Column("type", sa.String(50), nullable=False, server_default="consultation"),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        *_audit_columns(),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], name="fk_appointments_organization_id"
        ),
        sa.ForeignKeyConstraint(["patient_id"], ["users.id"], name="fk_appointments_patient_id"),
        sa.ForeignKeyConstraint(["doctor_id"], ["users.id"], name="fk_appointments_doctor_id"),
    )
    op.create_index(
        "ix_appointments_organization_id", "appointments", ["organization_id"], unique=False
    )
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"], unique=False)
    op.create_index("ix_appointments_date", "appointments", ["date"], unique=False)

    # ── patient_queues ────────────────────────────────────────────────────────
    op.create_table(
        "patient_queues",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("appointment_id", sa.String(36), nullable=False),
        sa.Column("organization_id", sa.String(36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("estimated_wait_time", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="waiting"),
        *_audit_columns(),
        sa.ForeignKeyConstraint(
            ["appointment_id"],
            ["appointments.id"],
            name="fk_patient_queues_appointment_id",
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(
            ["organization_id"], ["organizations.id"], name="fk_patient_queues_organization_id"
        ),
    )
    op.create_index(
        "uq_patient_queues_active_appointment",
        "patient_queues",
        ["appointment_id"],
        unique=True,
        postgresql_where=_ACTIVE_ROWS,
        sqlite_where=_ACTIVE_ROWS,
    )
    op.create_index(
        "ix_patient_queues_org_status_created",
        "patient_queues",
        ["organization_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_patient_queues_org_position",
        "patient_queues",
        ["organization_id", "position"],
        unique=False,
    )


def downgrade() -> None:
    # Drop in reverse dependency order
    op.drop_table("patient_queues")
    op.drop_table("appointments")
    op.drop_table("users")
    op.drop_table("organizations")
