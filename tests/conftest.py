"""
tests/conftest.py — Shared pytest fixtures for unit and integration tests.

Queue tests run against a throwaway SQLite file through aiosqlite; the
schema comes straight from the ORM metadata.
"""
from __future__ import annotations

import os

# Must be set before medqueue.config is first imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import datetime as dt
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from medqueue.db.models import Appointment, Base, Organization, User
from medqueue.queue.engine import QueueEngine
from medqueue.queue.events import EventBus
from medqueue.queue.locks import LocalLockTable
from medqueue.queue.read_model import QueueReadModel
from medqueue.queue.store import QueueStore

ORG_X = "org-x"
ORG_Y = "org-y"


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def enforcing_session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Like session_factory, but SQLite checks foreign keys the way Postgres does."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue-fk.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> QueueStore:
    return QueueStore(session_factory)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def queue_engine(store, event_bus) -> QueueEngine:
    return QueueEngine(store, LocalLockTable(), event_bus, minutes_per_position=15)


@pytest.fixture
def read_model(session_factory, store) -> QueueReadModel:
    return QueueReadModel(session_factory, store)


async def _seed_clinic(session_factory) -> dict:
    """One organization with a doctor, two patients and today's appointments."""
    today = dt.datetime.now(dt.timezone.utc).date()
    async with session_factory() as session, session.begin():
        session.add(Organization(id=ORG_X, name="Riverside Clinic"))
        session.add_all([
            User(id="doc-1", organization_id=ORG_X, name="Dr. Ada Osei", email="ada@example.com", role="doctor"),
            User(id="pat-1", organization_id=ORG_X, name="Sam Lee", email="sam@example.com", role="patient"),
            User(id="pat-2", organization_id=ORG_X, name="Kim Park", email="kim@example.com", role="patient"),
        ])
        await session.flush()
        session.add_all([
            Appointment(
                id="appt-today", organization_id=ORG_X, patient_id="pat-1", doctor_id="doc-1",
                date=today, start_time=dt.time(9, 30), type="consultation", status="confirmed",
            ),
            Appointment(
                id="appt-yesterday", organization_id=ORG_X, patient_id="pat-2", doctor_id="doc-1",
                date=today - dt.timedelta(days=1), start_time=dt.time(10, 0), type="follow_up",
                status="completed",
            ),
        ])
    return {"organization_id": ORG_X, "today": today}


@pytest_asyncio.fixture
async def clinic(session_factory) -> dict:
    return await _seed_clinic(session_factory)


@pytest_asyncio.fixture
async def enforcing_store(enforcing_session_factory) -> QueueStore:
    """Store over the foreign-key-enforcing database, seeded with the clinic."""
    await _seed_clinic(enforcing_session_factory)
    return QueueStore(enforcing_session_factory)
