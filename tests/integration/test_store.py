"""
tests/integration/test_store.py — QueueStore against a real SQLite database.
"""
from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from medqueue.queue.domain import QueueEntry, QueueStatus
from medqueue.queue.errors import ConflictError, NotFoundError, StoreIOError
from medqueue.queue.store import QueueStore, _admission_error

ORG = "org-store"


def _entry(appointment_id: str, position: int, organization_id: str = ORG, **kw) -> QueueEntry:
    return QueueEntry(
        appointment_id=appointment_id,
        organization_id=organization_id,
        position=position,
        estimated_wait_time=position * 15,
        **kw,
    )


async def _create_in_order(store: QueueStore, *entries: QueueEntry) -> list[QueueEntry]:
    created = []
    for e in entries:
        created.append(await store.create(e))
        await asyncio.sleep(0.001)  # distinct created_at stamps
    return created


class TestCrud:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        created = await store.create(_entry("a1", 1))
        fetched = await store.get_by_id(created.id)
        assert fetched.appointment_id == "a1"
        assert fetched.status == QueueStatus.WAITING
        assert fetched.created_at is not None

    @pytest.mark.asyncio
    async def test_duplicate_active_entry_for_appointment_conflicts(self, store):
        await store.create(_entry("a1", 1))
        with pytest.raises(ConflictError):
            await store.create(_entry("a1", 2))
        assert await store.count_by_organization(ORG) == 1

    @pytest.mark.asyncio
    async def test_terminal_entry_does_not_block_a_new_one(self, store):
        first = await store.create(_entry("a1", 1))
        await store.update(first.with_status(QueueStatus.CANCELLED))
        again = await store.create(_entry("a1", 1))
        assert again.id != first.id

    @pytest.mark.asyncio
    async def test_get_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.get_by_id("nope")

    @pytest.mark.asyncio
    async def test_get_by_appointment_ignores_terminal_entries(self, store):
        entry = await store.create(_entry("a1", 1))
        assert (await store.get_by_appointment("a1")).id == entry.id
        await store.update(entry.with_status(QueueStatus.COMPLETED))
        assert await store.get_by_appointment("a1") is None

    @pytest.mark.asyncio
    async def test_update_overwrites_and_bumps_updated_at(self, store):
        entry = await store.create(_entry("a1", 1))
        updated = await store.update(entry.with_status(QueueStatus.CALLED))
        assert updated.status == QueueStatus.CALLED
        assert updated.updated_at >= entry.updated_at

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            await store.update(_entry("a1", 1))

    @pytest.mark.asyncio
    async def test_delete(self, store):
        entry = await store.create(_entry("a1", 1))
        await store.delete(entry.id)
        with pytest.raises(NotFoundError):
            await store.get_by_id(entry.id)
        with pytest.raises(NotFoundError):
            await store.delete(entry.id)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_get_by_organization_is_position_ordered_and_paged(self, store):
        await _create_in_order(store, _entry("a3", 3), _entry("a1", 1), _entry("a2", 2))
        await store.create(_entry("other", 1, organization_id="org-other"))

        page = await store.get_by_organization(ORG, limit=2, offset=0)
        assert [e.position for e in page] == [1, 2]
        rest = await store.get_by_organization(ORG, limit=2, offset=2)
        assert [e.appointment_id for e in rest] == ["a3"]

    @pytest.mark.asyncio
    async def test_get_next_waiting_is_the_tail(self, store):
        await _create_in_order(store, _entry("a1", 1), _entry("a2", 2), _entry("a3", 3))
        tail = await store.get_next_waiting(ORG)
        assert tail.appointment_id == "a3"

    @pytest.mark.asyncio
    async def test_get_longest_waiting_uses_created_at(self, store):
        # Position says a2 is first, arrival order says a1
        await _create_in_order(store, _entry("a1", 5), _entry("a2", 1))
        first = await store.get_longest_waiting(ORG)
        assert first.appointment_id == "a1"

    @pytest.mark.asyncio
    async def test_lookups_on_empty_organization(self, store):
        assert await store.get_next_waiting(ORG) is None
        assert await store.get_longest_waiting(ORG) is None
        assert await store.get_max_active_position(ORG) == 0

    @pytest.mark.asyncio
    async def test_max_active_position_ignores_terminal_entries(self, store):
        a1, a2 = await _create_in_order(store, _entry("a1", 1), _entry("a2", 2))
        await store.update(a2.with_status(QueueStatus.COMPLETED))
        assert await store.get_max_active_position(ORG) == 1


class TestRenumberWaiting:
    @pytest.mark.asyncio
    async def test_waiting_positions_become_dense(self, store):
        await _create_in_order(store, _entry("a1", 4), _entry("a2", 9), _entry("a3", 9))

        renumbered = await store.renumber_waiting(ORG, 15)

        entries = await store.get_by_organization(ORG, limit=10)
        assert renumbered == 3
        assert [(e.appointment_id, e.position, e.estimated_wait_time) for e in entries] == [
            ("a1", 1, 15),
            ("a2", 2, 30),
            ("a3", 3, 45),
        ]

    @pytest.mark.asyncio
    async def test_serving_entries_follow_the_waiting_line(self, store):
        a1, a2, a3 = await _create_in_order(
            store, _entry("a1", 1), _entry("a2", 2), _entry("a3", 3)
        )
        await store.update(a1.with_status(QueueStatus.IN_PROGRESS))
        await store.update(a2.with_status(QueueStatus.CANCELLED))

        await store.renumber_waiting(ORG, 15)

        assert (await store.get_by_id(a3.id)).position == 1
        assert (await store.get_by_id(a1.id)).position == 2
        assert (await store.get_by_id(a2.id)).position == 2  # terminal rows are left alone

    @pytest.mark.asyncio
    async def test_other_organizations_are_untouched(self, store):
        await store.create(_entry("a1", 7))
        other = await store.create(_entry("b1", 7, organization_id="org-other"))
        await store.renumber_waiting(ORG, 15)
        assert (await store.get_by_id(other.id)).position == 7

    @pytest.mark.asyncio
    async def test_empty_organization(self, store):
        assert await store.renumber_waiting(ORG, 15) == 0


class TestStats:
    @pytest.mark.asyncio
    async def test_counts_by_status_and_average_wait(self, store):
        a1, a2, a3, a4 = await _create_in_order(
            store, _entry("a1", 1), _entry("a2", 2), _entry("a3", 3), _entry("a4", 4)
        )
        await store.update(a1.with_status(QueueStatus.IN_PROGRESS))
        await store.update(a2.with_status(QueueStatus.CALLED))

        stats = await store.get_stats(ORG)

        assert stats.total == 4
        assert stats.waiting == 2
        assert stats.called == 1
        assert stats.in_progress == 1
        assert stats.average_wait_minutes == pytest.approx((45 + 60) / 2)

    @pytest.mark.asyncio
    async def test_empty_organization(self, store):
        stats = await store.get_stats(ORG)
        assert (stats.total, stats.waiting, stats.in_progress) == (0, 0, 0)
        assert stats.average_wait_minutes == 0.0


class TestForeignKeys:
    @pytest.mark.asyncio
    async def test_unknown_appointment_is_not_found(self, enforcing_store):
        with pytest.raises(NotFoundError, match="no-such-appointment") as excinfo:
            await enforcing_store.create(_entry("no-such-appointment", 1, organization_id="org-x"))
        assert isinstance(excinfo.value.__cause__, IntegrityError)
        assert await enforcing_store.count_by_organization("org-x") == 0

    @pytest.mark.asyncio
    async def test_unknown_organization_is_not_found(self, enforcing_store):
        with pytest.raises(NotFoundError, match="org-nowhere"):
            await enforcing_store.create(_entry("appt-today", 1, organization_id="org-nowhere"))

    @pytest.mark.asyncio
    async def test_known_appointment_still_conflicts_on_duplicate(self, enforcing_store):
        await enforcing_store.create(_entry("appt-today", 1, organization_id="org-x"))
        with pytest.raises(ConflictError):
            await enforcing_store.create(_entry("appt-today", 2, organization_id="org-x"))


class TestFailures:
    @pytest.mark.asyncio
    async def test_driver_errors_surface_as_store_io_error(self):
        session_factory = MagicMock(side_effect=OperationalError("SELECT 1", {}, Exception("gone")))
        store = QueueStore(session_factory)

        with pytest.raises(StoreIOError) as excinfo:
            await store.get_by_id("q1")
        assert isinstance(excinfo.value.__cause__, OperationalError)

    @pytest.mark.parametrize("driver_message,expected", [
        ('duplicate key value violates unique constraint "uq_patient_queues_active_appointment"', ConflictError),
        ("UNIQUE constraint failed: patient_queues.appointment_id", ConflictError),
        ('insert or update on table "patient_queues" violates foreign key constraint '
         '"fk_patient_queues_appointment_id"', NotFoundError),
        ("FOREIGN KEY constraint failed", NotFoundError),
        ('duplicate key value violates unique constraint "patient_queues_pkey"', StoreIOError),
        ("NOT NULL constraint failed: patient_queues.position", StoreIOError),
    ])
    def test_insert_failures_are_classified_by_constraint(self, driver_message, expected):
        exc = IntegrityError("INSERT INTO patient_queues", {}, Exception(driver_message))
        assert type(_admission_error(_entry("a1", 1), exc)) is expected
