"""
Unit tests for database/repository.py - SQLAlchemy scheduling repository.

The AsyncSession is mocked; these tests check the order and shape of the
statements issued by the conditional writes and the error mapping, not
PostgreSQL itself.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql

from booking.errors import NotFound, SlotConflict, StaleWrite
from booking.schemas import AppointmentRecord
from database.models import Appointment, AppointmentStatus
from database.repository import SqlSchedulingRepository, validate_changes

# ============================================================================
# Fixtures
# ============================================================================


def scalars_result(*values):
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(values)
    return result


def scalar_result(value):
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar_one.return_value = value
    return result


def compiled(statement) -> str:
    return str(statement.compile(dialect=postgresql.dialect()))


@pytest.fixture
def session():
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def sql_repository(session):
    @asynccontextmanager
    async def session_factory():
        yield session
    return SqlSchedulingRepository(session_factory=session_factory)


@pytest.fixture
def new_appointment(tenant, professional, service, customer, at):
    return AppointmentRecord(
        id=uuid4(),
        tenant_id=tenant.id,
        customer_id=customer.id,
        professional_id=professional.id,
        service_id=service.id,
        start_time=at(10),
        end_time=at(10, 30),
        occupied_until=at(10, 30),
        status=AppointmentStatus.CONFIRMED,
        created_at=datetime.now(UTC),
    )


# ============================================================================
# insert_if_free
# ============================================================================


class TestInsertIfFree:
    @pytest.mark.asyncio
    async def test_inserts_when_free(self, sql_repository, session, new_appointment, professional):
        session.execute.side_effect = [scalars_result(professional.id), scalars_result()]

        record = await sql_repository.insert_if_free(new_appointment)

        assert record == new_appointment
        row = session.add.call_args.args[0]
        assert isinstance(row, Appointment)
        session.commit.assert_awaited_once()

        lock_sql = compiled(session.execute.call_args_list[0].args[0])
        assert "FOR UPDATE" in lock_sql
        assert "professionals" in lock_sql

        overlap_sql = compiled(session.execute.call_args_list[1].args[0])
        assert "appointments.start_time <" in overlap_sql
        assert "appointments.occupied_until >" in overlap_sql

    @pytest.mark.asyncio
    async def test_conflict_writes_nothing(self, sql_repository, session, new_appointment, professional):
        taken = uuid4()
        session.execute.side_effect = [scalars_result(professional.id), scalars_result(taken)]

        with pytest.raises(SlotConflict) as exc_info:
            await sql_repository.insert_if_free(new_appointment)

        assert exc_info.value.details["conflicting_appointment_ids"] == [str(taken)]
        session.add.assert_not_called()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_professional(self, sql_repository, session, new_appointment):
        session.execute.side_effect = [scalars_result()]

        with pytest.raises(NotFound):
            await sql_repository.insert_if_free(new_appointment)
        session.add.assert_not_called()


# ============================================================================
# compare_and_update
# ============================================================================


class TestCompareAndUpdate:
    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, sql_repository, session, tenant):
        with pytest.raises(ValueError):
            await sql_repository.compare_and_update(
                tenant.id, uuid4(), AppointmentStatus.CONFIRMED, {"tenant_id": uuid4()}, check_overlap=False
            )
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_appointment(self, sql_repository, session, tenant):
        session.execute.side_effect = [scalar_result(None)]
        with pytest.raises(NotFound):
            await sql_repository.compare_and_update(
                tenant.id, uuid4(), AppointmentStatus.CONFIRMED, {"status": AppointmentStatus.WAITING}, False
            )

    @pytest.mark.asyncio
    async def test_status_changed_underneath(self, sql_repository, session, tenant, professional):
        seen = SimpleNamespace(professional_id=professional.id, status=AppointmentStatus.CONFIRMED)
        locked = SimpleNamespace(professional_id=professional.id, status=AppointmentStatus.CANCELLED)
        session.execute.side_effect = [
            scalar_result(seen),
            scalars_result(professional.id),
            scalar_result(locked),
        ]

        with pytest.raises(StaleWrite) as exc_info:
            await sql_repository.compare_and_update(
                tenant.id, uuid4(), AppointmentStatus.CONFIRMED, {"status": AppointmentStatus.WAITING}, False
            )

        assert exc_info.value.details["actual_status"] == "cancelled"
        session.commit.assert_not_awaited()
        reselect_sql = compiled(session.execute.call_args_list[2].args[0])
        assert "FOR UPDATE" in reselect_sql

    @pytest.mark.asyncio
    async def test_moving_between_professionals_locks_both(
        self, sql_repository, session, tenant, professional, other_professional
    ):
        seen = SimpleNamespace(professional_id=professional.id, status=AppointmentStatus.CONFIRMED)
        session.execute.side_effect = [scalar_result(seen), scalars_result(professional.id)]

        # other_professional missing from the lock result
        with pytest.raises(NotFound) as exc_info:
            await sql_repository.compare_and_update(
                tenant.id,
                uuid4(),
                AppointmentStatus.CONFIRMED,
                {"professional_id": other_professional.id},
                check_overlap=True,
            )

        assert exc_info.value.details["professional_id"] == str(other_professional.id)


class TestReads:
    @pytest.mark.asyncio
    async def test_get_tenant_not_found(self, sql_repository, session):
        session.get.return_value = None
        with pytest.raises(NotFound):
            await sql_repository.get_tenant(uuid4())

    @pytest.mark.asyncio
    async def test_working_day_absent(self, sql_repository, session, tenant):
        session.execute.return_value = scalar_result(None)
        assert await sql_repository.get_working_day(tenant.id, 6) is None


# ============================================================================
# Calendar bookkeeping
# ============================================================================


class TestCalendarBookkeeping:
    @pytest.mark.asyncio
    async def test_set_external_event_returns_locked_status(self, sql_repository, session, new_appointment):
        # Cancelled by another request after the caller last read it
        row = SimpleNamespace(**new_appointment.model_dump(exclude={"external_event_id", "calendar_sync_pending"}))
        row.status = AppointmentStatus.CANCELLED
        session.execute.side_effect = [scalar_result(row)]

        record = await sql_repository.set_external_event(
            new_appointment.tenant_id, new_appointment.id, "gcal_evt_1", sync_pending=False
        )

        assert record.status == AppointmentStatus.CANCELLED
        assert record.external_event_id == "gcal_evt_1"
        assert "FOR UPDATE" in compiled(session.execute.call_args.args[0])
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sync_pending_is_ranked_per_linked_tenant(self, sql_repository, session):
        session.execute.return_value = scalars_result()

        assert await sql_repository.list_sync_pending(50) == []

        sql = compiled(session.execute.call_args.args[0])
        assert "row_number() OVER (PARTITION BY appointments.tenant_id" in sql
        assert "JOIN calendar_links ON calendar_links.tenant_id = appointments.tenant_id" in sql
        assert "tenants.google_client_id" in sql
        assert "LIMIT" in sql


def test_validate_changes_accepts_mutable_fields():
    validate_changes({"status": AppointmentStatus.CANCELLED, "notes": "x", "calendar_sync_pending": True})
