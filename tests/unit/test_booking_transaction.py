"""
Unit tests for booking_transaction.py - commit-then-project orchestration.

Runs the real orchestrator against the in-memory repository and a real
CalendarSyncAdapter whose googleapiclient service is mocked.

Tests coverage:
- Staff and public creation, overlap rejection, buffers, working hours
- Calendar failures after commit: warning outcome, sync-pending flag
- Approval re-validation (two overlapping requests)
- Cancellation always attempts deletion; missing events still cancel
- Reschedule: event update, re-create when gone, conflicts
- Compare-and-set retries
- Resync of pending appointments
"""

import asyncio
import threading
from datetime import date, datetime
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import httplib2
import pytest
from googleapiclient.errors import HttpError

from booking.errors import (
    AuthRequired,
    InvalidTransition,
    NotFound,
    SlotConflict,
    StaleWrite,
    ValidationError,
)
from booking.outcomes import CollectingNotificationSink, OutcomeLevel
from booking.schemas import (
    AppointmentChanges,
    AppointmentRecord,
    AppointmentRequest,
    BookingChannel,
    TenantContext,
)
from booking.services.calendar_session import CalendarSessionRegistry
from booking.services.calendar_sync_service import CalendarAdapterFactory
from booking.transactions import BookingTransaction
from database.models import AppointmentStatus, StaffRole

S = AppointmentStatus


def http_error(status: int) -> HttpError:
    return HttpError(resp=httplib2.Response({"status": str(status)}), content=b'{"error": {"message": "x"}}')


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def staff(tenant):
    return TenantContext(tenant_id=tenant.id, role=StaffRole.RECEPTIONIST, user_id="user-1")


@pytest.fixture
def public(tenant):
    return TenantContext(tenant_id=tenant.id, channel=BookingChannel.PUBLIC)


@pytest.fixture
def adapter_factory(repository, links, service_factory):
    return CalendarAdapterFactory(repository, links, CalendarSessionRegistry(), service_factory=service_factory)


@pytest.fixture
def sink():
    return CollectingNotificationSink()


@pytest.fixture
def transaction(repository, adapter_factory, sink):
    return BookingTransaction(repository, adapter_factory, sink=sink)


@pytest.fixture
def events(google_service):
    """Shortcut to the mocked events() resource."""
    return google_service.events.return_value


@pytest.fixture
def request_at(customer, professional, service):
    def build(start, end=None, professional_id=None, service_id=None) -> AppointmentRequest:
        return AppointmentRequest(
            customer_id=customer.id,
            professional_id=professional_id or professional.id,
            service_id=service_id or service.id,
            start_time=start,
            end_time=end,
        )
    return build


# ============================================================================
# Create
# ============================================================================


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_staff_booking_is_confirmed_and_mirrored(
        self, transaction, staff, request_at, at, links, valid_link, events, repository
    ):
        await links.save_link(valid_link)

        result = await transaction.create_appointment(staff, request_at(at(10)))

        appointment = result.appointment
        assert appointment.status == S.CONFIRMED
        assert appointment.end_time == at(10, 30)
        assert appointment.external_event_id == "gcal_evt_1"
        assert appointment.calendar_sync_pending is False
        assert [o.code for o in result.outcomes] == ["APPOINTMENT_CREATED"]
        assert result.warnings == []
        events.insert.assert_called_once()
        assert repository.appointments[appointment.id].external_event_id == "gcal_evt_1"

    @pytest.mark.asyncio
    async def test_without_calendar_link_nothing_is_projected(self, transaction, staff, request_at, at, events):
        result = await transaction.create_appointment(staff, request_at(at(10)))

        assert result.appointment.external_event_id is None
        assert result.appointment.calendar_sync_pending is False
        assert result.warnings == []
        events.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_overlap_scenario(self, transaction, staff, request_at, at):
        await transaction.create_appointment(staff, request_at(at(10)))

        with pytest.raises(SlotConflict) as exc_info:
            await transaction.create_appointment(staff, request_at(at(10, 15)))
        assert exc_info.value.error_code == "SLOT_TAKEN"

        result = await transaction.create_appointment(staff, request_at(at(10, 30)))
        assert result.appointment.start_time == at(10, 30)
        assert result.appointment.end_time == at(11)

    @pytest.mark.asyncio
    async def test_other_professional_is_independent(
        self, transaction, staff, request_at, at, other_professional
    ):
        await transaction.create_appointment(staff, request_at(at(10)))
        result = await transaction.create_appointment(
            staff, request_at(at(10), professional_id=other_professional.id)
        )
        assert result.appointment.professional_id == other_professional.id

    @pytest.mark.asyncio
    async def test_buffer_blocks_following_slot(self, transaction, staff, request_at, at, buffered_service):
        result = await transaction.create_appointment(
            staff, request_at(at(10), service_id=buffered_service.id)
        )
        assert result.appointment.end_time == at(10, 45)
        assert result.appointment.occupied_until == at(11)

        with pytest.raises(SlotConflict):
            await transaction.create_appointment(staff, request_at(at(10, 45)))
        await transaction.create_appointment(staff, request_at(at(11)))

    @pytest.mark.asyncio
    async def test_explicit_end_time(self, transaction, staff, request_at, at):
        result = await transaction.create_appointment(staff, request_at(at(14), at(15)))
        assert result.appointment.end_time == at(15)

    @pytest.mark.asyncio
    async def test_end_before_start_rejected(self, transaction, staff, request_at, at, repository):
        with pytest.raises(ValidationError) as exc_info:
            await transaction.create_appointment(staff, request_at(at(14), at(13)))
        assert exc_info.value.error_code == "INVALID_INTERVAL"
        assert repository.appointments == {}

    @pytest.mark.asyncio
    async def test_naive_datetime_rejected(self, transaction, staff, request_at):
        with pytest.raises(ValidationError) as exc_info:
            await transaction.create_appointment(staff, request_at(datetime(2025, 3, 10, 10, 0)))
        assert exc_info.value.error_code == "NAIVE_DATETIME"

    @pytest.mark.asyncio
    async def test_unknown_customer(self, transaction, staff, request_at, at):
        request = request_at(at(10)).model_copy(update={"customer_id": uuid4()})
        with pytest.raises(NotFound):
            await transaction.create_appointment(staff, request)

    @pytest.mark.asyncio
    async def test_inactive_professional(self, transaction, staff, request_at, at, repository, professional):
        repository.professionals[professional.id] = professional.model_copy(update={"active": False})
        with pytest.raises(ValidationError) as exc_info:
            await transaction.create_appointment(staff, request_at(at(10)))
        assert exc_info.value.error_code == "PROFESSIONAL_INACTIVE"

    @pytest.mark.asyncio
    async def test_round_trip(self, transaction, staff, request_at, at, repository):
        created = (await transaction.create_appointment(staff, request_at(at(16)))).appointment

        read_back = await repository.get_appointment(created.tenant_id, created.id)

        assert read_back == created
        assert AppointmentRecord.model_validate(read_back.model_dump(mode="json")) == created

    @pytest.mark.asyncio
    async def test_outcomes_reach_the_sink(self, transaction, staff, request_at, at, sink):
        result = await transaction.create_appointment(staff, request_at(at(10)))
        assert sink.outcomes == result.outcomes


class TestCalendarFailureAfterCommit:
    @pytest.mark.asyncio
    async def test_expired_token_keeps_booking_with_warning(
        self, transaction, staff, request_at, at, links, expired_link, repository, events
    ):
        await links.save_link(expired_link)

        result = await transaction.create_appointment(staff, request_at(at(10)))

        appointment = result.appointment
        assert appointment.status == S.CONFIRMED
        assert appointment.external_event_id is None
        assert appointment.calendar_sync_pending is True
        assert [w.code for w in result.warnings] == ["CALENDAR_SYNC_FAILED"]
        assert result.warnings[0].level == OutcomeLevel.WARNING
        assert "reconecte" in result.warnings[0].message.lower()
        assert repository.appointments[appointment.id].calendar_sync_pending is True
        events.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_outage_keeps_booking_with_warning(
        self, transaction, staff, request_at, at, links, valid_link, events
    ):
        await links.save_link(valid_link)
        events.insert.return_value.execute.side_effect = http_error(503)

        result = await transaction.create_appointment(staff, request_at(at(10)))

        assert result.appointment.status == S.CONFIRMED
        assert result.appointment.calendar_sync_pending is True
        assert [w.code for w in result.warnings] == ["CALENDAR_SYNC_FAILED"]


# ============================================================================
# Public bookings and approval
# ============================================================================


class TestPublicBooking:
    @pytest.mark.asyncio
    async def test_public_booking_is_requested_and_not_mirrored(
        self, transaction, public, request_at, at, links, valid_link, events
    ):
        await links.save_link(valid_link)

        result = await transaction.create_appointment(public, request_at(at(10)))

        assert result.appointment.status == S.REQUESTED
        assert result.appointment.external_event_id is None
        events.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_public_booking_outside_working_hours(self, transaction, public, request_at, at):
        with pytest.raises(ValidationError) as exc_info:
            await transaction.create_appointment(public, request_at(at(17, 45)))
        assert exc_info.value.error_code == "OUTSIDE_WORKING_HOURS"

    @pytest.mark.asyncio
    async def test_public_booking_on_closed_day(self, transaction, public, request_at, at):
        with pytest.raises(ValidationError):
            await transaction.create_appointment(public, request_at(at(10, day=date(2025, 3, 16))))

    @pytest.mark.asyncio
    async def test_requested_does_not_block_capacity(self, transaction, public, staff, request_at, at):
        await transaction.create_appointment(public, request_at(at(10)))
        result = await transaction.create_appointment(staff, request_at(at(10)))
        assert result.appointment.status == S.CONFIRMED

    @pytest.mark.asyncio
    async def test_second_overlapping_approval_fails(
        self, transaction, public, request_at, at, tenant, repository, links, valid_link, events
    ):
        await links.save_link(valid_link)
        first = (await transaction.create_appointment(public, request_at(at(10)))).appointment
        second = (await transaction.create_appointment(public, request_at(at(10, 15)))).appointment

        approved = await transaction.set_status(tenant.id, first.id, S.CONFIRMED)
        assert approved.appointment.status == S.CONFIRMED
        assert approved.appointment.external_event_id == "gcal_evt_1"

        with pytest.raises(SlotConflict):
            await transaction.set_status(tenant.id, second.id, S.CONFIRMED)
        assert repository.appointments[second.id].status == S.REQUESTED
        events.insert.assert_called_once()


# ============================================================================
# Status changes
# ============================================================================


class TestSetStatus:
    @pytest.mark.asyncio
    async def test_cancel_deletes_event_in_background(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events, repository
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment

        result = await transaction.set_status(tenant.id, created.id, S.CANCELLED)
        assert result.appointment.status == S.CANCELLED
        await transaction.drain()

        events.delete.assert_called_once_with(calendarId="primary", eventId="gcal_evt_1")
        stored = repository.appointments[created.id]
        assert stored.external_event_id is None
        assert stored.calendar_sync_pending is False

    @pytest.mark.asyncio
    async def test_cancel_with_event_already_gone(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events, repository
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        events.delete.return_value.execute.side_effect = http_error(404)

        result = await transaction.set_status(tenant.id, created.id, S.CANCELLED)
        await transaction.drain()

        assert result.appointment.status == S.CANCELLED
        assert repository.appointments[created.id].status == S.CANCELLED
        assert repository.appointments[created.id].external_event_id is None
        events.delete.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_delete_is_marked_pending(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events, repository
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        events.delete.return_value.execute.side_effect = http_error(500)

        await transaction.set_status(tenant.id, created.id, S.NO_SHOW)
        await transaction.drain()

        stored = repository.appointments[created.id]
        assert stored.status == S.NO_SHOW
        assert stored.external_event_id == "gcal_evt_1"
        assert stored.calendar_sync_pending is True

    @pytest.mark.asyncio
    async def test_cancel_while_event_is_being_created(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events, repository
    ):
        await links.save_link(valid_link)
        insert_started, release_insert = threading.Event(), threading.Event()

        def slow_insert():
            insert_started.set()
            release_insert.wait(timeout=5)
            return {"id": "gcal_evt_1"}

        events.insert.return_value.execute.side_effect = slow_insert
        creating = asyncio.create_task(transaction.create_appointment(staff, request_at(at(10))))
        while not insert_started.is_set():
            await asyncio.sleep(0.01)

        # Row is committed, the event id is not recorded yet
        (appointment_id,) = repository.appointments
        await transaction.set_status(tenant.id, appointment_id, S.CANCELLED)
        events.delete.assert_not_called()

        release_insert.set()
        await creating
        await transaction.drain()

        stored = repository.appointments[appointment_id]
        assert stored.status == S.CANCELLED
        assert stored.external_event_id is None
        assert stored.calendar_sync_pending is False
        events.delete.assert_called_once_with(calendarId="primary", eventId="gcal_evt_1")

    @pytest.mark.asyncio
    async def test_cancel_frees_the_slot(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        await transaction.set_status(tenant.id, created.id, S.CANCELLED)

        result = await transaction.create_appointment(staff, request_at(at(10)))
        assert result.appointment.status == S.CONFIRMED

    @pytest.mark.asyncio
    async def test_full_service_lifecycle(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        for status in (S.WAITING, S.IN_PROGRESS, S.FINISHED):
            result = await transaction.set_status(tenant.id, created.id, status)
            assert result.appointment.status == status

        with pytest.raises(InvalidTransition):
            await transaction.set_status(tenant.id, created.id, S.CONFIRMED)

    @pytest.mark.asyncio
    async def test_unknown_appointment(self, transaction, tenant):
        with pytest.raises(NotFound):
            await transaction.set_status(tenant.id, uuid4(), S.CANCELLED)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_touch_appointment(self, transaction, staff, request_at, at):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        with pytest.raises(NotFound):
            await transaction.set_status(uuid4(), created.id, S.CANCELLED)


# ============================================================================
# Update
# ============================================================================


class TestUpdateAppointment:
    @pytest.mark.asyncio
    async def test_reschedule_moves_event(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment

        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(start_time=at(15))
        )

        assert result.appointment.start_time == at(15)
        assert result.appointment.end_time == at(15, 30)
        assert result.appointment.external_event_id == "gcal_evt_1"
        patch_call = events.patch.call_args
        assert patch_call.kwargs["eventId"] == "gcal_evt_1"
        assert patch_call.kwargs["body"]["start"]["dateTime"] == at(15).isoformat()

    @pytest.mark.asyncio
    async def test_reschedule_recreates_missing_event(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        events.patch.return_value.execute.side_effect = http_error(404)
        events.insert.return_value.execute.return_value = {"id": "gcal_evt_new"}

        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(start_time=at(11))
        )

        assert result.appointment.external_event_id == "gcal_evt_new"
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_reschedule_onto_taken_slot(self, transaction, staff, request_at, at, tenant, repository):
        await transaction.create_appointment(staff, request_at(at(11)))
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment

        with pytest.raises(SlotConflict):
            await transaction.update_appointment(
                tenant.id, created.id, AppointmentChanges(start_time=at(11, 15))
            )
        assert repository.appointments[created.id].start_time == at(10)

    @pytest.mark.asyncio
    async def test_reschedule_may_overlap_itself(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(start_time=at(10, 15))
        )
        assert result.appointment.start_time == at(10, 15)

    @pytest.mark.asyncio
    async def test_change_professional(self, transaction, staff, request_at, at, tenant, other_professional):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(professional_id=other_professional.id)
        )
        assert result.appointment.professional_id == other_professional.id
        assert result.appointment.start_time == at(10)

    @pytest.mark.asyncio
    async def test_change_service_uses_its_duration(
        self, transaction, staff, request_at, at, tenant, buffered_service
    ):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(service_id=buffered_service.id)
        )
        assert result.appointment.end_time == at(10, 45)
        assert result.appointment.occupied_until == at(11)

    @pytest.mark.asyncio
    async def test_edit_notes_while_in_progress(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        await transaction.set_status(tenant.id, created.id, S.WAITING)
        await transaction.set_status(tenant.id, created.id, S.IN_PROGRESS)

        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(notes="Pediu máquina 2")
        )
        assert result.appointment.notes == "Pediu máquina 2"

    @pytest.mark.asyncio
    async def test_edit_notes_updates_event_description(
        self, transaction, staff, request_at, at, tenant, links, valid_link, events
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment

        result = await transaction.update_appointment(
            tenant.id, created.id, AppointmentChanges(notes="Pediu máquina 2")
        )

        assert result.warnings == []
        patch_call = events.patch.call_args
        assert patch_call.kwargs["eventId"] == "gcal_evt_1"
        assert "Observações: Pediu máquina 2" in patch_call.kwargs["body"]["description"]

    @pytest.mark.asyncio
    async def test_edit_notes_on_request_is_not_projected(
        self, transaction, public, request_at, at, tenant, links, valid_link, events
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(public, request_at(at(10)))).appointment

        await transaction.update_appointment(tenant.id, created.id, AppointmentChanges(notes="Sem pressa"))

        events.patch.assert_not_called()
        events.insert.assert_not_called()

    @pytest.mark.asyncio
    async def test_reschedule_in_progress_rejected(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        await transaction.set_status(tenant.id, created.id, S.WAITING)

        with pytest.raises(InvalidTransition):
            await transaction.update_appointment(tenant.id, created.id, AppointmentChanges(start_time=at(12)))

    @pytest.mark.asyncio
    async def test_closed_appointment_cannot_be_edited(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        await transaction.set_status(tenant.id, created.id, S.CANCELLED)

        with pytest.raises(InvalidTransition):
            await transaction.update_appointment(tenant.id, created.id, AppointmentChanges(notes="x"))


# ============================================================================
# Compare-and-set retries
# ============================================================================


class TestConcurrentWriters:
    @pytest.mark.asyncio
    async def test_stale_write_is_retried(self, transaction, staff, request_at, at, tenant, repository):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        real_update = repository.compare_and_update
        calls = {"n": 0}

        async def flaky(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StaleWrite("changed")
            return await real_update(*args, **kwargs)

        with patch.object(repository, "compare_and_update", side_effect=flaky):
            result = await transaction.set_status(tenant.id, created.id, S.WAITING)

        assert result.appointment.status == S.WAITING
        assert calls["n"] == 2

    @pytest.mark.asyncio
    async def test_stale_write_gives_up(self, transaction, staff, request_at, at, tenant, repository):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment

        with patch.object(repository, "compare_and_update", AsyncMock(side_effect=StaleWrite("changed"))) as cas:
            with pytest.raises(StaleWrite) as exc_info:
                await transaction.update_appointment(
                    tenant.id, created.id, AppointmentChanges(start_time=at(11))
                )

        assert exc_info.value.details["attempts"] == 3
        assert cas.await_count == 3


# ============================================================================
# Resync
# ============================================================================


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_pending_appointment(
        self, transaction, staff, request_at, at, tenant, links, expired_link, valid_link, repository
    ):
        await links.save_link(expired_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        assert repository.appointments[created.id].calendar_sync_pending is True

        # Staff reconnects
        await links.save_link(valid_link)
        result = await transaction.resync_appointment(tenant.id, created.id)

        assert result.appointment.external_event_id == "gcal_evt_1"
        assert result.appointment.calendar_sync_pending is False
        assert [o.code for o in result.outcomes] == ["CALENDAR_SYNCED"]

    @pytest.mark.asyncio
    async def test_resync_without_link(self, transaction, staff, request_at, at, tenant):
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        with pytest.raises(AuthRequired):
            await transaction.resync_appointment(tenant.id, created.id)

    @pytest.mark.asyncio
    async def test_resync_cancelled_removes_leftover_event(
        self, transaction, staff, request_at, at, tenant, links, valid_link, repository, events
    ):
        await links.save_link(valid_link)
        created = (await transaction.create_appointment(staff, request_at(at(10)))).appointment
        events.delete.return_value.execute.side_effect = http_error(500)
        await transaction.set_status(tenant.id, created.id, S.CANCELLED)
        await transaction.drain()

        events.delete.return_value.execute.side_effect = None
        result = await transaction.resync_appointment(tenant.id, created.id)

        assert result.appointment.external_event_id is None
        assert result.appointment.calendar_sync_pending is False
