"""
Booking Transaction - commit-then-project orchestration.

Every operation that changes an appointment follows the same sequence:

1. Validate the request and load references (ValidationError / NotFound)
2. Apply the appointment FSM (InvalidTransition)
3. Conditional write in the repository: committed-overlap check and write in
   one atomic unit (SlotConflict), compare-and-set on status. A concurrent
   writer (StaleWrite) triggers a bounded re-read-and-retry.
4. After the commit, project to Google Calendar when sync is active:
   - create/update are awaited with a bounded timeout; on failure the
     appointment stays committed, calendar_sync_pending is set and a
     warning outcome is returned
   - delete is dispatched as a tracked background task
   - an update whose event is gone re-creates it

The database is the source of truth. Calendar failures never roll back a
committed appointment and never surface as exceptions from create, update
or status changes.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID, uuid4

from booking.errors import (
    AuthRequired,
    CalendarEventNotFound,
    CalendarSyncError,
    InvalidTransition,
    StaleWrite,
)
from booking.fsm.appointment_fsm import AppointmentFSM, ProjectionKind
from booking.intervals import TimeInterval
from booking.outcomes import (
    BookingOutcome,
    BookingResult,
    LoggingNotificationSink,
    NotificationSink,
    OutcomeLevel,
    appointment_saved,
    calendar_sync_failed,
)
from booking.schemas import (
    AppointmentChanges,
    AppointmentRecord,
    AppointmentRequest,
    BookingChannel,
    TenantContext,
)
from booking.services.calendar_sync_service import CalendarSyncAdapter, EventDetails
from booking.validators.booking_validators import (
    load_booking_references,
    resolve_interval,
    validate_bookable,
    validate_within_working_hours,
)
from database.models import AppointmentStatus
from database.repository import SchedulingRepository
from shared.config import Settings, get_settings

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[UUID], Awaitable[Optional[CalendarSyncAdapter]]]

# Statuses whose event stays in the calendar / whose event must be removed
MIRRORED_STATUSES = frozenset({
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.WAITING,
    AppointmentStatus.IN_PROGRESS,
    AppointmentStatus.FINISHED,
})
REMOVED_STATUSES = frozenset({AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW})


class BookingTransaction:
    """
    Booking orchestrator.

    Args:
        repository: Scheduling repository (conditional writes)
        adapter_factory: async tenant_id -> CalendarSyncAdapter | None
            (None when the tenant has no active calendar sync)
        sink: Receives every outcome (defaults to the log)
        settings: Application settings

    Example:
        >>> result = await transaction.create_appointment(context, request)
        >>> result.appointment.status
        <AppointmentStatus.CONFIRMED: 'confirmed'>
        >>> [o.code for o in result.warnings]
        ['CALENDAR_SYNC_FAILED']  # when Google Calendar was unreachable
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        adapter_factory: Optional[AdapterFactory] = None,
        sink: Optional[NotificationSink] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository
        self._adapter_factory = adapter_factory
        self._sink = sink or LoggingNotificationSink()
        self._settings = settings or get_settings()
        self._background: set[asyncio.Task] = set()

    @property
    def _projection_timeout(self) -> float:
        # Session refresh and the provider call each get the request timeout
        return self._settings.GCAL_REQUEST_TIMEOUT_SECONDS * 2

    @property
    def pending_background_tasks(self) -> int:
        return len(self._background)

    # ========================================================================
    # Create
    # ========================================================================

    async def create_appointment(
        self,
        context: TenantContext,
        request: AppointmentRequest,
        channel: Optional[BookingChannel] = None,
    ) -> BookingResult:
        """
        Create an appointment.

        Staff channel creates at `confirmed` and mirrors it to the calendar.
        Public channel creates at `requested` (not mirrored until approved)
        and must fall inside working hours.

        Raises:
            ValidationError: malformed times, inactive professional/service,
                outside working hours (public)
            NotFound: customer, professional or service missing
            SlotConflict: overlaps a committed appointment of the professional
        """
        channel = channel or context.channel
        tenant_id = context.tenant_id
        trace_id = f"{tenant_id}_{request.professional_id}_{request.start_time.isoformat()}"
        logger.info(
            f"[{trace_id}] Starting appointment creation ({channel.value})",
            extra={"tenant_id": str(tenant_id), "professional_id": str(request.professional_id)},
        )

        await self._repository.get_customer(tenant_id, request.customer_id)
        interval, occupied_until = await self.validate_slot(
            context, request.professional_id, request.service_id, request.start_time, request.end_time, channel
        )

        status = (
            AppointmentStatus.REQUESTED if channel == BookingChannel.PUBLIC else AppointmentStatus.CONFIRMED
        )
        record = AppointmentRecord(
            id=uuid4(),
            tenant_id=tenant_id,
            customer_id=request.customer_id,
            professional_id=request.professional_id,
            service_id=request.service_id,
            start_time=interval.start,
            end_time=interval.end,
            occupied_until=occupied_until,
            status=status,
            notes=request.notes,
            created_at=datetime.now(UTC),
        )

        appointment = await self._repository.insert_if_free(record)
        logger.info(
            f"[{trace_id}] Appointment committed ({appointment.status.value})",
            extra={"tenant_id": str(tenant_id), "appointment_id": str(appointment.id)},
        )

        outcomes = [appointment_saved(created=True)]
        if appointment.status in MIRRORED_STATUSES:
            appointment = await self._project_upsert(appointment, trace_id, outcomes)
        return self._finish(appointment, outcomes)

    async def validate_slot(
        self,
        context: TenantContext,
        professional_id: UUID,
        service_id: UUID,
        start_time: datetime,
        end_time: Optional[datetime] = None,
        channel: Optional[BookingChannel] = None,
    ) -> tuple[TimeInterval, datetime]:
        """
        The checks of create_appointment that do not involve the customer.

        Lets the public page reject a booking before it registers the customer.
        Overlap is still checked only by the conditional write.

        Returns:
            The appointment interval and its occupied_until

        Raises:
            ValidationError, NotFound (professional or service)
        """
        channel = channel or context.channel
        tenant = await self._repository.get_tenant(context.tenant_id)
        professional = await self._repository.get_professional(context.tenant_id, professional_id)
        service = await self._repository.get_service(context.tenant_id, service_id)
        validate_bookable(professional, service)
        interval, occupied_until = resolve_interval(start_time, end_time, service)
        if channel == BookingChannel.PUBLIC:
            await validate_within_working_hours(self._repository, context.tenant_id, interval, tenant.tzinfo)
        return interval, occupied_until

    # ========================================================================
    # Update (reschedule / edit)
    # ========================================================================

    async def update_appointment(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        changes: AppointmentChanges,
    ) -> BookingResult:
        """
        Reschedule or edit an appointment.

        Time, professional and service changes are allowed on `requested` and
        `confirmed` appointments and are re-validated at the new interval.
        Notes can be edited in any non-terminal status.

        Raises:
            NotFound, ValidationError, SlotConflict, InvalidTransition
        """
        trace_id = f"{tenant_id}_{appointment_id}"
        logger.info(f"[{trace_id}] Starting appointment update", extra={"tenant_id": str(tenant_id)})

        for attempt in range(1, self._settings.BOOKING_MAX_WRITE_ATTEMPTS + 1):
            current = await self._repository.get_appointment(tenant_id, appointment_id)
            fsm = AppointmentFSM(current.status)

            if changes.reschedules:
                plan = fsm.plan_reschedule()
                update = await self._reschedule_fields(current, changes)
                revalidate, projection = plan.revalidate, plan.projection
            else:
                if fsm.is_terminal:
                    raise InvalidTransition(
                        f"Agendamentos com status '{current.status.value}' não podem ser editados",
                        details={"from_status": current.status.value},
                    )
                update = {}
                revalidate, projection = False, ProjectionKind.NONE
                if "notes" in changes.model_fields_set and current.status in MIRRORED_STATUSES:
                    # Notes are part of the event description
                    projection = ProjectionKind.UPDATE

            if "notes" in changes.model_fields_set:
                update["notes"] = changes.notes

            try:
                appointment = await self._repository.compare_and_update(
                    tenant_id, appointment_id, current.status, update, check_overlap=revalidate
                )
                break
            except StaleWrite:
                self._log_stale(trace_id, attempt)
        else:
            raise self._stale_exhausted(appointment_id)

        outcomes = [appointment_saved(created=False)]
        if projection == ProjectionKind.UPDATE:
            appointment = await self._project_upsert(appointment, trace_id, outcomes)
        return self._finish(appointment, outcomes)

    async def _reschedule_fields(
        self, current: AppointmentRecord, changes: AppointmentChanges
    ) -> dict[str, Any]:
        professional_id = changes.professional_id or current.professional_id
        service_id = changes.service_id or current.service_id
        professional = await self._repository.get_professional(current.tenant_id, professional_id)
        service = await self._repository.get_service(current.tenant_id, service_id)
        if professional_id != current.professional_id or service_id != current.service_id:
            validate_bookable(professional, service)

        start = changes.start_time or current.start_time
        if changes.end_time is not None:
            end = changes.end_time
        elif service_id != current.service_id:
            end = None
        else:
            end = start + (current.end_time - current.start_time)

        interval, occupied_until = resolve_interval(start, end, service)
        return {
            "professional_id": professional_id,
            "service_id": service_id,
            "start_time": interval.start,
            "end_time": interval.end,
            "occupied_until": occupied_until,
        }

    # ========================================================================
    # Status changes
    # ========================================================================

    async def set_status(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        status: AppointmentStatus,
    ) -> BookingResult:
        """
        Move an appointment through its lifecycle.

        Approval (requested -> confirmed) re-validates the overlap invariant
        and creates the calendar event. Cancellation and no-show remove the
        event in the background.

        Raises:
            NotFound, InvalidTransition, SlotConflict (approval only)
        """
        trace_id = f"{tenant_id}_{appointment_id}"
        logger.info(
            f"[{trace_id}] Status change requested -> {status.value}",
            extra={"tenant_id": str(tenant_id), "appointment_id": str(appointment_id)},
        )

        for attempt in range(1, self._settings.BOOKING_MAX_WRITE_ATTEMPTS + 1):
            current = await self._repository.get_appointment(tenant_id, appointment_id)
            plan = AppointmentFSM(current.status).plan_transition(status)
            try:
                appointment = await self._repository.compare_and_update(
                    tenant_id,
                    appointment_id,
                    current.status,
                    {"status": status},
                    check_overlap=plan.revalidate,
                )
                break
            except StaleWrite:
                self._log_stale(trace_id, attempt)
        else:
            raise self._stale_exhausted(appointment_id)

        logger.info(
            f"[{trace_id}] Status committed: {plan.from_status.value} -> {plan.to_status.value}",
            extra={"tenant_id": str(tenant_id), "appointment_id": str(appointment_id)},
        )

        outcomes = [
            BookingOutcome(
                level=OutcomeLevel.SUCCESS,
                code="STATUS_CHANGED",
                message=f"Status alterado para '{status.value}'.",
            )
        ]
        if plan.projection == ProjectionKind.CREATE:
            appointment = await self._project_upsert(appointment, trace_id, outcomes)
        elif plan.projection == ProjectionKind.DELETE and appointment.external_event_id:
            self._dispatch_delete(appointment, trace_id)
        return self._finish(appointment, outcomes)

    # ========================================================================
    # Resync
    # ========================================================================

    async def resync_appointment(self, tenant_id: UUID, appointment_id: UUID) -> BookingResult:
        """
        Re-run the calendar projection for one appointment.

        Unlike the other operations this is a calendar operation: calendar
        errors propagate so the caller (resync worker, API) can react.

        Raises:
            NotFound: appointment missing
            AuthRequired / NotConfigured / ProviderUnavailable / ProviderError
        """
        trace_id = f"{tenant_id}_{appointment_id}"
        appointment = await self._repository.get_appointment(tenant_id, appointment_id)
        adapter = await self._adapter(tenant_id)
        if adapter is None:
            raise AuthRequired(
                "Google Agenda não conectado. Conecte sua conta para sincronizar.",
                details={"tenant_id": str(tenant_id)},
            )

        if appointment.status in MIRRORED_STATUSES:
            details = await self._event_details(appointment)
            event_id = await self._upsert_event(adapter, appointment, details, trace_id)
            appointment = await self._record_event(appointment, event_id, trace_id)
        elif appointment.status in REMOVED_STATUSES and appointment.external_event_id:
            await adapter.push_delete(appointment.external_event_id)
            appointment = await self._repository.set_external_event(
                tenant_id, appointment_id, None, sync_pending=False
            )
        else:
            appointment = await self._repository.set_external_event(
                tenant_id, appointment_id, appointment.external_event_id, sync_pending=False
            )

        logger.info(
            f"[{trace_id}] Appointment resynced",
            extra={
                "tenant_id": str(tenant_id),
                "appointment_id": str(appointment_id),
                "external_event_id": str(appointment.external_event_id),
            },
        )
        outcomes = [
            BookingOutcome(
                level=OutcomeLevel.SUCCESS,
                code="CALENDAR_SYNCED",
                message="Agendamento sincronizado com o Google Agenda.",
            )
        ]
        return self._finish(appointment, outcomes)

    async def drain(self) -> None:
        """Wait for every background projection dispatched so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ========================================================================
    # Projection helpers
    # ========================================================================

    async def _adapter(self, tenant_id: UUID) -> Optional[CalendarSyncAdapter]:
        if self._adapter_factory is None:
            return None
        return await self._adapter_factory(tenant_id)

    async def _event_details(self, appointment: AppointmentRecord) -> EventDetails:
        refs = await load_booking_references(
            self._repository,
            appointment.tenant_id,
            appointment.customer_id,
            appointment.professional_id,
            appointment.service_id,
        )
        return EventDetails(
            service_name=refs.service.name,
            customer_name=refs.customer.name,
            professional_name=refs.professional.name,
            customer_phone=refs.customer.phone,
        )

    async def _upsert_event(
        self,
        adapter: CalendarSyncAdapter,
        appointment: AppointmentRecord,
        details: EventDetails,
        trace_id: str,
    ) -> str:
        if appointment.external_event_id:
            try:
                await adapter.push_update(appointment.external_event_id, appointment.interval, details)
                return appointment.external_event_id
            except CalendarEventNotFound:
                logger.warning(
                    f"[{trace_id}] Calendar event {appointment.external_event_id} gone, re-creating",
                    extra={"appointment_id": str(appointment.id)},
                )
        return await adapter.push_create(appointment, details)

    async def _project_upsert(
        self,
        appointment: AppointmentRecord,
        trace_id: str,
        outcomes: list[BookingOutcome],
    ) -> AppointmentRecord:
        """
        Create or update the mirrored event after a commit.

        Returns the appointment with its final external_event_id /
        calendar_sync_pending. Calendar failures become a warning outcome.
        """
        adapter = await self._adapter(appointment.tenant_id)
        if adapter is None:
            return appointment

        details = await self._event_details(appointment)
        try:
            event_id = await asyncio.wait_for(
                self._upsert_event(adapter, appointment, details, trace_id),
                timeout=self._projection_timeout,
            )
        except (CalendarSyncError, asyncio.TimeoutError) as e:
            error_code = getattr(e, "error_code", "CALENDAR_TIMEOUT")
            logger.warning(
                f"[{trace_id}] Calendar projection failed ({error_code}), booking kept",
                extra={"tenant_id": str(appointment.tenant_id), "appointment_id": str(appointment.id)},
            )
            outcomes.append(calendar_sync_failed(error_code))
            return await self._repository.set_external_event(
                appointment.tenant_id,
                appointment.id,
                appointment.external_event_id,
                sync_pending=True,
            )

        logger.info(
            f"[{trace_id}] Calendar projection succeeded",
            extra={"appointment_id": str(appointment.id), "external_event_id": event_id},
        )
        return await self._record_event(appointment, event_id, trace_id)

    async def _record_event(
        self, appointment: AppointmentRecord, event_id: str, trace_id: str
    ) -> AppointmentRecord:
        """
        Store the event id of a successful projection.

        The projection runs outside the conditional write, so the appointment
        may have been cancelled while the provider call was in flight. That
        cancellation saw no event to delete; the event is removed here.
        """
        recorded = await self._repository.set_external_event(
            appointment.tenant_id, appointment.id, event_id, sync_pending=False
        )
        if recorded.status in REMOVED_STATUSES:
            logger.info(
                f"[{trace_id}] Appointment became {recorded.status.value} during projection, removing event",
                extra={"appointment_id": str(appointment.id), "external_event_id": event_id},
            )
            self._dispatch_delete(recorded, trace_id)
        return recorded

    def _dispatch_delete(self, appointment: AppointmentRecord, trace_id: str) -> None:
        task = asyncio.create_task(self._delete_event(appointment, trace_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete_event(self, appointment: AppointmentRecord, trace_id: str) -> None:
        """Background removal of a mirrored event. Failures are logged, never raised."""
        event_id = appointment.external_event_id
        try:
            adapter = await self._adapter(appointment.tenant_id)
            if adapter is None:
                logger.warning(
                    f"[{trace_id}] Calendar sync inactive, event {event_id} left in calendar",
                    extra={"appointment_id": str(appointment.id), "external_event_id": event_id},
                )
                await self._repository.set_external_event(
                    appointment.tenant_id, appointment.id, event_id, sync_pending=True
                )
                return
            await asyncio.wait_for(adapter.push_delete(event_id), timeout=self._projection_timeout)
            await self._repository.set_external_event(
                appointment.tenant_id, appointment.id, None, sync_pending=False
            )
        except (CalendarSyncError, asyncio.TimeoutError) as e:
            logger.warning(
                f"[{trace_id}] Calendar event deletion failed: {type(e).__name__}: {e}",
                extra={"appointment_id": str(appointment.id), "external_event_id": event_id},
            )
            await self._repository.set_external_event(
                appointment.tenant_id, appointment.id, event_id, sync_pending=True
            )
        except Exception as e:
            logger.error(
                f"[{trace_id}] Unexpected error deleting calendar event: {e}",
                extra={"appointment_id": str(appointment.id), "external_event_id": event_id},
                exc_info=True,
            )

    # ========================================================================
    # Misc
    # ========================================================================

    def _finish(self, appointment: AppointmentRecord, outcomes: list[BookingOutcome]) -> BookingResult:
        for outcome in outcomes:
            self._sink.emit(outcome)
        return BookingResult(appointment=appointment, outcomes=outcomes)

    def _log_stale(self, trace_id: str, attempt: int) -> None:
        logger.info(
            f"[{trace_id}] Concurrent write detected, re-reading "
            f"(attempt {attempt}/{self._settings.BOOKING_MAX_WRITE_ATTEMPTS})"
        )

    def _stale_exhausted(self, appointment_id: UUID) -> StaleWrite:
        return StaleWrite(
            "O agendamento está sendo alterado por outra operação. Tente novamente.",
            details={
                "appointment_id": str(appointment_id),
                "attempts": self._settings.BOOKING_MAX_WRITE_ATTEMPTS,
            },
        )
