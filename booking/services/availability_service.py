"""
Availability Service - free slots for a professional on a day.

Two layers:
- free_slots(): pure resolver. Working-hours window minus the union of
  committed appointments (effective occupied interval) and external busy
  blocks, fragmented into candidate slots.
- AvailabilityService: loads the inputs from the repository and, when the
  tenant has calendar sync active, from the calendar adapter.

Slots offered here are advisory: the authoritative overlap check runs again
inside the conditional write when an appointment is committed.

Usage:
    slots = free_slots(
        professional_id=pid,
        day=date(2025, 3, 10),
        service_duration=timedelta(minutes=30),
        working_hours=working_day,
        existing_appointments=appointments,
        external_busy_blocks=[],
        slot_granularity=timedelta(minutes=30),
        tz=ZoneInfo("America/Sao_Paulo"),
    )
    for slot in slots:
        ...
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Sequence
from uuid import UUID
from zoneinfo import ZoneInfo

from booking.errors import CalendarSyncError, ValidationError
from booking.intervals import TimeInterval, subtract_intervals
from booking.schemas import AppointmentRecord, WorkingDay
from database.repository import SchedulingRepository
from shared.config import get_settings

logger = logging.getLogger(__name__)


class FreeSlots:
    """
    Lazy, finite, restartable sequence of free slots.

    Holds only the inputs; every iteration recomputes from them.
    """

    def __init__(
        self,
        window: Optional[TimeInterval],
        busy: Sequence[TimeInterval],
        service_duration: timedelta,
        slot_granularity: timedelta,
        service_buffer: timedelta = timedelta(0),
    ) -> None:
        self._window = window
        self._busy = tuple(busy)
        self._service_duration = service_duration
        self._slot_granularity = slot_granularity
        self._service_buffer = service_buffer

    def __iter__(self) -> Iterator[TimeInterval]:
        if self._window is None:
            return
        # The buffer may run past closing time but never into a busy interval
        closes_at = self._window.end
        reach = TimeInterval(self._window.start, closes_at + self._service_buffer)
        occupied = self._service_duration + self._service_buffer
        for fragment in subtract_intervals(reach, self._busy):
            cursor = fragment.start
            while cursor + occupied <= fragment.end and cursor + self._service_duration <= closes_at:
                yield TimeInterval(cursor, cursor + self._service_duration)
                cursor += self._slot_granularity

    def __bool__(self) -> bool:
        return next(iter(self), None) is not None

    def __repr__(self) -> str:
        return f"<FreeSlots(window={self._window}, busy={len(self._busy)})>"


def free_slots(
    professional_id: UUID,
    day: date,
    service_duration: timedelta,
    working_hours: Optional[WorkingDay],
    existing_appointments: Iterable[AppointmentRecord],
    external_busy_blocks: Iterable[TimeInterval],
    slot_granularity: timedelta,
    tz: Optional[ZoneInfo] = None,
    service_buffer: timedelta = timedelta(0),
) -> FreeSlots:
    """
    Resolve free slots for one professional on one day.

    Args:
        professional_id: Only appointments of this professional are considered
        day: Calendar day in the tenant timezone
        service_duration: Length of each offered slot
        working_hours: Opening hours for the weekday (None = closed)
        existing_appointments: Local appointments (any status; only committed
            ones block time, using their effective occupied interval)
        external_busy_blocks: Busy intervals from the external calendar
        slot_granularity: Step between candidate starts within a free fragment
        tz: Tenant timezone (defaults to settings.TIMEZONE)
        service_buffer: Cleanup time after the service; a slot is offered only
            when start + duration + buffer stays clear of busy time

    Returns:
        FreeSlots in chronological order. Empty for closed days.

    Raises:
        ValidationError: non-positive duration or granularity, negative buffer
    """
    if service_duration <= timedelta(0):
        raise ValidationError(
            "A duração do serviço deve ser positiva",
            details={"service_duration_minutes": service_duration.total_seconds() / 60},
        )
    if slot_granularity <= timedelta(0):
        raise ValidationError(
            "A granularidade dos horários deve ser positiva",
            details={"slot_granularity_minutes": slot_granularity.total_seconds() / 60},
        )
    if service_buffer < timedelta(0):
        raise ValidationError(
            "O intervalo de limpeza não pode ser negativo",
            details={"service_buffer_minutes": service_buffer.total_seconds() / 60},
        )

    tz = tz or ZoneInfo(get_settings().TIMEZONE)
    window = working_hours.window(day, tz) if working_hours is not None else None

    busy = [
        a.occupied_interval
        for a in existing_appointments
        if a.professional_id == professional_id and a.is_committed
    ]
    busy.extend(external_busy_blocks)

    return FreeSlots(window, busy, service_duration, slot_granularity, service_buffer)


def day_bounds(day: date, tz: ZoneInfo) -> TimeInterval:
    start = datetime.combine(day, time.min, tzinfo=tz)
    return TimeInterval(start, start + timedelta(days=1))


class AvailabilityService:
    """
    Store-backed availability.

    Args:
        repository: Scheduling repository (may point at a read replica)
        adapter_factory: async callable tenant_id -> CalendarSyncAdapter | None
            (None when the tenant has no active calendar link)
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        adapter_factory: Optional[Callable[[UUID], Awaitable[object]]] = None,
    ) -> None:
        self._repository = repository
        self._adapter_factory = adapter_factory

    async def get_free_slots(
        self,
        tenant_id: UUID,
        professional_id: UUID,
        day: date,
        service_id: UUID,
        slot_granularity: Optional[timedelta] = None,
    ) -> FreeSlots:
        """
        Free slots for booking ``service_id`` with ``professional_id`` on ``day``.

        Inactive professionals and services yield an empty sequence. External
        calendar failures degrade to local-only availability.
        """
        settings = get_settings()
        granularity = slot_granularity or timedelta(minutes=settings.DEFAULT_SLOT_GRANULARITY_MINUTES)

        tenant = await self._repository.get_tenant(tenant_id)
        professional = await self._repository.get_professional(tenant_id, professional_id)
        service = await self._repository.get_service(tenant_id, service_id)
        tz = tenant.tzinfo

        if not professional.active or not service.active:
            logger.info(
                f"No slots: professional active={professional.active}, service active={service.active}",
                extra={"tenant_id": str(tenant_id), "professional_id": str(professional_id)},
            )
            return FreeSlots(None, [], service.duration, granularity)

        working_day = await self._repository.get_working_day(tenant_id, day.weekday())
        bounds = day_bounds(day, tz)
        appointments = await self._repository.list_committed_appointments(
            tenant_id, professional_id, bounds.start, bounds.end
        )
        busy_blocks = await self._external_busy_blocks(tenant_id, bounds)

        return free_slots(
            professional_id=professional_id,
            day=day,
            service_duration=service.duration,
            working_hours=working_day,
            existing_appointments=appointments,
            external_busy_blocks=busy_blocks,
            slot_granularity=granularity,
            tz=tz,
            service_buffer=service.buffer,
        )

    async def _external_busy_blocks(self, tenant_id: UUID, bounds: TimeInterval) -> list[TimeInterval]:
        if self._adapter_factory is None:
            return []
        try:
            adapter = await self._adapter_factory(tenant_id)
            if adapter is None:
                return []
            return await adapter.list_busy_blocks(bounds.start, bounds.end)
        except CalendarSyncError as e:
            logger.warning(
                f"External busy blocks unavailable, using local availability only: "
                f"{e.error_code}: {e.message}",
                extra={"tenant_id": str(tenant_id)},
            )
            return []
