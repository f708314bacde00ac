"""
Booking Validators - request checks run before any conditional write.

Validators raise booking.errors exceptions instead of returning result
dicts, so the orchestrator can let them propagate unchanged:

- ValidationError: malformed times, non-positive duration, inactive
  professional/service, outside working hours
- NotFound: referenced customer / professional / service does not exist
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from booking.errors import ValidationError
from booking.intervals import TimeInterval, contains
from booking.schemas import CustomerRecord, ProfessionalRecord, ServiceRecord
from database.repository import SchedulingRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingReferences:
    customer: CustomerRecord
    professional: ProfessionalRecord
    service: ServiceRecord


def validate_timezone_aware(value: datetime, field_name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(
            f"{field_name} deve incluir fuso horário",
            error_code="NAIVE_DATETIME",
            details={"field": field_name, "value": value.isoformat()},
        )


def resolve_interval(
    start_time: datetime, end_time: Optional[datetime], service: ServiceRecord
) -> tuple[TimeInterval, datetime]:
    """
    Appointment interval and its occupied_until (end + service buffer).

    end_time defaults to start_time + service duration.

    Raises:
        ValidationError: naive datetimes, non-positive service duration or end <= start
    """
    validate_timezone_aware(start_time, "start_time")
    if end_time is not None:
        validate_timezone_aware(end_time, "end_time")

    if service.duration_minutes <= 0:
        raise ValidationError(
            "A duração do serviço deve ser positiva",
            error_code="INVALID_SERVICE_DURATION",
            details={"service_id": str(service.id), "duration_minutes": service.duration_minutes},
        )

    end = end_time if end_time is not None else start_time + service.duration
    if end <= start_time:
        raise ValidationError(
            "O horário de término deve ser posterior ao início",
            error_code="INVALID_INTERVAL",
            details={"start_time": start_time.isoformat(), "end_time": end.isoformat()},
        )
    return TimeInterval(start_time, end), end + service.buffer


def validate_bookable(professional: ProfessionalRecord, service: ServiceRecord) -> None:
    """New or moved appointments need an active professional and an active service."""
    if not professional.active:
        raise ValidationError(
            "Profissional inativo não pode receber agendamentos",
            error_code="PROFESSIONAL_INACTIVE",
            details={"professional_id": str(professional.id)},
        )
    if not service.active:
        raise ValidationError(
            "Serviço inativo não pode ser agendado",
            error_code="SERVICE_INACTIVE",
            details={"service_id": str(service.id)},
        )


async def load_booking_references(
    repository: SchedulingRepository,
    tenant_id: UUID,
    customer_id: UUID,
    professional_id: UUID,
    service_id: UUID,
) -> BookingReferences:
    """Load customer, professional and service. Raises NotFound for any missing one."""
    return BookingReferences(
        customer=await repository.get_customer(tenant_id, customer_id),
        professional=await repository.get_professional(tenant_id, professional_id),
        service=await repository.get_service(tenant_id, service_id),
    )


async def validate_within_working_hours(
    repository: SchedulingRepository,
    tenant_id: UUID,
    interval: TimeInterval,
    tz: ZoneInfo,
) -> None:
    """
    The appointment must lie entirely inside the day's working hours.

    Raises:
        ValidationError: closed day or interval outside opening hours
    """
    local_start = interval.start.astimezone(tz)
    working_day = await repository.get_working_day(tenant_id, local_start.weekday())
    window = working_day.window(local_start.date(), tz) if working_day is not None else None

    if window is None or not contains(window, interval):
        logger.info(
            f"Booking outside working hours: {interval.start.isoformat()} - {interval.end.isoformat()}",
            extra={"tenant_id": str(tenant_id)},
        )
        raise ValidationError(
            "Horário fora do expediente da barbearia",
            error_code="OUTSIDE_WORKING_HOURS",
            details={
                "start_time": interval.start.isoformat(),
                "end_time": interval.end.isoformat(),
                "opens_at": window.start.isoformat() if window else None,
                "closes_at": window.end.isoformat() if window else None,
            },
        )
