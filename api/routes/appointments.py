"""
Staff appointment routes.

Booking operations return the committed appointment together with the
outcomes produced along the way. A calendar failure after the commit is a
2xx response carrying a CALENDAR_SYNC_FAILED warning in ``outcomes``, never
an error status.
"""

import logging
from datetime import date, timedelta
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel

from api.dependencies import Availability, Context, Repository, Transaction
from booking.schemas import AppointmentChanges, AppointmentRequest
from booking.services.availability_service import FreeSlots
from database.models import AppointmentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["appointments"])


class StatusChangeRequest(BaseModel):
    status: AppointmentStatus


def slots_payload(professional_id: UUID, day: date, service_id: UUID, slots: FreeSlots) -> dict:
    return {
        "professional_id": str(professional_id),
        "service_id": str(service_id),
        "date": day.isoformat(),
        "slots": [{"start": s.start.isoformat(), "end": s.end.isoformat()} for s in slots],
    }


@router.post("/appointments", status_code=status.HTTP_201_CREATED)
async def create_appointment(request: AppointmentRequest, context: Context, transaction: Transaction):
    """
    Create an appointment at `confirmed` and mirror it to Google Calendar.

    **Returns:** `{"appointment": {...}, "outcomes": [{"level", "code", "message"}]}`
    """
    result = await transaction.create_appointment(context, request)
    return result.to_dict()


@router.get("/appointments/{appointment_id}")
async def get_appointment(appointment_id: UUID, context: Context, repository: Repository):
    appointment = await repository.get_appointment(context.tenant_id, appointment_id)
    return appointment.model_dump(mode="json")


@router.patch("/appointments/{appointment_id}")
async def update_appointment(
    appointment_id: UUID,
    changes: AppointmentChanges,
    context: Context,
    transaction: Transaction,
):
    """Reschedule (time / professional / service) or edit notes."""
    result = await transaction.update_appointment(context.tenant_id, appointment_id, changes)
    return result.to_dict()


@router.post("/appointments/{appointment_id}/status")
async def change_status(
    appointment_id: UUID,
    body: StatusChangeRequest,
    context: Context,
    transaction: Transaction,
):
    """
    Move an appointment through its lifecycle.

    Approving a `requested` appointment (`confirmed`) re-checks the
    professional's agenda and may fail with 409 SLOT_TAKEN.
    """
    result = await transaction.set_status(context.tenant_id, appointment_id, body.status)
    return result.to_dict()


@router.post("/appointments/{appointment_id}/resync")
async def resync_appointment(appointment_id: UUID, context: Context, transaction: Transaction):
    """Retry the Google Calendar projection of an appointment marked not synced."""
    result = await transaction.resync_appointment(context.tenant_id, appointment_id)
    return result.to_dict()


@router.get("/professionals/{professional_id}/slots")
async def get_professional_slots(
    professional_id: UUID,
    context: Context,
    availability: Availability,
    service_id: Annotated[UUID, Query()],
    day: Annotated[date, Query(alias="date")],
    granularity_minutes: Annotated[Optional[int], Query(ge=5, le=240)] = None,
):
    granularity = timedelta(minutes=granularity_minutes) if granularity_minutes else None
    slots = await availability.get_free_slots(
        context.tenant_id, professional_id, day, service_id, slot_granularity=granularity
    )
    return slots_payload(professional_id, day, service_id, slots)
