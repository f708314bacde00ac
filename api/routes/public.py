"""
Public booking routes (no authentication).

The tenant is resolved from the URL slug. Bookings made here are created
at `requested`: they only block the agenda once staff approves them.
"""

import logging
from datetime import date, datetime
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from api.dependencies import Availability, Repository, Transaction
from api.routes.appointments import slots_payload
from booking.schemas import AppointmentRequest, BookingChannel, TenantContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/public/{tenant_slug}", tags=["public"])


class PublicBookingRequest(BaseModel):
    customer_name: str = Field(min_length=1, max_length=200)
    customer_phone: str = Field(min_length=8, max_length=20)
    customer_email: Optional[str] = None
    professional_id: UUID
    service_id: UUID
    start_time: datetime
    notes: Optional[str] = Field(default=None, max_length=2000)


@router.get("/slots")
async def get_public_slots(
    tenant_slug: str,
    repository: Repository,
    availability: Availability,
    professional_id: Annotated[UUID, Query()],
    service_id: Annotated[UUID, Query()],
    day: Annotated[date, Query(alias="date")],
):
    tenant = await repository.get_tenant_by_slug(tenant_slug)
    slots = await availability.get_free_slots(tenant.id, professional_id, day, service_id)
    return slots_payload(professional_id, day, service_id, slots)


@router.post("/bookings", status_code=status.HTTP_201_CREATED)
async def create_public_booking(
    tenant_slug: str,
    body: PublicBookingRequest,
    repository: Repository,
    transaction: Transaction,
):
    """
    Book from the public page.

    The customer is matched by phone within the barbershop, or created once
    the requested slot has passed validation.
    """
    tenant = await repository.get_tenant_by_slug(tenant_slug)
    context = TenantContext(tenant_id=tenant.id, channel=BookingChannel.PUBLIC)
    await transaction.validate_slot(context, body.professional_id, body.service_id, body.start_time)
    customer = await repository.find_or_create_customer(
        tenant.id, body.customer_name, body.customer_phone, body.customer_email
    )
    request = AppointmentRequest(
        customer_id=customer.id,
        professional_id=body.professional_id,
        service_id=body.service_id,
        start_time=body.start_time,
        notes=body.notes,
    )
    result = await transaction.create_appointment(context, request)
    logger.info(
        f"Public booking requested: {result.appointment.id}",
        extra={"tenant_id": str(tenant.id), "appointment_id": str(result.appointment.id)},
    )
    return result.to_dict()
