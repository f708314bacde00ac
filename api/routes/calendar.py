"""
Google Calendar connection routes.

The consent popup runs in the browser (Google Identity Services token
client). The frontend posts the resulting token response, or the error it
got, to ``POST /api/calendar/connect``.
"""

import logging
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from api.dependencies import AdapterFactory, Context, Repository, require_calendar_admin
from booking.errors import ValidationError
from booking.schemas import TenantContext
from booking.services.calendar_session import SubmittedGrantConsent
from booking.services.calendar_sync_service import CalendarSyncAdapter
from booking.validators.booking_validators import validate_timezone_aware

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


class CalendarConfigRequest(BaseModel):
    google_client_id: Optional[str] = Field(default=None, max_length=255)
    google_api_key: Optional[str] = Field(default=None, max_length=255)
    google_client_secret: Optional[str] = Field(default=None, max_length=255)


class ConsentSubmission(BaseModel):
    """Token response (or error) from the Google consent popup."""

    access_token: Optional[str] = None
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    error: Optional[str] = None


async def tenant_adapter(context: Context, repository: Repository, factory: AdapterFactory) -> CalendarSyncAdapter:
    tenant = await repository.get_tenant(context.tenant_id)
    return factory.for_tenant(tenant)


Adapter = Annotated[CalendarSyncAdapter, Depends(tenant_adapter)]


@router.put("/config")
async def update_calendar_config(
    body: CalendarConfigRequest,
    context: Annotated[TenantContext, Depends(require_calendar_admin)],
    repository: Repository,
):
    """Set the barbershop's Google client ID / API key (owners and managers)."""
    tenant = await repository.update_tenant_calendar_config(
        context.tenant_id, body.google_client_id, body.google_api_key, body.google_client_secret
    )
    logger.info(
        f"Calendar config updated by {context.user_id}",
        extra={"tenant_id": str(context.tenant_id)},
    )
    return {
        "configured": tenant.calendar_configured,
        "google_client_id": tenant.google_client_id,
        "has_client_secret": bool(tenant.google_client_secret),
    }


@router.post("/connect")
async def connect_calendar(body: ConsentSubmission, adapter: Adapter):
    """
    Store the consent outcome as the barbershop's calendar link.

    Errors: 412 when not configured, 401 when consent was denied or the
    popup was blocked (`CALENDAR_POPUP_BLOCKED`).
    """
    consent = SubmittedGrantConsent(
        access_token=body.access_token,
        expires_in=body.expires_in,
        refresh_token=body.refresh_token,
        scope=body.scope,
        error=body.error,
    )
    await adapter.connect(consent)
    return await adapter.status()


@router.delete("/connect", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_calendar(adapter: Adapter) -> None:
    await adapter.disconnect()


@router.get("/status")
async def calendar_status(adapter: Adapter):
    return await adapter.status()


@router.get("/busy")
async def list_busy_blocks(
    adapter: Adapter,
    start: Annotated[datetime, Query()],
    end: Annotated[datetime, Query()],
):
    """Busy intervals of the linked calendar between start and end."""
    validate_timezone_aware(start, "start")
    validate_timezone_aware(end, "end")
    if end <= start:
        raise ValidationError(
            "O fim do intervalo deve ser posterior ao início",
            error_code="INVALID_INTERVAL",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )
    blocks = await adapter.list_busy_blocks(start, end)
    return {"busy": [{"start": b.start.isoformat(), "end": b.end.isoformat()} for b in blocks]}
