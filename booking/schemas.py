"""
Records and requests exchanged between the API, the orchestrator and storage.

Records are pydantic models built from ORM rows (``from_attributes``) or
held directly by the in-memory repository. They round-trip losslessly
through ``model_dump(mode="json")`` / ``model_validate``.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from booking.intervals import TimeInterval
from database.models import COMMITTED_STATUSES, AppointmentStatus, StaffRole


class BookingChannel(str, Enum):
    """Where a booking request comes from."""

    STAFF = "staff"
    PUBLIC = "public"


class TenantContext(BaseModel):
    """Identity yielded by the identity provider (or the public tenant slug)."""

    tenant_id: UUID
    role: Optional[StaffRole] = None
    user_id: Optional[str] = None
    channel: BookingChannel = BookingChannel.STAFF


# ============================================================================
# Records
# ============================================================================


class TenantRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    timezone: str = "America/Sao_Paulo"
    google_client_id: Optional[str] = None
    google_api_key: Optional[str] = None
    google_client_secret: Optional[str] = None

    @property
    def calendar_configured(self) -> bool:
        return bool(self.google_client_id and self.google_api_key)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ProfessionalRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    active: bool = True


class ServiceRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    duration_minutes: int
    buffer_minutes: int = 0
    active: bool = True

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.duration_minutes)

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self.buffer_minutes)


class CustomerRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    name: str
    phone: str
    email: Optional[str] = None


class WorkingDay(BaseModel):
    """Opening hours for one day of the week (0=Monday)."""

    model_config = ConfigDict(from_attributes=True)

    day_of_week: int = Field(ge=0, le=6)
    is_closed: bool = False
    start_hour: Optional[int] = None
    start_minute: int = 0
    end_hour: Optional[int] = None
    end_minute: int = 0

    def window(self, day: date, tz: ZoneInfo) -> Optional[TimeInterval]:
        """Working window for ``day``, or None when closed or zero-length."""
        if self.is_closed or self.start_hour is None or self.end_hour is None:
            return None
        opens = datetime.combine(day, time(self.start_hour, self.start_minute), tzinfo=tz)
        closes = datetime.combine(day, time(self.end_hour, self.end_minute), tzinfo=tz)
        if closes <= opens:
            return None
        return TimeInterval(opens, closes)


class AppointmentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    customer_id: UUID
    professional_id: UUID
    service_id: UUID
    start_time: datetime
    end_time: datetime
    occupied_until: datetime
    status: AppointmentStatus
    external_event_id: Optional[str] = None
    calendar_sync_pending: bool = False
    notes: Optional[str] = None
    created_at: datetime

    @property
    def interval(self) -> TimeInterval:
        return TimeInterval(self.start_time, self.end_time)

    @property
    def occupied_interval(self) -> TimeInterval:
        """[start, end + buffer): the time the professional is unavailable."""
        return TimeInterval(self.start_time, self.occupied_until)

    @property
    def is_committed(self) -> bool:
        return self.status in COMMITTED_STATUSES


class CalendarLinkRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: datetime
    scope: Optional[str] = None
    calendar_id: str = "primary"
    connected_at: datetime


# ============================================================================
# Requests
# ============================================================================


class AppointmentRequest(BaseModel):
    """New appointment. end_time defaults to start_time + service duration."""

    customer_id: UUID
    professional_id: UUID
    service_id: UUID
    start_time: datetime
    end_time: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class AppointmentChanges(BaseModel):
    """Reschedule / edit. Only fields that are set are applied."""

    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    professional_id: Optional[UUID] = None
    service_id: Optional[UUID] = None
    notes: Optional[str] = Field(default=None, max_length=2000)

    @property
    def reschedules(self) -> bool:
        return bool(self.model_fields_set & {"start_time", "end_time", "professional_id", "service_id"})
