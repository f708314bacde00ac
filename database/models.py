"""
SQLAlchemy ORM models for the scheduling tables.

This module defines:
- tenants: One barbershop account, with its Google Calendar client config
- professionals: Scheduling resources (barbers)
- services: Bookable services with duration and post-service buffer
- customers: Barbershop customers (phone is unique per tenant)
- working_hours: Opening hours by day of week, per tenant
- appointments: Bookings; the source of truth for professional capacity
- calendar_links: OAuth token state for the tenant's Google Calendar mirror

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- tenant_id on every row (all queries are tenant-scoped)
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class AppointmentStatus(str, PyEnum):
    """Appointment lifecycle status."""

    REQUESTED = "requested"      # Public booking, awaiting staff approval
    CONFIRMED = "confirmed"
    WAITING = "waiting"          # Customer checked in
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    def __str__(self):
        return self.value


# Statuses that consume professional capacity
COMMITTED_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.WAITING,
    AppointmentStatus.IN_PROGRESS,
})

TERMINAL_STATUSES: frozenset[AppointmentStatus] = frozenset({
    AppointmentStatus.FINISHED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})


class StaffRole(str, PyEnum):
    """Roles issued by the identity provider."""

    OWNER = "owner"
    MANAGER = "manager"
    RECEPTIONIST = "receptionist"
    BARBER = "barber"


# ============================================================================
# Core Models
# ============================================================================


class Tenant(Base):
    """
    Tenant model - One barbershop account.

    Google client configuration is per tenant (no platform-wide default):
    a tenant without client ID and API key cannot connect a calendar.
    """

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="America/Sao_Paulo"
    )

    # Google Calendar client configuration (tenant settings)
    google_client_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    google_api_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    google_client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, slug='{self.slug}')>"


class Professional(Base):
    """
    Professional model - The scheduling resource.

    Inactive professionals are not offered new slots but keep their
    historical appointments. The row doubles as the per-professional lock
    taken by conditional appointment writes.
    """

    __tablename__ = "professionals"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    appointments: Mapped[list["Appointment"]] = relationship(
        "Appointment", back_populates="professional"
    )

    __table_args__ = (
        Index(
            "idx_professionals_tenant_active",
            "tenant_id",
            postgresql_where=text("active = true"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Professional(id={self.id}, name='{self.name}', active={self.active})>"


class Service(Base):
    """
    Service model - Bookable service.

    Effective occupied interval of an appointment:
    [start, start + duration_minutes + buffer_minutes)
    """

    __tablename__ = "services"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_duration_positive"),
        CheckConstraint("buffer_minutes >= 0", name="check_buffer_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}')>"


class Customer(Base):
    """Customer model - Phone number identifies a customer within a tenant."""

    __tablename__ = "customers"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    marketing_consent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "phone", name="uq_customers_tenant_phone"),
    )

    def __repr__(self) -> str:
        return f"<Customer(id={self.id}, phone='{self.phone}')>"


class WorkingHours(Base):
    """
    WorkingHours model - Opening hours by day of week.

    day_of_week follows Python's convention (0=Monday ... 6=Sunday).
    """

    __tablename__ = "working_hours"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    start_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_minute: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    end_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_minute: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "day_of_week", name="uq_working_hours_tenant_day"),
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="check_day_of_week_range"),
        CheckConstraint(
            "is_closed = true OR (start_hour IS NOT NULL AND end_hour IS NOT NULL)",
            name="check_open_day_has_hours",
        ),
    )

    def __repr__(self) -> str:
        return f"<WorkingHours(tenant_id={self.tenant_id}, day={self.day_of_week}, closed={self.is_closed})>"


# ============================================================================
# Transactional Models
# ============================================================================


class Appointment(Base):
    """
    Appointment model - Source of truth for professional capacity.

    occupied_until = end_time + service buffer, denormalized at write time so
    the overlap check is a plain range comparison:

        start_time < :end AND occupied_until > :start

    Committed statuses (confirmed, waiting, in_progress) for a professional
    never overlap; the conditional writes in database.repository enforce it.
    """

    __tablename__ = "appointments"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )
    customer_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("customers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    professional_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("professionals.id", ondelete="RESTRICT"),
        nullable=False,
    )
    service_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("services.id", ondelete="RESTRICT"),
        nullable=False,
    )

    start_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    occupied_until: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=AppointmentStatus.CONFIRMED,
    )

    # Weak reference to the mirrored Google Calendar event (Google owns it)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    calendar_sync_pending: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    professional: Mapped["Professional"] = relationship(
        "Professional", back_populates="appointments"
    )

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="check_end_after_start"),
        CheckConstraint("occupied_until >= end_time", name="check_occupied_covers_end"),
        Index("idx_appointments_professional_start", "professional_id", "start_time"),
        Index("idx_appointments_tenant_start", "tenant_id", "start_time"),
        Index(
            "idx_appointments_sync_pending",
            "tenant_id",
            postgresql_where=text("calendar_sync_pending = true"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, professional_id={self.professional_id}, "
            f"start_time={self.start_time}, status={self.status.value})>"
        )


class CalendarLink(Base):
    """
    CalendarLink model - Tenant's OAuth session with Google Calendar.

    Lifecycle:
    - Created on the first successful consent handshake
    - Token replaced when refreshed
    - Deleted on explicit disconnect or when Google rejects the token (401)
    """

    __tablename__ = "calendar_links"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    scope: Mapped[str | None] = mapped_column(String(500), nullable=True)
    calendar_id: Mapped[str] = mapped_column(String(255), nullable=False, default="primary")

    connected_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<CalendarLink(tenant_id={self.tenant_id}, expires_at={self.token_expires_at})>"
