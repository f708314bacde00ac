"""
Scheduling repository - storage boundary for the booking orchestrator.

Two protocols:
- SchedulingRepository: tenants, catalogue, customers, appointments
- CalendarLinkRepository: per-tenant calendar token state

The SQLAlchemy implementations below are the production ones. Every
appointment write that can consume professional capacity is a conditional
write executed in ONE transaction:

    1. SELECT ... FOR UPDATE on the professional row(s), sorted by id
    2. committed-overlap query for the candidate occupied interval
    3. INSERT / UPDATE (status compare-and-set for updates)

Step 1 serializes writers per professional across processes, so the check
in step 2 cannot be invalidated before step 3 commits.
"""

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Optional, Protocol
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from booking.errors import NotFound, SlotConflict, StaleWrite
from booking.schemas import (
    AppointmentRecord,
    CalendarLinkRecord,
    CustomerRecord,
    ProfessionalRecord,
    ServiceRecord,
    TenantRecord,
    WorkingDay,
)
from database.connection import get_async_session
from database.models import (
    COMMITTED_STATUSES,
    Appointment,
    AppointmentStatus,
    CalendarLink,
    Customer,
    Professional,
    Service,
    Tenant,
    WorkingHours,
)

logger = logging.getLogger(__name__)

# Columns an orchestrator update may touch
MUTABLE_APPOINTMENT_FIELDS = frozenset({
    "professional_id",
    "service_id",
    "start_time",
    "end_time",
    "occupied_until",
    "status",
    "notes",
    "external_event_id",
    "calendar_sync_pending",
})


# ============================================================================
# Protocols
# ============================================================================


class SchedulingRepository(Protocol):
    async def get_tenant(self, tenant_id: UUID) -> TenantRecord: ...

    async def get_tenant_by_slug(self, slug: str) -> TenantRecord: ...

    async def update_tenant_calendar_config(
        self,
        tenant_id: UUID,
        google_client_id: Optional[str],
        google_api_key: Optional[str],
        google_client_secret: Optional[str],
    ) -> TenantRecord: ...

    async def get_professional(self, tenant_id: UUID, professional_id: UUID) -> ProfessionalRecord: ...

    async def get_service(self, tenant_id: UUID, service_id: UUID) -> ServiceRecord: ...

    async def get_customer(self, tenant_id: UUID, customer_id: UUID) -> CustomerRecord: ...

    async def find_or_create_customer(
        self, tenant_id: UUID, name: str, phone: str, email: Optional[str] = None
    ) -> CustomerRecord: ...

    async def get_working_day(self, tenant_id: UUID, day_of_week: int) -> Optional[WorkingDay]: ...

    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> AppointmentRecord: ...

    async def list_committed_appointments(
        self,
        tenant_id: UUID,
        professional_id: UUID,
        range_start: datetime,
        range_end: datetime,
    ) -> list[AppointmentRecord]: ...

    async def insert_if_free(self, appointment: AppointmentRecord) -> AppointmentRecord: ...

    async def compare_and_update(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        expected_status: AppointmentStatus,
        changes: dict[str, Any],
        check_overlap: bool,
    ) -> AppointmentRecord: ...

    async def set_external_event(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        external_event_id: Optional[str],
        sync_pending: bool,
    ) -> AppointmentRecord: ...

    async def list_sync_pending(self, limit: int) -> list[AppointmentRecord]: ...


class CalendarLinkRepository(Protocol):
    async def get_link(self, tenant_id: UUID) -> Optional[CalendarLinkRecord]: ...

    async def save_link(self, link: CalendarLinkRecord) -> CalendarLinkRecord: ...

    async def delete_link(self, tenant_id: UUID) -> None: ...


def validate_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_APPOINTMENT_FIELDS
    if unknown:
        raise ValueError(f"Unsupported appointment fields: {sorted(unknown)}")


def slot_conflict(professional_id: UUID, start: datetime, occupied_until: datetime, conflicting: list) -> SlotConflict:
    return SlotConflict(
        "O profissional já possui um agendamento nesse horário",
        details={
            "professional_id": str(professional_id),
            "start_time": start.isoformat(),
            "occupied_until": occupied_until.isoformat(),
            "conflicting_appointment_ids": [str(a) for a in conflicting],
        },
    )


# ============================================================================
# SQLAlchemy implementation
# ============================================================================


class SqlSchedulingRepository:
    """
    PostgreSQL-backed scheduling repository.

    Args:
        session_factory: async context manager factory yielding an AsyncSession
            (defaults to database.connection.get_async_session)
    """

    def __init__(self, session_factory: Callable[[], Any] = get_async_session) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_tenant(self, tenant_id: UUID) -> TenantRecord:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFound("Barbearia não encontrada", details={"tenant_id": str(tenant_id)})
            return TenantRecord.model_validate(tenant)

    async def get_tenant_by_slug(self, slug: str) -> TenantRecord:
        async with self._session_factory() as session:
            result = await session.execute(select(Tenant).where(Tenant.slug == slug))
            tenant = result.scalar_one_or_none()
            if tenant is None:
                raise NotFound("Barbearia não encontrada", details={"slug": slug})
            return TenantRecord.model_validate(tenant)

    async def update_tenant_calendar_config(
        self,
        tenant_id: UUID,
        google_client_id: Optional[str],
        google_api_key: Optional[str],
        google_client_secret: Optional[str],
    ) -> TenantRecord:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFound("Barbearia não encontrada", details={"tenant_id": str(tenant_id)})
            tenant.google_client_id = google_client_id
            tenant.google_api_key = google_api_key
            tenant.google_client_secret = google_client_secret
            await session.commit()
            logger.info("Calendar config updated", extra={"tenant_id": str(tenant_id)})
            return TenantRecord.model_validate(tenant)

    async def get_professional(self, tenant_id: UUID, professional_id: UUID) -> ProfessionalRecord:
        async with self._session_factory() as session:
            row = await self._get_scoped(session, Professional, tenant_id, professional_id)
            if row is None:
                raise NotFound(
                    "Profissional não encontrado",
                    details={"professional_id": str(professional_id)},
                )
            return ProfessionalRecord.model_validate(row)

    async def get_service(self, tenant_id: UUID, service_id: UUID) -> ServiceRecord:
        async with self._session_factory() as session:
            row = await self._get_scoped(session, Service, tenant_id, service_id)
            if row is None:
                raise NotFound("Serviço não encontrado", details={"service_id": str(service_id)})
            return ServiceRecord.model_validate(row)

    async def get_customer(self, tenant_id: UUID, customer_id: UUID) -> CustomerRecord:
        async with self._session_factory() as session:
            row = await self._get_scoped(session, Customer, tenant_id, customer_id)
            if row is None:
                raise NotFound("Cliente não encontrado", details={"customer_id": str(customer_id)})
            return CustomerRecord.model_validate(row)

    async def find_or_create_customer(
        self, tenant_id: UUID, name: str, phone: str, email: Optional[str] = None
    ) -> CustomerRecord:
        async with self._session_factory() as session:
            stmt = select(Customer).where(Customer.tenant_id == tenant_id, Customer.phone == phone)
            existing = (await session.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                return CustomerRecord.model_validate(existing)

            customer = Customer(tenant_id=tenant_id, name=name, phone=phone, email=email)
            session.add(customer)
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent public booking created the same phone first
                await session.rollback()
                existing = (await session.execute(stmt)).scalar_one()
                return CustomerRecord.model_validate(existing)

            logger.info(
                f"Customer created from public booking: {customer.id}",
                extra={"tenant_id": str(tenant_id)},
            )
            return CustomerRecord.model_validate(customer)

    async def get_working_day(self, tenant_id: UUID, day_of_week: int) -> Optional[WorkingDay]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkingHours).where(
                    WorkingHours.tenant_id == tenant_id,
                    WorkingHours.day_of_week == day_of_week,
                )
            )
            row = result.scalar_one_or_none()
            return WorkingDay.model_validate(row) if row is not None else None

    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> AppointmentRecord:
        async with self._session_factory() as session:
            # Row lock: the returned status is the one committed after any concurrent status change
            row = await self._get_scoped(session, Appointment, tenant_id, appointment_id, for_update=True)
            if row is None:
                raise NotFound(
                    "Agendamento não encontrado",
                    details={"appointment_id": str(appointment_id)},
                )
            return AppointmentRecord.model_validate(row)

    async def list_committed_appointments(
        self,
        tenant_id: UUID,
        professional_id: UUID,
        range_start: datetime,
        range_end: datetime,
    ) -> list[AppointmentRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Appointment)
                .where(
                    Appointment.tenant_id == tenant_id,
                    Appointment.professional_id == professional_id,
                    Appointment.status.in_(COMMITTED_STATUSES),
                    Appointment.start_time < range_end,
                    Appointment.occupied_until > range_start,
                )
                .order_by(Appointment.start_time)
            )
            return [AppointmentRecord.model_validate(row) for row in result.scalars().all()]

    async def list_sync_pending(self, limit: int) -> list[AppointmentRecord]:
        """
        Appointments flagged calendar_sync_pending, interleaved across tenants.

        Only tenants with Google configuration and a CalendarLink are listed.
        Rows are ranked per tenant and the batch takes rank 1 of every tenant,
        then rank 2, and so on, so one tenant's backlog cannot fill the batch.
        """
        tenant_rank = (
            func.row_number()
            .over(partition_by=Appointment.tenant_id, order_by=Appointment.start_time)
            .label("tenant_rank")
        )
        ranked = (
            select(Appointment.id, tenant_rank)
            .join(Tenant, Tenant.id == Appointment.tenant_id)
            .join(CalendarLink, CalendarLink.tenant_id == Appointment.tenant_id)
            .where(
                Appointment.calendar_sync_pending.is_(True),
                func.coalesce(Tenant.google_client_id, "") != "",
                func.coalesce(Tenant.google_api_key, "") != "",
            )
            .subquery()
        )
        async with self._session_factory() as session:
            result = await session.execute(
                select(Appointment)
                .join(ranked, ranked.c.id == Appointment.id)
                .order_by(ranked.c.tenant_rank, Appointment.tenant_id)
                .limit(limit)
            )
            return [AppointmentRecord.model_validate(row) for row in result.scalars().all()]

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    async def insert_if_free(self, appointment: AppointmentRecord) -> AppointmentRecord:
        """
        Insert an appointment unless it overlaps a committed one.

        Raises:
            NotFound: professional missing (nothing to lock)
            SlotConflict: committed overlap on the professional
        """
        async with self._session_factory() as session:
            await self._lock_professionals(session, appointment.tenant_id, {appointment.professional_id})
            await self._check_overlap(
                session,
                tenant_id=appointment.tenant_id,
                professional_id=appointment.professional_id,
                start=appointment.start_time,
                occupied_until=appointment.occupied_until,
                exclude_id=None,
            )

            row = Appointment(**appointment.model_dump())
            session.add(row)
            await session.commit()

            logger.info(
                f"Appointment inserted: {row.id} ({row.status.value})",
                extra={
                    "tenant_id": str(row.tenant_id),
                    "appointment_id": str(row.id),
                    "professional_id": str(row.professional_id),
                },
            )
            return AppointmentRecord.model_validate(row)

    async def compare_and_update(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        expected_status: AppointmentStatus,
        changes: dict[str, Any],
        check_overlap: bool,
    ) -> AppointmentRecord:
        """
        Apply ``changes`` iff the appointment still has ``expected_status``.

        Raises:
            NotFound: appointment missing
            StaleWrite: status (or professional) changed since the caller read it
            SlotConflict: check_overlap and the resulting interval overlaps
        """
        validate_changes(changes)

        async with self._session_factory() as session:
            current = await self._get_scoped(session, Appointment, tenant_id, appointment_id)
            if current is None:
                raise NotFound(
                    "Agendamento não encontrado",
                    details={"appointment_id": str(appointment_id)},
                )
            seen_professional = current.professional_id
            target_professional = changes.get("professional_id", seen_professional)

            await self._lock_professionals(session, tenant_id, {seen_professional, target_professional})

            result = await session.execute(
                select(Appointment)
                .where(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one()

            if row.status != expected_status or row.professional_id != seen_professional:
                raise StaleWrite(
                    "O agendamento foi alterado por outra operação",
                    details={
                        "appointment_id": str(appointment_id),
                        "expected_status": expected_status.value,
                        "actual_status": row.status.value,
                    },
                )

            start = changes.get("start_time", row.start_time)
            occupied_until = changes.get("occupied_until", row.occupied_until)
            if check_overlap:
                await self._check_overlap(
                    session,
                    tenant_id=tenant_id,
                    professional_id=target_professional,
                    start=start,
                    occupied_until=occupied_until,
                    exclude_id=appointment_id,
                )

            for field_name, value in changes.items():
                setattr(row, field_name, value)
            row.updated_at = datetime.now(UTC)
            await session.commit()

            logger.info(
                f"Appointment updated: {appointment_id} "
                f"({expected_status.value} -> {row.status.value})",
                extra={
                    "tenant_id": str(tenant_id),
                    "appointment_id": str(appointment_id),
                    "professional_id": str(row.professional_id),
                },
            )
            return AppointmentRecord.model_validate(row)

    async def set_external_event(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        external_event_id: Optional[str],
        sync_pending: bool,
    ) -> AppointmentRecord:
        async with self._session_factory() as session:
            # Locked read: the returned status reflects any status change committed meanwhile
            row = await self._get_scoped(session, Appointment, tenant_id, appointment_id, for_update=True)
            if row is None:
                raise NotFound(
                    "Agendamento não encontrado",
                    details={"appointment_id": str(appointment_id)},
                )
            row.external_event_id = external_event_id
            row.calendar_sync_pending = sync_pending
            await session.commit()
            return AppointmentRecord.model_validate(row)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _get_scoped(
        session: AsyncSession, model: Any, tenant_id: UUID, row_id: UUID, for_update: bool = False
    ) -> Any:
        statement = select(model).where(model.id == row_id, model.tenant_id == tenant_id)
        if for_update:
            statement = statement.with_for_update()
        result = await session.execute(statement)
        return result.scalar_one_or_none()

    @staticmethod
    async def _lock_professionals(
        session: AsyncSession, tenant_id: UUID, professional_ids: set[UUID]
    ) -> None:
        # Sorted lock order: two writers moving appointments between the same
        # pair of professionals cannot deadlock
        ordered = sorted(professional_ids)
        result = await session.execute(
            select(Professional.id)
            .where(Professional.tenant_id == tenant_id, Professional.id.in_(ordered))
            .order_by(Professional.id)
            .with_for_update()
        )
        locked = set(result.scalars().all())
        missing = set(ordered) - locked
        if missing:
            raise NotFound(
                "Profissional não encontrado",
                details={"professional_id": str(sorted(missing)[0])},
            )

    @staticmethod
    async def _check_overlap(
        session: AsyncSession,
        *,
        tenant_id: UUID,
        professional_id: UUID,
        start: datetime,
        occupied_until: datetime,
        exclude_id: Optional[UUID],
    ) -> None:
        stmt = select(Appointment.id).where(
            Appointment.tenant_id == tenant_id,
            Appointment.professional_id == professional_id,
            Appointment.status.in_(COMMITTED_STATUSES),
            Appointment.start_time < occupied_until,
            Appointment.occupied_until > start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Appointment.id != exclude_id)

        conflicting = list((await session.execute(stmt)).scalars().all())
        if conflicting:
            logger.warning(
                f"Slot conflict for professional {professional_id}: "
                f"{start.isoformat()} - {occupied_until.isoformat()}",
                extra={"tenant_id": str(tenant_id), "professional_id": str(professional_id)},
            )
            raise slot_conflict(professional_id, start, occupied_until, conflicting)


class SqlCalendarLinkRepository:
    """PostgreSQL-backed calendar link storage (one row per tenant)."""

    def __init__(self, session_factory: Callable[[], Any] = get_async_session) -> None:
        self._session_factory = session_factory

    async def get_link(self, tenant_id: UUID) -> Optional[CalendarLinkRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CalendarLink).where(CalendarLink.tenant_id == tenant_id)
            )
            row = result.scalar_one_or_none()
            return CalendarLinkRecord.model_validate(row) if row is not None else None

    async def save_link(self, link: CalendarLinkRecord) -> CalendarLinkRecord:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CalendarLink).where(CalendarLink.tenant_id == link.tenant_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = CalendarLink(**link.model_dump())
                session.add(row)
            else:
                for field_name, value in link.model_dump(exclude={"tenant_id"}).items():
                    setattr(row, field_name, value)
            await session.commit()
            return CalendarLinkRecord.model_validate(row)

    async def delete_link(self, tenant_id: UUID) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(CalendarLink).where(CalendarLink.tenant_id == tenant_id))
            await session.commit()
        logger.info("Calendar link deleted", extra={"tenant_id": str(tenant_id)})
