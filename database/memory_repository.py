"""
In-memory scheduling and calendar-link repositories.

Single-process implementations of the protocols in database.repository.
One asyncio.Lock guards every conditional write, which gives the same
check-then-write atomicity the SQL implementation gets from row locks.

Used by the test suite and for running the API without PostgreSQL.
"""

import asyncio
from datetime import datetime
from itertools import zip_longest
from typing import Any, Optional
from uuid import UUID, uuid4

from booking.errors import NotFound, StaleWrite
from booking.schemas import (
    AppointmentRecord,
    CalendarLinkRecord,
    CustomerRecord,
    ProfessionalRecord,
    ServiceRecord,
    TenantRecord,
    WorkingDay,
)
from database.models import COMMITTED_STATUSES, AppointmentStatus
from database.repository import slot_conflict, validate_changes


class InMemorySchedulingRepository:
    """
    Args:
        links: When given, list_sync_pending only returns tenants that
            have a calendar link in it (like the SQL join on calendar_links)
    """

    def __init__(self, links: Optional["InMemoryCalendarLinkRepository"] = None) -> None:
        self._lock = asyncio.Lock()
        self._links = links
        self.tenants: dict[UUID, TenantRecord] = {}
        self.professionals: dict[UUID, ProfessionalRecord] = {}
        self.services: dict[UUID, ServiceRecord] = {}
        self.customers: dict[UUID, CustomerRecord] = {}
        self.working_days: dict[tuple[UUID, int], WorkingDay] = {}
        self.appointments: dict[UUID, AppointmentRecord] = {}

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def add_tenant(self, tenant: TenantRecord) -> TenantRecord:
        self.tenants[tenant.id] = tenant
        return tenant

    def add_professional(self, professional: ProfessionalRecord) -> ProfessionalRecord:
        self.professionals[professional.id] = professional
        return professional

    def add_service(self, service: ServiceRecord) -> ServiceRecord:
        self.services[service.id] = service
        return service

    def add_customer(self, customer: CustomerRecord) -> CustomerRecord:
        self.customers[customer.id] = customer
        return customer

    def set_working_day(self, tenant_id: UUID, working_day: WorkingDay) -> None:
        self.working_days[(tenant_id, working_day.day_of_week)] = working_day

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_tenant(self, tenant_id: UUID) -> TenantRecord:
        tenant = self.tenants.get(tenant_id)
        if tenant is None:
            raise NotFound("Barbearia não encontrada", details={"tenant_id": str(tenant_id)})
        return tenant.model_copy()

    async def get_tenant_by_slug(self, slug: str) -> TenantRecord:
        for tenant in self.tenants.values():
            if tenant.slug == slug:
                return tenant.model_copy()
        raise NotFound("Barbearia não encontrada", details={"slug": slug})

    async def update_tenant_calendar_config(
        self,
        tenant_id: UUID,
        google_client_id: Optional[str],
        google_api_key: Optional[str],
        google_client_secret: Optional[str],
    ) -> TenantRecord:
        tenant = await self.get_tenant(tenant_id)
        updated = tenant.model_copy(
            update={
                "google_client_id": google_client_id,
                "google_api_key": google_api_key,
                "google_client_secret": google_client_secret,
            }
        )
        self.tenants[tenant_id] = updated
        return updated.model_copy()

    def _scoped(self, table: dict, tenant_id: UUID, row_id: UUID, label: str, key: str) -> Any:
        row = table.get(row_id)
        if row is None or row.tenant_id != tenant_id:
            raise NotFound(f"{label} não encontrado", details={key: str(row_id)})
        return row.model_copy()

    async def get_professional(self, tenant_id: UUID, professional_id: UUID) -> ProfessionalRecord:
        return self._scoped(self.professionals, tenant_id, professional_id, "Profissional", "professional_id")

    async def get_service(self, tenant_id: UUID, service_id: UUID) -> ServiceRecord:
        return self._scoped(self.services, tenant_id, service_id, "Serviço", "service_id")

    async def get_customer(self, tenant_id: UUID, customer_id: UUID) -> CustomerRecord:
        return self._scoped(self.customers, tenant_id, customer_id, "Cliente", "customer_id")

    async def find_or_create_customer(
        self, tenant_id: UUID, name: str, phone: str, email: Optional[str] = None
    ) -> CustomerRecord:
        async with self._lock:
            for customer in self.customers.values():
                if customer.tenant_id == tenant_id and customer.phone == phone:
                    return customer.model_copy()
            customer = CustomerRecord(id=uuid4(), tenant_id=tenant_id, name=name, phone=phone, email=email)
            self.customers[customer.id] = customer
            return customer.model_copy()

    async def get_working_day(self, tenant_id: UUID, day_of_week: int) -> Optional[WorkingDay]:
        working_day = self.working_days.get((tenant_id, day_of_week))
        return working_day.model_copy() if working_day is not None else None

    async def get_appointment(self, tenant_id: UUID, appointment_id: UUID) -> AppointmentRecord:
        return self._scoped(self.appointments, tenant_id, appointment_id, "Agendamento", "appointment_id")

    async def list_committed_appointments(
        self,
        tenant_id: UUID,
        professional_id: UUID,
        range_start: datetime,
        range_end: datetime,
    ) -> list[AppointmentRecord]:
        found = [
            a.model_copy()
            for a in self.appointments.values()
            if a.tenant_id == tenant_id
            and a.professional_id == professional_id
            and a.status in COMMITTED_STATUSES
            and a.start_time < range_end
            and a.occupied_until > range_start
        ]
        return sorted(found, key=lambda a: a.start_time)

    async def list_sync_pending(self, limit: int) -> list[AppointmentRecord]:
        by_tenant: dict[UUID, list[AppointmentRecord]] = {}
        for appointment in sorted(self.appointments.values(), key=lambda a: a.start_time):
            if appointment.calendar_sync_pending and self._sync_active(appointment.tenant_id):
                by_tenant.setdefault(appointment.tenant_id, []).append(appointment.model_copy())

        # First pending appointment of every tenant, then the second, ...
        queues = [by_tenant[tenant_id] for tenant_id in sorted(by_tenant, key=str)]
        interleaved = [a for rank in zip_longest(*queues) for a in rank if a is not None]
        return interleaved[:limit]

    def _sync_active(self, tenant_id: UUID) -> bool:
        tenant = self.tenants.get(tenant_id)
        if tenant is None or not tenant.calendar_configured:
            return False
        return self._links is None or tenant_id in self._links.links

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------

    def _check_overlap(
        self,
        tenant_id: UUID,
        professional_id: UUID,
        start: datetime,
        occupied_until: datetime,
        exclude_id: Optional[UUID],
    ) -> None:
        conflicting = [
            a.id
            for a in self.appointments.values()
            if a.tenant_id == tenant_id
            and a.professional_id == professional_id
            and a.id != exclude_id
            and a.status in COMMITTED_STATUSES
            and a.start_time < occupied_until
            and a.occupied_until > start
        ]
        if conflicting:
            raise slot_conflict(professional_id, start, occupied_until, conflicting)

    async def insert_if_free(self, appointment: AppointmentRecord) -> AppointmentRecord:
        async with self._lock:
            professional = self.professionals.get(appointment.professional_id)
            if professional is None or professional.tenant_id != appointment.tenant_id:
                raise NotFound(
                    "Profissional não encontrado",
                    details={"professional_id": str(appointment.professional_id)},
                )
            self._check_overlap(
                appointment.tenant_id,
                appointment.professional_id,
                appointment.start_time,
                appointment.occupied_until,
                exclude_id=None,
            )
            self.appointments[appointment.id] = appointment.model_copy()
            return appointment.model_copy()

    async def compare_and_update(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        expected_status: AppointmentStatus,
        changes: dict[str, Any],
        check_overlap: bool,
    ) -> AppointmentRecord:
        validate_changes(changes)
        async with self._lock:
            current = self._scoped(self.appointments, tenant_id, appointment_id, "Agendamento", "appointment_id")
            if current.status != expected_status:
                raise StaleWrite(
                    "O agendamento foi alterado por outra operação",
                    details={
                        "appointment_id": str(appointment_id),
                        "expected_status": expected_status.value,
                        "actual_status": current.status.value,
                    },
                )
            updated = current.model_copy(update=changes)
            if check_overlap:
                professional = self.professionals.get(updated.professional_id)
                if professional is None or professional.tenant_id != tenant_id:
                    raise NotFound(
                        "Profissional não encontrado",
                        details={"professional_id": str(updated.professional_id)},
                    )
                self._check_overlap(
                    tenant_id,
                    updated.professional_id,
                    updated.start_time,
                    updated.occupied_until,
                    exclude_id=appointment_id,
                )
            self.appointments[appointment_id] = updated
            return updated.model_copy()

    async def set_external_event(
        self,
        tenant_id: UUID,
        appointment_id: UUID,
        external_event_id: Optional[str],
        sync_pending: bool,
    ) -> AppointmentRecord:
        async with self._lock:
            current = self._scoped(self.appointments, tenant_id, appointment_id, "Agendamento", "appointment_id")
            updated = current.model_copy(
                update={"external_event_id": external_event_id, "calendar_sync_pending": sync_pending}
            )
            self.appointments[appointment_id] = updated
            return updated.model_copy()


class InMemoryCalendarLinkRepository:
    def __init__(self) -> None:
        self.links: dict[UUID, CalendarLinkRecord] = {}

    async def get_link(self, tenant_id: UUID) -> Optional[CalendarLinkRecord]:
        link = self.links.get(tenant_id)
        return link.model_copy() if link is not None else None

    async def save_link(self, link: CalendarLinkRecord) -> CalendarLinkRecord:
        self.links[link.tenant_id] = link.model_copy()
        return link.model_copy()

    async def delete_link(self, tenant_id: UUID) -> None:
        self.links.pop(tenant_id, None)
