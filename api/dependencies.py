"""
FastAPI dependencies: identity and service wiring.

Identity comes from an external identity service. It issues HS256 bearer
tokens carrying the tenant and role; this API only verifies them:

    {"sub": "<user id>", "tenant_id": "<uuid>", "role": "owner|manager|receptionist|barber"}

Services are process-wide singletons (lru_cache). Tests replace them through
app.dependency_overrides.
"""

import logging
from functools import lru_cache
from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from booking.schemas import BookingChannel, TenantContext
from booking.services.availability_service import AvailabilityService
from booking.services.calendar_session import CalendarSessionRegistry
from booking.services.calendar_sync_service import CalendarAdapterFactory
from booking.transactions.booking_transaction import BookingTransaction
from database.models import StaffRole
from database.repository import (
    SchedulingRepository,
    SqlCalendarLinkRepository,
    SqlSchedulingRepository,
)
from shared.config import get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

CALENDAR_ADMIN_ROLES = frozenset({StaffRole.OWNER, StaffRole.MANAGER})


# =============================================================================
# Identity
# =============================================================================


def verify_token(token: str) -> dict[str, Any]:
    """Verify an identity-service JWT and return its claims."""
    settings = get_settings()
    options = {"verify_aud": settings.IDENTITY_JWT_AUDIENCE is not None}
    try:
        return jwt.decode(
            token,
            settings.IDENTITY_JWT_SECRET,
            algorithms=[settings.IDENTITY_JWT_ALGORITHM],
            audience=settings.IDENTITY_JWT_AUDIENCE,
            options=options,
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid token: {str(e)}",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_tenant_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> TenantContext:
    """
    Dependency resolving the authenticated staff member's tenant and role.

    Raises:
        HTTPException 401: missing token, invalid signature, missing tenant claim
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials)
    try:
        tenant_id = UUID(str(payload["tenant_id"]))
        role = StaffRole(payload["role"]) if payload.get("role") else None
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing tenant or role claims",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TenantContext(
        tenant_id=tenant_id,
        role=role,
        user_id=payload.get("sub"),
        channel=BookingChannel.STAFF,
    )


async def require_calendar_admin(
    context: Annotated[TenantContext, Depends(get_tenant_context)],
) -> TenantContext:
    """Only owners and managers may change the tenant's calendar configuration."""
    if context.role not in CALENDAR_ADMIN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only owners and managers can configure Google Calendar",
        )
    return context


# =============================================================================
# Services
# =============================================================================


@lru_cache
def get_repository() -> SchedulingRepository:
    return SqlSchedulingRepository()


@lru_cache
def get_session_registry() -> CalendarSessionRegistry:
    return CalendarSessionRegistry()


@lru_cache
def get_adapter_factory() -> CalendarAdapterFactory:
    return CalendarAdapterFactory(get_repository(), SqlCalendarLinkRepository(), get_session_registry())


@lru_cache
def get_booking_transaction() -> BookingTransaction:
    return BookingTransaction(get_repository(), get_adapter_factory())


@lru_cache
def get_availability_service() -> AvailabilityService:
    return AvailabilityService(get_repository(), get_adapter_factory())


Context = Annotated[TenantContext, Depends(get_tenant_context)]
Repository = Annotated[SchedulingRepository, Depends(get_repository)]
Transaction = Annotated[BookingTransaction, Depends(get_booking_transaction)]
Availability = Annotated[AvailabilityService, Depends(get_availability_service)]
AdapterFactory = Annotated[CalendarAdapterFactory, Depends(get_adapter_factory)]
