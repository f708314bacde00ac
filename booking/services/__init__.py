"""
Booking services.

Services:
- availability_service: Free-slot resolution (pure resolver + store-backed wrapper)
- calendar_session: Per-tenant calendar session lifecycle and consent boundary
- calendar_sync_service: Google Calendar projection adapter
"""

from booking.services.availability_service import AvailabilityService, FreeSlots, free_slots
from booking.services.calendar_session import (
    CalendarSession,
    CalendarSessionRegistry,
    SessionState,
    SubmittedGrantConsent,
    TokenGrant,
)
from booking.services.calendar_sync_service import (
    CalendarAdapterFactory,
    CalendarSyncAdapter,
    EventDetails,
)

__all__ = [
    # Availability
    "AvailabilityService",
    "FreeSlots",
    "free_slots",
    # Calendar session
    "CalendarSession",
    "CalendarSessionRegistry",
    "SessionState",
    "SubmittedGrantConsent",
    "TokenGrant",
    # Calendar sync
    "CalendarAdapterFactory",
    "CalendarSyncAdapter",
    "EventDetails",
]
