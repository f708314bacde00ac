"""
Booking validators.

Validators:
- resolve_interval: Appointment interval and occupied_until from request + service
- validate_bookable: Professional and service must be active
- load_booking_references: Customer / professional / service lookups (NotFound)
- validate_within_working_hours: Public bookings must fall inside opening hours
"""

from booking.validators.booking_validators import (
    BookingReferences,
    load_booking_references,
    resolve_interval,
    validate_bookable,
    validate_timezone_aware,
    validate_within_working_hours,
)

__all__ = [
    "BookingReferences",
    "load_booking_references",
    "resolve_interval",
    "validate_bookable",
    "validate_timezone_aware",
    "validate_within_working_hours",
]
