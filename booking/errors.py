"""
Error taxonomy for scheduling and calendar projection.

Two families:
- BookingError: hard failures of the requested operation. Raised before or
  instead of any state change and propagated to the caller.
- CalendarSyncError: failures of the external calendar projection. Caught at
  the orchestrator boundary and downgraded to warnings; they never roll back
  a committed appointment.

Every error carries an ``error_code`` (stable, machine-readable), a
human-readable ``message`` and a ``details`` dict, mirroring the
``{error_code, error_message, details}`` shape returned by the API.
"""

from typing import Any


class BookingError(Exception):
    """Base class for scheduling failures."""

    error_code = "BOOKING_ERROR"

    def __init__(
        self,
        message: str,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "error_message": self.message,
            "details": self.details,
        }


class ValidationError(BookingError, ValueError):
    """Malformed request (missing reference, non-positive duration, bad interval)."""

    error_code = "VALIDATION_ERROR"


class SlotConflict(BookingError):
    """Requested interval overlaps a committed appointment of the professional."""

    error_code = "SLOT_TAKEN"


class NotFound(BookingError):
    """Referenced appointment, professional, service, customer or tenant is absent."""

    error_code = "NOT_FOUND"


class InvalidTransition(BookingError):
    """The appointment state machine rejects the requested change."""

    error_code = "INVALID_TRANSITION"


class StaleWrite(BookingError):
    """Conditional write lost a race: the appointment changed since it was read."""

    error_code = "STALE_WRITE"


class CalendarSyncError(Exception):
    """Base class for external calendar failures (never fatal to a booking)."""

    error_code = "CALENDAR_SYNC_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "error_message": self.message,
            "details": self.details,
        }


class NotConfigured(CalendarSyncError):
    """Tenant has no client ID / API key configured."""

    error_code = "CALENDAR_NOT_CONFIGURED"


class AuthRequired(CalendarSyncError):
    """No usable token: the user must go through the consent flow again."""

    error_code = "CALENDAR_AUTH_REQUIRED"


class SessionExpired(AuthRequired):
    """Token expired or was rejected (401) while in use."""

    error_code = "CALENDAR_SESSION_EXPIRED"


class PopupBlocked(AuthRequired):
    """The browser blocked the consent popup."""

    error_code = "CALENDAR_POPUP_BLOCKED"


class ProviderUnavailable(CalendarSyncError):
    """Provider unreachable, timed out, rate-limited past retries, or breaker open."""

    error_code = "CALENDAR_PROVIDER_UNAVAILABLE"


class ProviderError(CalendarSyncError):
    """Provider rejected the request for a reason other than auth or not-found."""

    error_code = "CALENDAR_PROVIDER_ERROR"


class CalendarEventNotFound(CalendarSyncError):
    """The mirrored event no longer exists in the external calendar."""

    error_code = "CALENDAR_EVENT_NOT_FOUND"
