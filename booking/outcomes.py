"""
Booking outcomes and the notification sink.

Every orchestrator operation returns a BookingResult: the committed
appointment plus the outcomes produced along the way (success of the write,
warnings from the calendar projection). Outcomes are also emitted to a
NotificationSink so the UI layer can render toasts without inspecting
return values.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from booking.schemas import AppointmentRecord

logger = logging.getLogger(__name__)


class OutcomeLevel(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class BookingOutcome:
    """
    Single user-facing outcome.

    Attributes:
        level: success | warning | error
        code: Stable machine-readable code (e.g. "CALENDAR_SYNC_FAILED")
        message: Human-readable message (pt-BR, shown to staff)
    """

    level: OutcomeLevel
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"level": self.level.value, "code": self.code, "message": self.message}


@dataclass
class BookingResult:
    appointment: AppointmentRecord
    outcomes: list[BookingOutcome] = field(default_factory=list)

    @property
    def warnings(self) -> list[BookingOutcome]:
        return [o for o in self.outcomes if o.level == OutcomeLevel.WARNING]

    def to_dict(self) -> dict:
        return {
            "appointment": self.appointment.model_dump(mode="json"),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class NotificationSink(Protocol):
    """Receives every outcome produced by the orchestrator."""

    def emit(self, outcome: BookingOutcome) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes outcomes to the application log."""

    def emit(self, outcome: BookingOutcome) -> None:
        level = {
            OutcomeLevel.SUCCESS: logging.INFO,
            OutcomeLevel.WARNING: logging.WARNING,
            OutcomeLevel.ERROR: logging.ERROR,
        }[outcome.level]
        logger.log(level, f"Booking outcome {outcome.code}: {outcome.message}")


class CollectingNotificationSink:
    """Keeps outcomes in memory (tests, request-scoped collection)."""

    def __init__(self) -> None:
        self.outcomes: list[BookingOutcome] = []

    def emit(self, outcome: BookingOutcome) -> None:
        self.outcomes.append(outcome)


# ============================================================================
# Outcome catalogue
# ============================================================================


def appointment_saved(created: bool) -> BookingOutcome:
    return BookingOutcome(
        level=OutcomeLevel.SUCCESS,
        code="APPOINTMENT_CREATED" if created else "APPOINTMENT_UPDATED",
        message="Agendamento salvo com sucesso." if created else "Agendamento atualizado.",
    )


def calendar_sync_failed(error_code: str) -> BookingOutcome:
    if error_code in ("CALENDAR_AUTH_REQUIRED", "CALENDAR_SESSION_EXPIRED"):
        message = (
            "Agendamento salvo, mas a sessão do Google Agenda expirou. "
            "Reconecte o Google Agenda para sincronizar."
        )
    else:
        message = (
            "Agendamento salvo, mas não foi possível sincronizar com o Google Agenda. "
            "A sincronização será tentada novamente."
        )
    return BookingOutcome(level=OutcomeLevel.WARNING, code="CALENDAR_SYNC_FAILED", message=message)
