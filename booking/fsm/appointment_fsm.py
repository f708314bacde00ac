"""
AppointmentFSM - lifecycle rules for a single appointment.

The FSM is pure: it never touches storage or the calendar. It answers
"may this appointment go from X to Y?" and, if so, returns a TransitionPlan
listing the side effects the orchestrator must apply:

- revalidate: re-run the committed-overlap check inside the conditional write
- projection: what to do with the mirrored calendar event afterwards

    requested ──approve──> confirmed ──> waiting ──> in_progress ──> finished
        │                      │            │             │
        └──────> cancelled <───┴────────────┴─────────────┘
                               │
                               └──> no_show
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from booking.errors import InvalidTransition
from database.models import TERMINAL_STATUSES, AppointmentStatus

logger = logging.getLogger(__name__)


class ProjectionKind(str, Enum):
    """Calendar side effect of a committed change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NONE = "none"


@dataclass(frozen=True)
class TransitionPlan:
    from_status: AppointmentStatus
    to_status: AppointmentStatus
    revalidate: bool
    projection: ProjectionKind


class AppointmentFSM:
    """
    Appointment status state machine.

    Example:
        >>> plan = AppointmentFSM(AppointmentStatus.REQUESTED).plan_transition(
        ...     AppointmentStatus.CONFIRMED
        ... )
        >>> plan.revalidate, plan.projection
        (True, <ProjectionKind.CREATE: 'create'>)
    """

    # from_status -> {to_status: (revalidate, projection)}
    TRANSITIONS: ClassVar[dict[AppointmentStatus, dict[AppointmentStatus, tuple[bool, ProjectionKind]]]] = {
        AppointmentStatus.REQUESTED: {
            # Approval: the request becomes capacity, so it must still fit
            AppointmentStatus.CONFIRMED: (True, ProjectionKind.CREATE),
            AppointmentStatus.CANCELLED: (False, ProjectionKind.DELETE),
        },
        AppointmentStatus.CONFIRMED: {
            AppointmentStatus.WAITING: (False, ProjectionKind.NONE),
            AppointmentStatus.CANCELLED: (False, ProjectionKind.DELETE),
            AppointmentStatus.NO_SHOW: (False, ProjectionKind.DELETE),
        },
        AppointmentStatus.WAITING: {
            AppointmentStatus.IN_PROGRESS: (False, ProjectionKind.NONE),
            AppointmentStatus.CANCELLED: (False, ProjectionKind.DELETE),
        },
        AppointmentStatus.IN_PROGRESS: {
            AppointmentStatus.FINISHED: (False, ProjectionKind.NONE),
            AppointmentStatus.CANCELLED: (False, ProjectionKind.DELETE),
        },
    }

    # Statuses whose time/professional/service may still change
    RESCHEDULABLE: ClassVar[frozenset[AppointmentStatus]] = frozenset({
        AppointmentStatus.REQUESTED,
        AppointmentStatus.CONFIRMED,
    })

    def __init__(self, status: AppointmentStatus) -> None:
        self._status = status

    @property
    def status(self) -> AppointmentStatus:
        return self._status

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_STATUSES

    def can_transition(self, to_status: AppointmentStatus) -> bool:
        return to_status in self.TRANSITIONS.get(self._status, {})

    def allowed_targets(self) -> list[AppointmentStatus]:
        return list(self.TRANSITIONS.get(self._status, {}))

    def plan_transition(self, to_status: AppointmentStatus) -> TransitionPlan:
        """
        Plan a status change.

        Raises:
            InvalidTransition: transition not in the table (including any
                move out of a terminal status and any move into requested)
        """
        if not self.can_transition(to_status):
            logger.warning(
                "Appointment transition rejected: %s -> %s",
                self._status.value,
                to_status.value,
            )
            raise InvalidTransition(
                f"Não é possível mudar o status de '{self._status.value}' para '{to_status.value}'",
                details={
                    "from_status": self._status.value,
                    "to_status": to_status.value,
                    "allowed": [s.value for s in self.allowed_targets()],
                },
            )

        revalidate, projection = self.TRANSITIONS[self._status][to_status]
        logger.debug(
            "Appointment transition planned: %s -> %s | revalidate=%s | projection=%s",
            self._status.value,
            to_status.value,
            revalidate,
            projection.value,
        )
        return TransitionPlan(
            from_status=self._status,
            to_status=to_status,
            revalidate=revalidate,
            projection=projection,
        )

    def plan_reschedule(self) -> TransitionPlan:
        """
        Plan a change of time, professional or service (status unchanged).

        Requested appointments are not mirrored in the calendar, so only a
        confirmed appointment updates its event.
        """
        if self._status not in self.RESCHEDULABLE:
            raise InvalidTransition(
                f"Agendamentos com status '{self._status.value}' não podem ser remarcados",
                details={
                    "from_status": self._status.value,
                    "reschedulable": sorted(s.value for s in self.RESCHEDULABLE),
                },
            )
        projection = (
            ProjectionKind.UPDATE
            if self._status == AppointmentStatus.CONFIRMED
            else ProjectionKind.NONE
        )
        return TransitionPlan(
            from_status=self._status,
            to_status=self._status,
            revalidate=True,
            projection=projection,
        )
