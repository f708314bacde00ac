"""
Appointment lifecycle state machine.

- AppointmentFSM: validates status transitions and reschedules
- TransitionPlan: side effects the orchestrator applies for a transition
"""

from booking.fsm.appointment_fsm import AppointmentFSM, ProjectionKind, TransitionPlan

__all__ = ["AppointmentFSM", "ProjectionKind", "TransitionPlan"]
