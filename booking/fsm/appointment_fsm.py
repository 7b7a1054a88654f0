"""
Appointment lifecycle state machine.

Status is an explicit enumeration (AppointmentStatus) with a transition
table. Every status write goes through validate_transition() before it is
persisted; CANCELED and COMPLETED are terminal.
"""

from typing import ClassVar

from booking.exceptions import InvalidTransitionError
from database.models import AppointmentStatus, PaymentMethod


class AppointmentFSM:
    """
    Transition rules for appointment status.

    Example:
        >>> AppointmentFSM.can_transition(AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)
        True
        >>> AppointmentFSM.can_transition(AppointmentStatus.CANCELED, AppointmentStatus.CONFIRMED)
        False
    """

    # from_status -> allowed to_status set
    TRANSITIONS: ClassVar[dict[AppointmentStatus, frozenset[AppointmentStatus]]] = {
        AppointmentStatus.PENDING: frozenset({
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.CANCELED,
            AppointmentStatus.COMPLETED,
        }),
        AppointmentStatus.CONFIRMED: frozenset({
            AppointmentStatus.CANCELED,
            AppointmentStatus.COMPLETED,
        }),
        AppointmentStatus.CANCELED: frozenset(),
        AppointmentStatus.COMPLETED: frozenset(),
    }

    TERMINAL_STATES: ClassVar[frozenset[AppointmentStatus]] = frozenset({
        AppointmentStatus.CANCELED,
        AppointmentStatus.COMPLETED,
    })

    @classmethod
    def can_transition(
        cls, current: AppointmentStatus, target: AppointmentStatus
    ) -> bool:
        return target in cls.TRANSITIONS.get(current, frozenset())

    @classmethod
    def validate_transition(
        cls, current: AppointmentStatus, target: AppointmentStatus
    ) -> None:
        """
        Raise InvalidTransitionError unless current -> target is allowed.

        Same-state writes are rejected as well: the table has no self-loops.
        """
        if not cls.can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot change appointment status from {current.value} to {target.value}",
                current=current.value,
                target=target.value,
            )

    @classmethod
    def is_terminal(cls, status: AppointmentStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @staticmethod
    def initial_status(payment_method: PaymentMethod) -> AppointmentStatus:
        """ONLINE bookings wait for the gateway webhook; everything else is confirmed."""
        if payment_method == PaymentMethod.ONLINE:
            return AppointmentStatus.PENDING
        return AppointmentStatus.CONFIRMED
