"""
Role-scoped authorization for appointment operations.

A policy table maps (role, operation) to a predicate over the requester and
the target appointment. Predicates return None to allow or a denial reason.
authorize() is called once at the top of each lifecycle operation; a
requester of None is an internal service caller and is never restricted.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from booking.exceptions import ForbiddenError
from database.models import Appointment, AppointmentStatus, UserRole


@dataclass(frozen=True)
class Requester:
    """Authenticated caller, built from the bearer token claims."""

    user_id: UUID
    email: str
    role: UserRole
    tenant_id: UUID


class Operation(str, Enum):
    VIEW = "view"
    UPDATE = "update"
    UPDATE_STATUS = "update_status"
    DELETE_MANY = "delete_many"


@dataclass(frozen=True)
class AccessRequest:
    requester: Requester
    appointment: Appointment | None = None
    target_status: AppointmentStatus | None = None


Policy = Callable[[AccessRequest], str | None]


def _allow(_: AccessRequest) -> str | None:
    return None


def _deny(reason: str) -> Policy:
    def policy(_: AccessRequest) -> str | None:
        return reason

    return policy


def is_own_appointment(requester: Requester, appointment: Appointment | None) -> bool:
    return appointment is not None and appointment.user_id == requester.user_id


def is_assigned_professional(requester: Requester, appointment: Appointment | None) -> bool:
    """Staff are linked to a professional record through their account email."""
    if appointment is None or appointment.professional is None:
        return False
    professional_email = appointment.professional.email
    return bool(professional_email) and (
        professional_email.strip().lower() == requester.email.strip().lower()
    )


def _client_view(request: AccessRequest) -> str | None:
    if not is_own_appointment(request.requester, request.appointment):
        return "You can only view your own appointments"
    return None


def _client_update_status(request: AccessRequest) -> str | None:
    if request.target_status != AppointmentStatus.CANCELED:
        return "Clients can only cancel appointments"
    if not is_own_appointment(request.requester, request.appointment):
        return "You can only cancel your own appointments"
    return None


def _staff_assigned(request: AccessRequest) -> str | None:
    if not is_assigned_professional(request.requester, request.appointment):
        return "Staff can only manage appointments assigned to them"
    return None


POLICIES: dict[tuple[UserRole, Operation], Policy] = {
    (UserRole.ADMIN, Operation.VIEW): _allow,
    (UserRole.ADMIN, Operation.UPDATE): _allow,
    (UserRole.ADMIN, Operation.UPDATE_STATUS): _allow,
    (UserRole.ADMIN, Operation.DELETE_MANY): _allow,
    (UserRole.STAFF, Operation.VIEW): _staff_assigned,
    (UserRole.STAFF, Operation.UPDATE): _staff_assigned,
    (UserRole.STAFF, Operation.UPDATE_STATUS): _staff_assigned,
    (UserRole.STAFF, Operation.DELETE_MANY): _deny("Only administrators can delete appointments"),
    (UserRole.CLIENT, Operation.VIEW): _client_view,
    (UserRole.CLIENT, Operation.UPDATE): _deny("Clients cannot edit appointments"),
    (UserRole.CLIENT, Operation.UPDATE_STATUS): _client_update_status,
    (UserRole.CLIENT, Operation.DELETE_MANY): _deny("Only administrators can delete appointments"),
}


def check_access(
    operation: Operation,
    requester: Requester | None,
    appointment: Appointment | None = None,
    target_status: AppointmentStatus | None = None,
) -> str | None:
    """Return the denial reason, or None when the operation is allowed."""
    if requester is None:
        return None

    policy = POLICIES.get((requester.role, operation))
    if policy is None:
        return "Operation not permitted"

    return policy(AccessRequest(requester, appointment, target_status))


def authorize(
    operation: Operation,
    requester: Requester | None,
    appointment: Appointment | None = None,
    target_status: AppointmentStatus | None = None,
) -> None:
    """Raise ForbiddenError when the policy table denies the operation."""
    reason = check_access(operation, requester, appointment, target_status)
    if reason is not None:
        raise ForbiddenError(
            reason,
            operation=operation.value,
            role=requester.role.value if requester else None,
        )


@dataclass(frozen=True)
class ListingScope:
    """Row filter applied to appointment listings."""

    user_id: UUID | None = None
    professional_email: str | None = None


def listing_scope(requester: Requester | None) -> ListingScope:
    """
    Clients see their own appointments, staff see those of the professional
    sharing their email (nothing when no professional is linked), admins and
    service callers see everything.
    """
    if requester is None or requester.role == UserRole.ADMIN:
        return ListingScope()
    if requester.role == UserRole.STAFF:
        return ListingScope(professional_email=requester.email.strip().lower())
    return ListingScope(user_id=requester.user_id)
