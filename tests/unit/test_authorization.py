"""
Unit tests for authorization.py - role/operation policy table.

Tests coverage:
- ADMIN allowed everything
- STAFF limited to appointments of the professional sharing their email
- CLIENT: view own, cancel own, nothing else
- Service callers (requester None) are never restricted
- Listing scopes per role
"""

from uuid import uuid4

import pytest

from booking.exceptions import ForbiddenError
from booking.services.authorization import (
    Operation,
    Requester,
    authorize,
    check_access,
    listing_scope,
)
from database.models import AppointmentStatus, UserRole


@pytest.fixture
def admin(tenant_id):
    return Requester(uuid4(), "admin@salon.com", UserRole.ADMIN, tenant_id)


@pytest.fixture
def staff(tenant_id):
    # Different casing than the professional record
    return Requester(uuid4(), " carlos@salon.COM ", UserRole.STAFF, tenant_id)


@pytest.fixture
def other_staff(tenant_id):
    return Requester(uuid4(), "julia@salon.com", UserRole.STAFF, tenant_id)


@pytest.fixture
def owner(client_user, tenant_id):
    return Requester(client_user.id, client_user.email, UserRole.CLIENT, tenant_id)


@pytest.fixture
def stranger(tenant_id):
    return Requester(uuid4(), "bruno@example.com", UserRole.CLIENT, tenant_id)


class TestAdmin:
    @pytest.mark.parametrize("operation", list(Operation))
    def test_admin_allowed_everything(self, admin, appointment, operation):
        assert check_access(operation, admin, appointment, AppointmentStatus.COMPLETED) is None


class TestStaff:
    def test_assigned_staff_matches_email_case_insensitively(self, staff, appointment):
        assert check_access(Operation.VIEW, staff, appointment) is None
        assert check_access(Operation.UPDATE, staff, appointment) is None
        assert (
            check_access(Operation.UPDATE_STATUS, staff, appointment, AppointmentStatus.COMPLETED)
            is None
        )

    def test_unassigned_staff_denied(self, other_staff, appointment):
        reason = check_access(Operation.VIEW, other_staff, appointment)

        assert reason == "Staff can only manage appointments assigned to them"

    def test_staff_denied_when_no_professional(self, staff, appointment):
        appointment.professional = None

        assert check_access(Operation.UPDATE, staff, appointment) is not None

    def test_staff_cannot_delete_many(self, staff):
        assert check_access(Operation.DELETE_MANY, staff) is not None


class TestClient:
    def test_client_views_own_appointment(self, owner, appointment):
        assert check_access(Operation.VIEW, owner, appointment) is None

    def test_client_cannot_view_others(self, stranger, appointment):
        assert check_access(Operation.VIEW, stranger, appointment) == (
            "You can only view your own appointments"
        )

    def test_client_cannot_edit(self, owner, appointment):
        assert check_access(Operation.UPDATE, owner, appointment) == (
            "Clients cannot edit appointments"
        )

    def test_client_can_cancel_own(self, owner, appointment):
        assert (
            check_access(Operation.UPDATE_STATUS, owner, appointment, AppointmentStatus.CANCELED)
            is None
        )

    @pytest.mark.parametrize(
        "target", [AppointmentStatus.CONFIRMED, AppointmentStatus.COMPLETED, AppointmentStatus.PENDING]
    )
    def test_client_can_only_cancel(self, owner, appointment, target):
        assert check_access(Operation.UPDATE_STATUS, owner, appointment, target) == (
            "Clients can only cancel appointments"
        )

    def test_client_cannot_cancel_others(self, stranger, appointment):
        assert check_access(
            Operation.UPDATE_STATUS, stranger, appointment, AppointmentStatus.CANCELED
        ) == "You can only cancel your own appointments"


class TestAuthorize:
    def test_service_caller_is_unrestricted(self, appointment):
        authorize(Operation.DELETE_MANY, None)
        authorize(Operation.UPDATE, None, appointment)

    def test_denial_raises_forbidden_with_context(self, owner, appointment):
        with pytest.raises(ForbiddenError) as exc_info:
            authorize(Operation.UPDATE, owner, appointment)

        assert exc_info.value.status_code == 403
        assert exc_info.value.details == {"operation": "update", "role": "CLIENT"}


class TestListingScope:
    def test_admin_and_service_callers_see_everything(self, admin):
        assert listing_scope(admin).user_id is None
        assert listing_scope(admin).professional_email is None
        assert listing_scope(None).user_id is None

    def test_staff_scope_uses_normalized_email(self, staff):
        assert listing_scope(staff).professional_email == "carlos@salon.com"

    def test_client_scope_is_own_user(self, owner):
        assert listing_scope(owner).user_id == owner.user_id
