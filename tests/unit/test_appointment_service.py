"""
Unit tests for appointment_service.py - appointment lifecycle.

Tests coverage:
- create_appointment(): initial status per payment method, slot conflicts
  (pre-check and unique index), plan credit failures not failing the booking
- update_appointment(): field whitelist, null guards, terminal states, slot re-validation
- integrity errors: only the slot index maps to a scheduling conflict
- update_appointment_status(): FSM and CLIENT restrictions, notifications
- delete_appointments(): all-or-nothing when any target is COMPLETED
- find_all_appointments(): list vs. page result (page needs limit)
- scheduling queries: slot lock key, conflict lookup and listing filters
"""

from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError

from booking.exceptions import (
    BadRequestError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    SchedulingConflictError,
)
from booking.services.appointment_service import (
    AppointmentPage,
    _listing_conditions,
    create_appointment,
    delete_appointments,
    find_all_appointments,
    find_conflicting_appointment,
    find_one_appointment,
    lock_professional_schedule,
    update_appointment,
    update_appointment_status,
)
from booking.services.authorization import ListingScope, Requester
from database.models import Appointment, AppointmentStatus, PaymentMethod, UserRole
from tests.mocks import (
    bind_session,
    compile_postgres,
    executed_statement,
    scalar_result,
    scalars_result,
)

MODULE = "booking.services.appointment_service"
SAO_PAULO_TZ = ZoneInfo("America/Sao_Paulo")


class DriverIntegrityError(Exception):
    """Stand-in for the asyncpg error carried by IntegrityError.orig."""

    def __init__(self, message: str, constraint_name: str | None = None):
        super().__init__(message)
        self.constraint_name = constraint_name


def integrity_error(constraint_name: str | None, message: str = "violation") -> IntegrityError:
    return IntegrityError("INSERT", {}, DriverIntegrityError(message, constraint_name))


@pytest.fixture
def owner(client_user, tenant_id):
    return Requester(client_user.id, client_user.email, UserRole.CLIENT, tenant_id)


@pytest.fixture
def lifecycle(session):
    """Patch the session factory, query helpers and notification dispatch."""
    with patch(f"{MODULE}.get_async_session") as mock_get_session, \
         patch(f"{MODULE}.ensure_tenant_entity", new_callable=AsyncMock) as mock_ensure, \
         patch(f"{MODULE}.load_services", new_callable=AsyncMock) as mock_services, \
         patch(f"{MODULE}.lock_professional_schedule", new_callable=AsyncMock) as mock_lock, \
         patch(f"{MODULE}.find_conflicting_appointment", new_callable=AsyncMock) as mock_conflict, \
         patch(f"{MODULE}.get_appointment", new_callable=AsyncMock) as mock_get, \
         patch(f"{MODULE}.create_direct_payment", new_callable=AsyncMock) as mock_payment, \
         patch(f"{MODULE}.dispatch_notifications", new_callable=AsyncMock) as mock_dispatch:
        bind_session(mock_get_session, session)
        mock_conflict.return_value = None
        yield MagicMock(
            session=session,
            ensure=mock_ensure,
            services=mock_services,
            lock=mock_lock,
            conflict=mock_conflict,
            get=mock_get,
            payment=mock_payment,
            dispatch=mock_dispatch,
        )


# ============================================================================
# create_appointment
# ============================================================================


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_offline_booking_is_confirmed_and_notified(
        self, lifecycle, tenant_id, client_user, professional, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.get.return_value = appointment

        result = await create_appointment(
            tenant_id=tenant_id,
            user_id=client_user.id,
            appointment_date=appointment.date,
            service_ids=[service.id],
            professional_id=professional.id,
        )

        assert result is appointment
        added = lifecycle.session.add.call_args.args[0]
        assert added.status == AppointmentStatus.CONFIRMED
        assert added.services == [service]
        lifecycle.lock.assert_awaited_once_with(lifecycle.session, tenant_id, professional.id)
        lifecycle.session.commit.assert_awaited_once()

        outbox = lifecycle.dispatch.await_args.args[0]
        assert len(outbox) == 3  # chat + client email + professional email

    @pytest.mark.asyncio
    async def test_online_booking_is_pending_and_not_notified(
        self, lifecycle, tenant_id, client_user, service, appointment
    ):
        appointment.status = AppointmentStatus.PENDING
        lifecycle.services.return_value = [service]
        lifecycle.get.return_value = appointment

        await create_appointment(
            tenant_id=tenant_id,
            user_id=client_user.id,
            appointment_date=appointment.date,
            service_ids=[service.id],
            payment_method=PaymentMethod.ONLINE,
        )

        added = lifecycle.session.add.call_args.args[0]
        assert added.status == AppointmentStatus.PENDING
        lifecycle.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_booking_without_professional_skips_lock(
        self, lifecycle, tenant_id, client_user, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.get.return_value = appointment

        await create_appointment(
            tenant_id=tenant_id,
            user_id=client_user.id,
            appointment_date=appointment.date,
            service_ids=[service.id],
        )

        lifecycle.lock.assert_not_awaited()
        lifecycle.conflict.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_taken_slot_raises_conflict(
        self, lifecycle, tenant_id, client_user, professional, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.conflict.return_value = appointment

        with pytest.raises(SchedulingConflictError) as exc_info:
            await create_appointment(
                tenant_id=tenant_id,
                user_id=client_user.id,
                appointment_date=appointment.date,
                service_ids=[service.id],
                professional_id=professional.id,
            )

        assert exc_info.value.status_code == 409
        lifecycle.session.add.assert_not_called()
        lifecycle.session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unique_index_violation_becomes_conflict(
        self, lifecycle, tenant_id, client_user, professional, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.session.commit.side_effect = integrity_error("uq_appointments_professional_slot")

        with pytest.raises(SchedulingConflictError):
            await create_appointment(
                tenant_id=tenant_id,
                user_id=client_user.id,
                appointment_date=appointment.date,
                service_ids=[service.id],
                professional_id=professional.id,
            )

        lifecycle.session.rollback.assert_awaited_once()
        lifecycle.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_constraint_violation_is_bad_request(
        self, lifecycle, tenant_id, client_user, professional, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.session.commit.side_effect = integrity_error(
            "appointments_location_id_fkey", "insert or update violates foreign key constraint"
        )

        with pytest.raises(BadRequestError) as exc_info:
            await create_appointment(
                tenant_id=tenant_id,
                user_id=client_user.id,
                appointment_date=appointment.date,
                service_ids=[service.id],
                professional_id=professional.id,
            )

        assert exc_info.value.status_code == 400
        assert exc_info.value.details == {"constraint": "appointments_location_id_fkey"}
        lifecycle.session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slot_index_named_only_in_message_is_conflict(
        self, lifecycle, tenant_id, client_user, professional, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.session.commit.side_effect = integrity_error(
            None, 'duplicate key value violates unique constraint "uq_appointments_professional_slot"'
        )

        with pytest.raises(SchedulingConflictError):
            await create_appointment(
                tenant_id=tenant_id,
                user_id=client_user.id,
                appointment_date=appointment.date,
                service_ids=[service.id],
                professional_id=professional.id,
            )

    @pytest.mark.asyncio
    async def test_unknown_service_is_rejected(self, lifecycle, tenant_id, client_user):
        lifecycle.services.side_effect = BadRequestError("Service not found")

        with pytest.raises(BadRequestError):
            await create_appointment(
                tenant_id=tenant_id,
                user_id=client_user.id,
                appointment_date=datetime(2026, 11, 3, 10, 0, tzinfo=SAO_PAULO_TZ),
                service_ids=[uuid4()],
            )

    @pytest.mark.asyncio
    async def test_plan_credit_payment_failure_does_not_fail_booking(
        self, lifecycle, tenant_id, client_user, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.get.return_value = appointment
        lifecycle.payment.side_effect = BadRequestError("No active subscription with credits found")

        result = await create_appointment(
            tenant_id=tenant_id,
            user_id=client_user.id,
            appointment_date=appointment.date,
            service_ids=[service.id],
            payment_method=PaymentMethod.PLAN_CREDIT,
        )

        assert result is appointment
        kwargs = lifecycle.payment.await_args.kwargs
        assert kwargs["amount"] == 0
        assert kwargs["method"] == PaymentMethod.PLAN_CREDIT
        lifecycle.dispatch.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_plan_credit_unexpected_error_is_logged_not_raised(
        self, lifecycle, tenant_id, client_user, service, appointment
    ):
        lifecycle.services.return_value = [service]
        lifecycle.get.return_value = appointment
        lifecycle.payment.side_effect = RuntimeError("db gone")

        result = await create_appointment(
            tenant_id=tenant_id,
            user_id=client_user.id,
            appointment_date=appointment.date,
            service_ids=[service.id],
            payment_method=PaymentMethod.PLAN_CREDIT,
        )

        assert result is appointment


# ============================================================================
# update_appointment
# ============================================================================


class TestUpdateAppointment:
    @pytest.mark.asyncio
    async def test_status_is_not_editable_here(self, lifecycle, tenant_id, appointment_id):
        with pytest.raises(BadRequestError) as exc_info:
            await update_appointment(appointment_id, tenant_id, {"status": "CANCELED"})

        assert exc_info.value.details == {"fields": ["status"]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["date", "service_ids"])
    async def test_required_field_cannot_be_cleared(self, lifecycle, tenant_id, appointment_id, field):
        with pytest.raises(BadRequestError) as exc_info:
            await update_appointment(appointment_id, tenant_id, {field: None})

        assert exc_info.value.details == {"fields": [field]}
        lifecycle.get.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_optional_references_can_be_cleared(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment

        await update_appointment(appointment.id, tenant_id, {"location_id": None, "notes": None})

        assert appointment.location_id is None
        assert appointment.notes is None
        lifecycle.session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_appointment(self, lifecycle, tenant_id, appointment_id):
        lifecycle.get.return_value = None

        with pytest.raises(NotFoundError):
            await update_appointment(appointment_id, tenant_id, {"notes": "x"})

    @pytest.mark.asyncio
    async def test_client_cannot_edit(self, lifecycle, tenant_id, appointment, owner):
        lifecycle.get.return_value = appointment

        with pytest.raises(ForbiddenError):
            await update_appointment(appointment.id, tenant_id, {"notes": "x"}, requester=owner)

    @pytest.mark.asyncio
    async def test_terminal_appointment_cannot_be_edited(self, lifecycle, tenant_id, appointment):
        appointment.status = AppointmentStatus.COMPLETED
        lifecycle.get.return_value = appointment

        with pytest.raises(BadRequestError):
            await update_appointment(appointment.id, tenant_id, {"notes": "x"})

    @pytest.mark.asyncio
    async def test_reschedule_revalidates_slot(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment
        other = MagicMock(id=uuid4())
        lifecycle.conflict.return_value = other
        new_date = appointment.date + timedelta(hours=1)

        with pytest.raises(SchedulingConflictError):
            await update_appointment(appointment.id, tenant_id, {"date": new_date})

        lifecycle.conflict.assert_awaited_once_with(
            lifecycle.session,
            tenant_id,
            appointment.professional_id,
            new_date,
            exclude_id=appointment.id,
        )

    @pytest.mark.asyncio
    async def test_notes_only_change_skips_slot_check(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment

        await update_appointment(appointment.id, tenant_id, {"notes": "Trazer referência"})

        assert appointment.notes == "Trazer referência"
        lifecycle.lock.assert_not_awaited()
        lifecycle.conflict.assert_not_awaited()
        lifecycle.session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reschedule_applies_new_date(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment
        new_date = appointment.date + timedelta(hours=2)

        await update_appointment(appointment.id, tenant_id, {"date": new_date})

        assert appointment.date == new_date
        lifecycle.lock.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_not_null_violation_on_update_is_bad_request(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment
        lifecycle.session.commit.side_effect = integrity_error(
            None, 'null value in column "date" violates not-null constraint'
        )

        with pytest.raises(BadRequestError) as exc_info:
            await update_appointment(appointment.id, tenant_id, {"notes": "x"})

        assert not isinstance(exc_info.value, SchedulingConflictError)
        lifecycle.session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slot_index_violation_on_update_is_conflict(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment
        lifecycle.session.commit.side_effect = integrity_error("uq_appointments_professional_slot")

        with pytest.raises(SchedulingConflictError):
            await update_appointment(
                appointment.id, tenant_id, {"date": appointment.date + timedelta(hours=1)}
            )


# ============================================================================
# update_appointment_status
# ============================================================================


class TestUpdateAppointmentStatus:
    @pytest.mark.asyncio
    async def test_owner_can_cancel_and_is_notified(self, lifecycle, tenant_id, appointment, owner):
        lifecycle.get.return_value = appointment

        result = await update_appointment_status(
            appointment.id, tenant_id, AppointmentStatus.CANCELED, requester=owner
        )

        assert result.status == AppointmentStatus.CANCELED
        lifecycle.session.commit.assert_awaited_once()
        outbox = lifecycle.dispatch.await_args.args[0]
        assert len(outbox) == 3  # chat + client email + professional email

    @pytest.mark.asyncio
    async def test_client_cannot_complete(self, lifecycle, tenant_id, appointment, owner):
        lifecycle.get.return_value = appointment

        with pytest.raises(ForbiddenError) as exc_info:
            await update_appointment_status(
                appointment.id, tenant_id, AppointmentStatus.COMPLETED, requester=owner
            )

        assert exc_info.value.message == "Clients can only cancel appointments"
        assert appointment.status == AppointmentStatus.CONFIRMED
        lifecycle.session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_cannot_cancel_others(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment
        stranger = Requester(uuid4(), "bruno@example.com", UserRole.CLIENT, tenant_id)

        with pytest.raises(ForbiddenError) as exc_info:
            await update_appointment_status(
                appointment.id, tenant_id, AppointmentStatus.CANCELED, requester=stranger
            )

        assert exc_info.value.message == "You can only cancel your own appointments"

    @pytest.mark.asyncio
    async def test_terminal_status_cannot_change(self, lifecycle, tenant_id, appointment):
        appointment.status = AppointmentStatus.CANCELED
        lifecycle.get.return_value = appointment

        with pytest.raises(InvalidTransitionError):
            await update_appointment_status(appointment.id, tenant_id, AppointmentStatus.CONFIRMED)

        lifecycle.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_appointment(self, lifecycle, tenant_id, appointment_id):
        lifecycle.get.return_value = None

        with pytest.raises(NotFoundError):
            await update_appointment_status(appointment_id, tenant_id, AppointmentStatus.CANCELED)


# ============================================================================
# find / delete
# ============================================================================


class TestFindAppointments:
    @pytest.mark.asyncio
    async def test_find_one_checks_view_permission(self, lifecycle, tenant_id, appointment):
        lifecycle.get.return_value = appointment
        stranger = Requester(uuid4(), "bruno@example.com", UserRole.CLIENT, tenant_id)

        with pytest.raises(ForbiddenError):
            await find_one_appointment(appointment.id, tenant_id, requester=stranger)

    @pytest.mark.asyncio
    async def test_find_one_missing(self, lifecycle, tenant_id, appointment_id):
        lifecycle.get.return_value = None

        with pytest.raises(NotFoundError):
            await find_one_appointment(appointment_id, tenant_id)

    @pytest.mark.asyncio
    async def test_unpaginated_listing_returns_list(self, lifecycle, tenant_id, appointment):
        lifecycle.session.execute.return_value = scalars_result([appointment])

        result = await find_all_appointments(tenant_id, target_date=date(2026, 11, 3))

        assert result == [appointment]

    @pytest.mark.asyncio
    async def test_paginated_listing_returns_page(self, tenant_id, appointment):
        page_session = AsyncMock()
        page_session.execute.return_value = scalars_result([appointment])
        count_session = AsyncMock()
        count_session.execute.return_value = scalar_result(11)

        sessions = iter([page_session, count_session])

        def next_session():
            context = MagicMock()
            context.__aenter__ = AsyncMock(return_value=next(sessions))
            context.__aexit__ = AsyncMock(return_value=False)
            return context

        with patch(f"{MODULE}.get_async_session", side_effect=next_session):
            result = await find_all_appointments(tenant_id, page=2, limit=5)

        assert isinstance(result, AppointmentPage)
        assert result.data == [appointment]
        assert result.total == 11
        assert result.page == 2
        assert result.total_pages == 3

    @pytest.mark.asyncio
    async def test_page_without_limit_is_unpaginated(self, lifecycle, tenant_id, appointment):
        lifecycle.session.execute.return_value = scalars_result([appointment])

        result = await find_all_appointments(tenant_id, page=2)

        assert result == [appointment]
        lifecycle.session.execute.assert_awaited_once()


class TestDeleteAppointments:
    @pytest.mark.asyncio
    async def test_completed_target_rejects_whole_batch(self, lifecycle, tenant_id):
        rows = MagicMock()
        rows.all.return_value = [
            MagicMock(id=uuid4(), status=AppointmentStatus.CONFIRMED),
            MagicMock(id=uuid4(), status=AppointmentStatus.COMPLETED),
        ]
        lifecycle.session.execute.return_value = rows

        with pytest.raises(BadRequestError):
            await delete_appointments([uuid4(), uuid4()], tenant_id)

        # Only the locking SELECT ran; nothing was deleted
        assert lifecycle.session.execute.await_count == 1
        lifecycle.session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deletes_payments_then_appointments(self, lifecycle, tenant_id):
        ids = [uuid4(), uuid4()]
        rows = MagicMock()
        rows.all.return_value = [
            MagicMock(id=ids[0], status=AppointmentStatus.CONFIRMED),
            MagicMock(id=ids[1], status=AppointmentStatus.CANCELED),
        ]
        deleted = MagicMock(rowcount=2)
        lifecycle.session.execute.side_effect = [rows, MagicMock(), deleted]

        count = await delete_appointments(ids, tenant_id)

        assert count == 2
        assert lifecycle.session.execute.await_count == 3
        lifecycle.session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_staff_cannot_delete(self, lifecycle, tenant_id):
        staff = Requester(uuid4(), "carlos@salon.com", UserRole.STAFF, tenant_id)

        with pytest.raises(ForbiddenError):
            await delete_appointments([uuid4()], tenant_id, requester=staff)

        lifecycle.session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_batch(self, lifecycle, tenant_id):
        assert await delete_appointments([], tenant_id) == 0


# ============================================================================
# Scheduling queries
# ============================================================================


def listing_sql(tenant_id, scope: ListingScope, target_date=None) -> tuple[str, dict]:
    conditions = _listing_conditions(tenant_id, target_date, scope)
    return compile_postgres(select(Appointment).where(and_(*conditions)))


class TestSchedulingQueries:
    @pytest.mark.asyncio
    async def test_slot_lock_is_keyed_by_tenant_and_professional(
        self, session, tenant_id, professional_id
    ):
        await lock_professional_schedule(session, tenant_id, professional_id)

        statement, params = session.execute.await_args.args
        assert "pg_advisory_xact_lock" in str(statement)
        assert params == {"key": f"appointment-slot:{tenant_id}:{professional_id}"}

    @pytest.mark.asyncio
    async def test_conflict_lookup_ignores_canceled_and_self(
        self, session, tenant_id, professional_id, appointment
    ):
        session.execute.return_value = scalar_result(None)

        result = await find_conflicting_appointment(
            session, tenant_id, professional_id, appointment.date, exclude_id=appointment.id
        )

        assert result is None
        sql, params = compile_postgres(executed_statement(session))
        assert "appointments.professional_id =" in sql
        assert "appointments.date =" in sql
        assert "appointments.status !=" in sql
        assert "appointments.id !=" in sql
        assert AppointmentStatus.CANCELED in params.values()
        assert appointment.id in params.values()

    @pytest.mark.asyncio
    async def test_conflict_lookup_without_exclusion(self, session, tenant_id, professional_id, appointment):
        session.execute.return_value = scalar_result(None)

        await find_conflicting_appointment(session, tenant_id, professional_id, appointment.date)

        sql, _ = compile_postgres(executed_statement(session))
        assert "appointments.id !=" not in sql

    def test_staff_listing_matches_professional_email_case_insensitively(self, tenant_id):
        sql, params = listing_sql(tenant_id, ListingScope(professional_email="carlos@salon.com"))

        assert "EXISTS (SELECT 1 FROM professionals" in sql
        assert "professionals.id = appointments.professional_id" in sql
        assert "professionals.tenant_id =" in sql
        assert "lower(professionals.email) =" in sql
        assert "carlos@salon.com" in params.values()
        assert "appointments.user_id" not in sql

    def test_client_listing_is_limited_to_own_appointments(self, tenant_id, user_id):
        sql, params = listing_sql(tenant_id, ListingScope(user_id=user_id))

        assert "appointments.user_id =" in sql
        assert user_id in params.values()
        assert "professionals" not in sql

    def test_unscoped_listing_filters_only_by_tenant_and_day(self, tenant_id):
        sql, params = listing_sql(tenant_id, ListingScope(), target_date=date(2026, 11, 3))

        assert "appointments.tenant_id =" in sql
        assert "appointments.date >=" in sql
        assert "appointments.date <=" in sql
        assert "user_id =" not in sql
        assert "professionals" not in sql
