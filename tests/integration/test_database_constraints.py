"""
Integration tests for database-enforced booking guarantees.

Tests cover:
- Partial unique index on (tenant, professional, date) for non-canceled appointments
- CHECK constraint on subscription credits
- Concurrent PLAN_CREDIT payments never overdrawing a subscription
- Concurrent bookings of one slot yielding a single appointment
- Concurrent webhook reconciliation recording a single COMPLETED payment

Note: These tests assume database migrations have already been applied
(alembic upgrade head); the partial indexes are created by the migration,
not by Base.metadata.create_all(). The module is skipped when the test
database cannot be reached.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from booking.exceptions import BadRequestError, SchedulingConflictError
from booking.services.appointment_service import create_appointment, violated_constraint
from booking.services.payment_service import create_direct_payment, reconcile_payment
from database.connection import AsyncSessionLocal, engine
from database.models import (
    Appointment,
    AppointmentStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Plan,
    Professional,
    Service,
    Subscription,
    SubscriptionStatus,
    Tenant,
    User,
    UserRole,
)
from shared.payment_gateways import GatewayPaymentStatus
from shared.tenant_config import TenantContext

SAO_PAULO_TZ = ZoneInfo("America/Sao_Paulo")
SLOT = datetime(2026, 11, 3, 10, 0, tzinfo=SAO_PAULO_TZ)


async def truncate_all() -> None:
    async with AsyncSessionLocal() as session:
        await session.execute(text("TRUNCATE tenants CASCADE"))
        await session.commit()


@pytest.fixture(scope="function", autouse=True)
async def setup_database():
    """
    Clean the tenant tree before and after each test.

    NOTE: Assumes migrations have been applied (alembic upgrade head).
    """
    try:
        await truncate_all()
    except (OSError, SQLAlchemyError) as e:
        await engine.dispose()
        pytest.skip(f"Test database unavailable: {e}")

    yield

    await truncate_all()
    # Pooled connections are bound to this test's event loop
    await engine.dispose()


@pytest.fixture
async def seeded():
    """Tenant with a client, a professional, a service and a one-credit subscription."""
    async with AsyncSessionLocal() as session:
        tenant = Tenant(id=uuid4(), name="Salão Bela", config={})
        session.add(tenant)
        await session.flush()

        user = User(
            id=uuid4(),
            tenant_id=tenant.id,
            name="Ana Souza",
            email="ana@example.com",
            role=UserRole.CLIENT,
        )
        professional = Professional(
            id=uuid4(), tenant_id=tenant.id, name="Carlos", email="carlos@salon.com"
        )
        service = Service(
            id=uuid4(),
            tenant_id=tenant.id,
            name="Corte",
            duration_minutes=30,
            price=Decimal("80.00"),
        )
        plan = Plan(id=uuid4(), tenant_id=tenant.id, name="Mensal", credits=1, price=Decimal("100.00"))
        session.add_all([user, professional, service, plan])
        await session.flush()

        now = datetime.now(UTC)
        subscription = Subscription(
            id=uuid4(),
            tenant_id=tenant.id,
            user_id=user.id,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            credits_remaining=1,
            start_date=now,
            end_date=now + timedelta(days=30),
        )
        session.add(subscription)
        await session.commit()

    return MagicMock(
        tenant=tenant,
        user=user,
        professional=professional,
        service=service,
        subscription=subscription,
    )


def new_appointment(seeded, status=AppointmentStatus.CONFIRMED, method=PaymentMethod.AT_LOCATION):
    return Appointment(
        id=uuid4(),
        tenant_id=seeded.tenant.id,
        user_id=seeded.user.id,
        professional_id=seeded.professional.id,
        date=SLOT,
        status=status,
        payment_method=method,
    )


# ============================================================================
# Constraints
# ============================================================================


@pytest.mark.asyncio
async def test_double_booking_violates_slot_index(seeded):
    async with AsyncSessionLocal() as session:
        session.add(new_appointment(seeded))
        await session.commit()

    async with AsyncSessionLocal() as session:
        session.add(new_appointment(seeded))
        with pytest.raises(IntegrityError) as exc_info:
            await session.commit()

    assert violated_constraint(exc_info.value) == "uq_appointments_professional_slot"


@pytest.mark.asyncio
async def test_canceled_appointment_frees_the_slot(seeded):
    async with AsyncSessionLocal() as session:
        session.add(new_appointment(seeded, status=AppointmentStatus.CANCELED))
        await session.commit()

    async with AsyncSessionLocal() as session:
        session.add(new_appointment(seeded))
        await session.commit()

        count = await session.scalar(
            select(func.count()).select_from(Appointment).where(
                Appointment.tenant_id == seeded.tenant.id
            )
        )

    assert count == 2


@pytest.mark.asyncio
async def test_negative_credits_violate_check_constraint(seeded):
    async with AsyncSessionLocal() as session:
        subscription = await session.get(Subscription, seeded.subscription.id)
        subscription.credits_remaining = -1
        with pytest.raises(IntegrityError) as exc_info:
            await session.commit()

    assert violated_constraint(exc_info.value) == "check_credits_non_negative"


# ============================================================================
# Concurrency
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_plan_credit_payments_consume_one_credit(seeded):
    with patch(
        "booking.services.payment_service.dispatch_notifications", new_callable=AsyncMock
    ):
        results = await asyncio.gather(
            *[
                create_direct_payment(
                    seeded.tenant.id, seeded.user.id, 0, PaymentMethod.PLAN_CREDIT
                )
                for _ in range(2)
            ],
            return_exceptions=True,
        )

    payments = [r for r in results if isinstance(r, Payment)]
    failures = [r for r in results if isinstance(r, BadRequestError)]
    assert len(payments) == 1
    assert len(failures) == 1
    assert payments[0].subscription_id == seeded.subscription.id

    async with AsyncSessionLocal() as session:
        subscription = await session.get(Subscription, seeded.subscription.id)

    assert subscription.credits_remaining == 0


@pytest.mark.asyncio
async def test_plan_credit_only_touches_active_subscription(seeded):
    async with AsyncSessionLocal() as session:
        plan = await session.scalar(select(Plan).where(Plan.tenant_id == seeded.tenant.id))
        now = datetime.now(UTC)
        canceled = Subscription(
            id=uuid4(),
            tenant_id=seeded.tenant.id,
            user_id=seeded.user.id,
            plan_id=plan.id,
            status=SubscriptionStatus.CANCELED,
            credits_remaining=3,
            start_date=now - timedelta(days=60),
            end_date=now - timedelta(days=30),
        )
        session.add(canceled)
        await session.commit()

    with patch(
        "booking.services.payment_service.dispatch_notifications", new_callable=AsyncMock
    ):
        await create_direct_payment(seeded.tenant.id, seeded.user.id, 0, PaymentMethod.PLAN_CREDIT)

    async with AsyncSessionLocal() as session:
        active = await session.get(Subscription, seeded.subscription.id)
        untouched = await session.get(Subscription, canceled.id)

    assert active.credits_remaining == 0
    assert untouched.credits_remaining == 3


@pytest.mark.asyncio
async def test_concurrent_bookings_of_one_slot(seeded):
    with patch(
        "booking.services.appointment_service.dispatch_notifications", new_callable=AsyncMock
    ):
        results = await asyncio.gather(
            *[
                create_appointment(
                    tenant_id=seeded.tenant.id,
                    user_id=seeded.user.id,
                    appointment_date=SLOT,
                    service_ids=[seeded.service.id],
                    professional_id=seeded.professional.id,
                )
                for _ in range(2)
            ],
            return_exceptions=True,
        )

    booked = [r for r in results if isinstance(r, Appointment)]
    conflicts = [r for r in results if isinstance(r, SchedulingConflictError)]
    assert len(booked) == 1
    assert len(conflicts) == 1


@pytest.mark.asyncio
async def test_concurrent_webhooks_record_one_payment(seeded):
    async with AsyncSessionLocal() as session:
        appointment = new_appointment(
            seeded, status=AppointmentStatus.PENDING, method=PaymentMethod.ONLINE
        )
        session.add(appointment)
        await session.commit()

    gateway = MagicMock()
    gateway.name = "mercadopago"
    gateway.access_token.return_value = "APP_USR-token"
    gateway.get_payment_status = AsyncMock(
        return_value=GatewayPaymentStatus(
            payment_id="mp-1",
            status="approved",
            approved=True,
            amount=Decimal("80.00"),
            external_reference=str(appointment.id),
            approved_at=datetime.now(UTC),
        )
    )
    tenant = TenantContext(tenant_id=seeded.tenant.id, name="Salão Bela")

    with patch(
        "booking.services.payment_service.get_tenant_context",
        new_callable=AsyncMock,
        return_value=tenant,
    ), patch(
        "booking.services.payment_service.dispatch_notifications", new_callable=AsyncMock
    ):
        results = await asyncio.gather(
            *[reconcile_payment(gateway, "mp-1", seeded.tenant.id) for _ in range(2)]
        )

    assert sum(1 for r in results if r is not None) == 1

    async with AsyncSessionLocal() as session:
        completed = await session.scalar(
            select(func.count()).select_from(Payment).where(
                Payment.appointment_id == appointment.id,
                Payment.status == PaymentStatus.COMPLETED,
            )
        )
        stored = await session.get(Appointment, appointment.id)

    assert completed == 1
    assert stored.status == AppointmentStatus.CONFIRMED
