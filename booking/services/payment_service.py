"""
Payment Reconciliation.

- create_direct_payment: cash / card / PIX / plan-credit payments, settled immediately
- create_preference: hosted checkout at a gateway for an appointment
- handle_webhook: gateway notification -> confirmed appointment + one COMPLETED payment
- list_payments / update_payment_status: tenant payment administration

Webhook delivery is at-least-once. Reconciliation takes an advisory lock on
the appointment id and checks for an existing COMPLETED payment before
inserting, so duplicate or concurrent deliveries record exactly one payment.
The guard is per appointment: a second approved payment with a different
gateway id is not recorded, only logged.

Plan credits are consumed with a single conditional UPDATE; the
credits_remaining >= 0 check constraint backs it.
"""

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased, selectinload

from booking.exceptions import BadRequestError, ExternalServiceError, NotFoundError
from booking.fsm import AppointmentFSM
from booking.services.notification_service import (
    NotificationOutbox,
    dispatch_notifications,
    queue_booking_confirmation,
    queue_payment_confirmation,
    queue_payment_failed,
    queue_subscription_notice,
)
from booking.services.subscription_service import activate_subscription
from database.connection import get_async_session
from database.models import (
    Appointment,
    AppointmentStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    User,
)
from shared.config import get_settings
from shared.payment_gateways import (
    CheckoutItem,
    CheckoutSession,
    Payer,
    PaymentGateway,
    get_gateway,
)
from shared.tenant_config import get_tenant_context

logger = logging.getLogger(__name__)

WEBHOOK_ACK = {"status": "received"}


# ============================================================================
# Query helpers
# ============================================================================


async def load_user(session: AsyncSession, user_id: UUID, tenant_id: UUID) -> User | None:
    result = await session.execute(
        select(User).where(and_(User.id == user_id, User.tenant_id == tenant_id))
    )
    return result.scalar_one_or_none()


async def load_appointment(
    session: AsyncSession, appointment_id: UUID, tenant_id: UUID, for_update: bool = False
) -> Appointment | None:
    stmt = (
        select(Appointment)
        .options(
            selectinload(Appointment.services),
            selectinload(Appointment.user),
            selectinload(Appointment.professional),
        )
        .where(and_(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update(of=Appointment)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def consume_plan_credit(
    session: AsyncSession, tenant_id: UUID, user_id: UUID
) -> UUID | None:
    """
    Decrement one credit of the user's active subscription atomically.

    Returns the subscription id, or None when no active subscription has
    credits left.
    """
    # Aliased so the subquery is not correlated to the row being updated
    latest = aliased(Subscription)
    candidate = (
        select(latest.id)
        .where(
            and_(
                latest.tenant_id == tenant_id,
                latest.user_id == user_id,
                latest.status == SubscriptionStatus.ACTIVE,
                latest.credits_remaining > 0,
            )
        )
        .order_by(latest.created_at.desc())
        .limit(1)
        .scalar_subquery()
    )
    result = await session.execute(
        update(Subscription)
        .where(and_(Subscription.id == candidate, Subscription.credits_remaining > 0))
        .values(credits_remaining=Subscription.credits_remaining - 1)
        .returning(Subscription.id)
        .execution_options(synchronize_session=False)
    )
    return result.scalar_one_or_none()


async def lock_appointment_payments(session: AsyncSession, appointment_id: UUID) -> None:
    """Transaction-scoped advisory lock serializing payment recording per appointment."""
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtextextended(:key, 0))"),
        {"key": f"appointment-payment:{appointment_id}"},
    )


async def find_completed_payment(
    session: AsyncSession, appointment_id: UUID, tenant_id: UUID
) -> Payment | None:
    result = await session.execute(
        select(Payment)
        .where(
            and_(
                Payment.appointment_id == appointment_id,
                Payment.tenant_id == tenant_id,
                Payment.status == PaymentStatus.COMPLETED,
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


# ============================================================================
# Direct payments
# ============================================================================


async def create_direct_payment(
    tenant_id: UUID,
    user_id: UUID,
    amount: Decimal | float | int,
    method: PaymentMethod,
    appointment_id: UUID | None = None,
    subscription_id: UUID | None = None,
) -> Payment:
    """
    Record a settled (COMPLETED) payment.

    PLAN_CREDIT consumes one credit of the user's active subscription and
    links the payment to it. Any other method paying for a subscription
    activates that subscription.

    Raises:
        BadRequestError: Unknown user/appointment, or no subscription credit left
    """
    outbox = NotificationOutbox()
    log_extra = {"tenant_id": tenant_id, "appointment_id": appointment_id}

    async with get_async_session() as session:
        user = await load_user(session, user_id, tenant_id)
        if user is None:
            raise BadRequestError("User not found", user_id=str(user_id))

        if appointment_id is not None:
            exists = await session.execute(
                select(Appointment.id).where(
                    and_(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
                )
            )
            if exists.scalar_one_or_none() is None:
                raise BadRequestError("Appointment not found", appointment_id=str(appointment_id))

        linked_subscription_id = subscription_id
        if method == PaymentMethod.PLAN_CREDIT:
            linked_subscription_id = await consume_plan_credit(session, tenant_id, user_id)
            if linked_subscription_id is None:
                raise BadRequestError("No active subscription with credits found")

        payment = Payment(
            id=uuid4(),
            tenant_id=tenant_id,
            user_id=user_id,
            amount=Decimal(str(amount)),
            method=method,
            status=PaymentStatus.COMPLETED,
            type=PaymentType.APPOINTMENT if appointment_id else PaymentType.SUBSCRIPTION,
            appointment_id=appointment_id,
            subscription_id=linked_subscription_id,
            created_at=datetime.now(UTC),
        )
        session.add(payment)

        activated: Subscription | None = None
        if subscription_id is not None and method != PaymentMethod.PLAN_CREDIT:
            activated = await activate_subscription(session, subscription_id, tenant_id)

        await session.commit()

    logger.info(
        f"Direct payment recorded: {payment.amount} via {method.value}",
        extra={**log_extra, "payment_id": payment.id},
    )

    if activated is not None:
        queue_subscription_notice(outbox, activated, user)
    queue_payment_confirmation(outbox, payment, user)
    await dispatch_notifications(outbox)
    return payment


# ============================================================================
# Hosted checkout
# ============================================================================


def build_back_urls(appointment_id: UUID) -> dict[str, str]:
    frontend = get_settings().FRONTEND_URL.rstrip("/")
    return {
        outcome: f"{frontend}/booking/success?appointmentId={appointment_id}&status={outcome}"
        for outcome in ("success", "failure", "pending")
    }


def build_callback_url(gateway: PaymentGateway, tenant_id: UUID) -> str:
    api_url = get_settings().API_URL.rstrip("/")
    return f"{api_url}/payments/webhook/{gateway.name}?tenantId={tenant_id}"


async def create_preference(
    appointment_id: UUID, tenant_id: UUID, gateway_name: str
) -> CheckoutSession:
    """
    Create a hosted checkout itemizing the appointment's services.

    The session carries external_reference = appointment id and a
    tenant-scoped webhook callback URL.

    Raises:
        BadRequestError: Unsupported gateway, missing appointment, missing
            tenant credential, or the gateway rejected the request
    """
    gateway = get_gateway(gateway_name)
    if gateway is None:
        raise BadRequestError(f"Unsupported payment gateway: {gateway_name}")

    async with get_async_session() as session:
        appointment = await load_appointment(session, appointment_id, tenant_id)
    if appointment is None:
        raise BadRequestError("Appointment not found", appointment_id=str(appointment_id))

    tenant = await get_tenant_context(tenant_id)
    token = gateway.access_token(tenant.payment_config)
    if not token:
        raise BadRequestError(f"{gateway.name} access token not configured for this tenant")

    items = [
        CheckoutItem(id=str(service.id), title=service.name, unit_price=service.price)
        for service in appointment.services
    ]
    if not items:
        raise BadRequestError("Appointment has no services to charge")

    try:
        checkout = await gateway.create_checkout_session(
            token,
            items,
            Payer(name=appointment.user.name, email=appointment.user.email),
            external_reference=str(appointment.id),
            callback_url=build_callback_url(gateway, tenant_id),
            back_urls=build_back_urls(appointment.id),
        )
    except ExternalServiceError as e:
        logger.error(
            f"Checkout creation failed at {gateway.name}: {e.message}",
            extra={"tenant_id": tenant_id, "appointment_id": appointment_id, "gateway": gateway.name},
        )
        raise BadRequestError(e.message, gateway=gateway.name) from e

    logger.info(
        "Checkout session created",
        extra={"tenant_id": tenant_id, "appointment_id": appointment_id, "gateway": gateway.name},
    )
    return checkout


# ============================================================================
# Webhook reconciliation
# ============================================================================


async def reconcile_payment(
    gateway: PaymentGateway, payment_id: str, tenant_id: UUID
) -> Payment | None:
    """
    Apply an approved gateway payment to its appointment.

    Returns the new Payment, or None when nothing was recorded (not
    approved, no reference, unknown appointment, or already paid).
    """
    log_extra: dict[str, Any] = {"tenant_id": tenant_id, "gateway": gateway.name}

    tenant = await get_tenant_context(tenant_id)
    if not tenant.exists:
        logger.warning("Webhook for unknown tenant", extra=log_extra)
        return None

    token = gateway.access_token(tenant.payment_config)
    if not token:
        logger.warning("Webhook received but gateway token is not configured", extra=log_extra)
        return None

    status = await gateway.get_payment_status(token, payment_id)
    if not status.approved:
        logger.info(f"Payment {payment_id} not approved (status={status.status})", extra=log_extra)
        return None

    if not status.external_reference:
        logger.warning(f"Approved payment {payment_id} has no external reference", extra=log_extra)
        return None

    try:
        appointment_id = UUID(status.external_reference)
    except ValueError:
        logger.warning(
            f"External reference {status.external_reference!r} is not an appointment id",
            extra=log_extra,
        )
        return None
    log_extra["appointment_id"] = appointment_id

    outbox = NotificationOutbox()

    async with get_async_session() as session:
        await lock_appointment_payments(session, appointment_id)

        appointment = await load_appointment(session, appointment_id, tenant_id, for_update=True)
        if appointment is None:
            logger.warning("Approved payment references an unknown appointment", extra=log_extra)
            return None

        if AppointmentFSM.can_transition(appointment.status, AppointmentStatus.CONFIRMED):
            appointment.status = AppointmentStatus.CONFIRMED
        elif AppointmentFSM.is_terminal(appointment.status):
            logger.warning(
                f"Payment approved for a {appointment.status.value} appointment; status kept",
                extra=log_extra,
            )

        existing = await find_completed_payment(session, appointment_id, tenant_id)
        if existing is not None:
            await session.commit()
            if existing.gateway_payment_id and existing.gateway_payment_id != status.payment_id:
                logger.warning(
                    f"Second approved payment {status.payment_id} for an already paid "
                    f"appointment (recorded: {existing.gateway_payment_id}); not recorded",
                    extra={**log_extra, "payment_id": existing.id},
                )
            else:
                logger.info(
                    f"Duplicate webhook for payment {status.payment_id} ignored",
                    extra={**log_extra, "payment_id": existing.id},
                )
            return None

        amount = status.amount
        if amount is None:
            amount = sum((s.price for s in appointment.services), Decimal("0"))

        payment = Payment(
            id=uuid4(),
            tenant_id=tenant_id,
            user_id=appointment.user_id,
            appointment_id=appointment_id,
            amount=amount,
            method=PaymentMethod.ONLINE,
            status=PaymentStatus.COMPLETED,
            type=PaymentType.APPOINTMENT,
            gateway_payment_id=status.payment_id,
            created_at=status.approved_at or datetime.now(UTC),
        )
        session.add(payment)
        await session.commit()

    logger.info(
        f"Online payment {status.payment_id} recorded ({payment.amount})",
        extra={**log_extra, "payment_id": payment.id},
    )

    queue_payment_confirmation(outbox, payment, appointment.user)
    if appointment.status == AppointmentStatus.CONFIRMED:
        queue_booking_confirmation(outbox, appointment)
    await dispatch_notifications(outbox)
    return payment


async def handle_webhook(
    body: dict[str, Any] | None, tenant_id: UUID | None, gateway_name: str
) -> dict[str, str]:
    """
    Process a gateway notification. Always acknowledges receipt.

    Test pings and non-payment topics are dropped before any database or
    gateway access. Every failure is logged, never raised, so the gateway
    does not retry into an error storm.
    """
    log_extra = {"tenant_id": tenant_id, "gateway": gateway_name}

    try:
        gateway = get_gateway(gateway_name)
        if gateway is None:
            logger.warning(f"Webhook for unsupported gateway '{gateway_name}'", extra=log_extra)
            return WEBHOOK_ACK

        notification = gateway.parse_notification(body or {})
        if not notification.is_payment:
            logger.info(
                f"Webhook ignored (topic={notification.topic}, test={notification.is_test})",
                extra=log_extra,
            )
            return WEBHOOK_ACK

        if tenant_id is None:
            logger.warning("Payment webhook without tenantId", extra=log_extra)
            return WEBHOOK_ACK

        await reconcile_payment(gateway, notification.payment_id, tenant_id)

    except Exception as e:
        logger.error(f"Webhook processing failed: {e}", extra=log_extra, exc_info=True)

    return WEBHOOK_ACK


# ============================================================================
# Administration
# ============================================================================


async def list_payments(tenant_id: UUID) -> list[Payment]:
    """Tenant payments, newest first, with the paying user."""
    async with get_async_session() as session:
        result = await session.execute(
            select(Payment)
            .options(selectinload(Payment.user))
            .where(Payment.tenant_id == tenant_id)
            .order_by(Payment.created_at.desc())
        )
        return list(result.scalars().all())


async def update_payment_status(
    payment_id: UUID, tenant_id: UUID, status: PaymentStatus
) -> Payment:
    """
    Change a payment's status; amount and method never change.

    Moving to FAILED emails the user a paymentFailed notice.

    Raises:
        NotFoundError: Payment not found in the tenant
    """
    outbox = NotificationOutbox()

    async with get_async_session() as session:
        result = await session.execute(
            select(Payment)
            .options(selectinload(Payment.user))
            .where(and_(Payment.id == payment_id, Payment.tenant_id == tenant_id))
            .with_for_update(of=Payment)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFoundError("Payment not found", payment_id=str(payment_id))

        payment.status = status
        await session.commit()

    logger.info(
        f"Payment status set to {status.value}",
        extra={"tenant_id": tenant_id, "payment_id": payment_id},
    )

    if status == PaymentStatus.FAILED:
        queue_payment_failed(outbox, payment, payment.user)
        await dispatch_notifications(outbox)
    return payment
