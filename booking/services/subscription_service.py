"""
Subscription management - plan subscriptions holding booking credits.

A user has at most one ACTIVE subscription per tenant: activating or
creating an active subscription cancels the previous ones in the same
transaction (backed by the uq_subscriptions_one_active partial index).
"""

import logging
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking.exceptions import BadRequestError, NotFoundError
from booking.services import email_templates as templates
from booking.services.notification_service import (
    NotificationOutbox,
    dispatch_notifications,
    queue_subscription_notice,
)
from database.connection import get_async_session
from database.models import Plan, PlanInterval, Subscription, SubscriptionStatus, User

logger = logging.getLogger(__name__)


def compute_period(
    start: datetime,
    interval: PlanInterval,
    duration_days: int | None = None,
) -> datetime:
    """End of a subscription period: explicit days win over the plan interval."""
    if duration_days and duration_days > 0:
        return start + timedelta(days=duration_days)
    if interval == PlanInterval.YEARLY:
        return start + relativedelta(years=1)
    return start + relativedelta(months=1)


def start_of_next_month(now: datetime) -> datetime:
    return (now + relativedelta(months=1)).replace(
        day=1, hour=0, minute=0, second=0, microsecond=0
    )


async def get_subscription(
    session: AsyncSession, subscription_id: UUID, tenant_id: UUID, for_update: bool = False
) -> Subscription | None:
    stmt = (
        select(Subscription)
        .options(selectinload(Subscription.plan), selectinload(Subscription.user))
        .where(and_(Subscription.id == subscription_id, Subscription.tenant_id == tenant_id))
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update(of=Subscription)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def cancel_active_subscriptions(
    session: AsyncSession,
    tenant_id: UUID,
    user_id: UUID,
    exclude_id: UUID | None = None,
) -> int:
    """Cancel the user's ACTIVE subscriptions in the tenant (except exclude_id)."""
    conditions = [
        Subscription.tenant_id == tenant_id,
        Subscription.user_id == user_id,
        Subscription.status == SubscriptionStatus.ACTIVE,
    ]
    if exclude_id is not None:
        conditions.append(Subscription.id != exclude_id)

    result = await session.execute(
        update(Subscription)
        .where(and_(*conditions))
        .values(status=SubscriptionStatus.CANCELED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


async def activate_subscription(
    session: AsyncSession, subscription_id: UUID, tenant_id: UUID
) -> Subscription:
    """
    Mark a subscription ACTIVE after payment.

    A PENDING subscription created without credits receives the plan's
    credits. Other active subscriptions of the user are canceled first.

    Raises:
        BadRequestError: Subscription not found in the tenant
    """
    subscription = await get_subscription(session, subscription_id, tenant_id, for_update=True)
    if subscription is None:
        raise BadRequestError("Subscription not found", subscription_id=str(subscription_id))

    await cancel_active_subscriptions(
        session, tenant_id, subscription.user_id, exclude_id=subscription.id
    )

    if (
        subscription.status == SubscriptionStatus.PENDING
        and subscription.credits_remaining == 0
        and subscription.plan is not None
    ):
        subscription.credits_remaining = subscription.plan.credits

    subscription.status = SubscriptionStatus.ACTIVE
    logger.info(
        f"Subscription activated with {subscription.credits_remaining} credits",
        extra={"tenant_id": tenant_id, "subscription_id": subscription_id},
    )
    return subscription


async def create_subscription(
    tenant_id: UUID,
    user_id: UUID,
    plan_id: UUID,
    duration_days: int | None = None,
    interval: PlanInterval | None = None,
    already_paid: bool = False,
    start_next_month: bool = False,
) -> Subscription:
    """
    Subscribe a user to a plan.

    Previous active subscriptions are canceled. already_paid creates it
    ACTIVE with the plan's credits; otherwise PENDING with zero credits until
    a payment activates it.

    Raises:
        BadRequestError: Plan or user not found in the tenant
    """
    outbox = NotificationOutbox()
    subscription_id = uuid4()

    async with get_async_session() as session:
        plan = (
            await session.execute(
                select(Plan).where(and_(Plan.id == plan_id, Plan.tenant_id == tenant_id))
            )
        ).scalar_one_or_none()
        if plan is None:
            raise BadRequestError("Plan not found", plan_id=str(plan_id))

        user = (
            await session.execute(
                select(User).where(and_(User.id == user_id, User.tenant_id == tenant_id))
            )
        ).scalar_one_or_none()
        if user is None:
            raise BadRequestError("User not found", user_id=str(user_id))

        start_date = datetime.now(UTC)
        if start_next_month:
            start_date = start_of_next_month(start_date)
        end_date = compute_period(start_date, interval or plan.interval, duration_days)

        await cancel_active_subscriptions(session, tenant_id, user_id)

        subscription = Subscription(
            id=subscription_id,
            tenant_id=tenant_id,
            user_id=user_id,
            plan_id=plan_id,
            status=SubscriptionStatus.ACTIVE if already_paid else SubscriptionStatus.PENDING,
            credits_remaining=plan.credits if already_paid else 0,
            start_date=start_date,
            end_date=end_date,
        )
        session.add(subscription)
        await session.commit()

        subscription = await get_subscription(session, subscription_id, tenant_id)

    logger.info(
        f"Subscription created (status={subscription.status.value}, plan={plan.name})",
        extra={"tenant_id": tenant_id, "subscription_id": subscription_id},
    )

    queue_subscription_notice(outbox, subscription, subscription.user)
    await dispatch_notifications(outbox)
    return subscription


async def update_subscription(
    subscription_id: UUID,
    tenant_id: UUID,
    status: SubscriptionStatus | None = None,
    end_date: datetime | None = None,
) -> Subscription:
    """
    Change a subscription's status and/or end date and email the user.

    Setting ACTIVE goes through activate_subscription() so the single-active
    rule holds.

    Raises:
        NotFoundError: Subscription not found in the tenant
    """
    outbox = NotificationOutbox()

    async with get_async_session() as session:
        subscription = await get_subscription(session, subscription_id, tenant_id, for_update=True)
        if subscription is None:
            raise NotFoundError("Subscription not found", subscription_id=str(subscription_id))

        if status == SubscriptionStatus.ACTIVE and subscription.status != SubscriptionStatus.ACTIVE:
            subscription = await activate_subscription(session, subscription_id, tenant_id)
        elif status is not None:
            subscription.status = status

        if end_date is not None:
            subscription.end_date = end_date

        await session.commit()

    queue_subscription_notice(
        outbox, subscription, subscription.user, templates.SUBSCRIPTION_STATUS_CHANGED
    )
    await dispatch_notifications(outbox)
    return subscription
