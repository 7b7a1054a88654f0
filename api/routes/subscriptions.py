"""Subscription routes."""

import logging
from uuid import UUID

from fastapi import APIRouter, status

from api.dependencies import AdminRequester, TenantId
from api.models.subscriptions import (
    SubscriptionCreateRequest,
    SubscriptionResponse,
    SubscriptionUpdateRequest,
)
from booking.services import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreateRequest,
    tenant_id: TenantId,
    requester: AdminRequester,
) -> SubscriptionResponse:
    subscription = await subscription_service.create_subscription(
        tenant_id=tenant_id,
        user_id=body.user_id,
        plan_id=body.plan_id,
        duration_days=body.duration_days,
        interval=body.interval,
        already_paid=body.already_paid,
        start_next_month=body.start_next_month,
    )
    return SubscriptionResponse.model_validate(subscription)


@router.patch("/{subscription_id}", response_model=SubscriptionResponse)
async def update_subscription(
    subscription_id: UUID,
    body: SubscriptionUpdateRequest,
    tenant_id: TenantId,
    requester: AdminRequester,
) -> SubscriptionResponse:
    subscription = await subscription_service.update_subscription(
        subscription_id, tenant_id, status=body.status, end_date=body.end_date
    )
    return SubscriptionResponse.model_validate(subscription)
