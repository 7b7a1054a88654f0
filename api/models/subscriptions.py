"""Pydantic models for subscription routes."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from api.models.common import CamelModel
from database.models import PlanInterval, SubscriptionStatus


class SubscriptionCreateRequest(CamelModel):
    user_id: UUID
    plan_id: UUID
    duration_days: int | None = Field(default=None, gt=0)
    interval: PlanInterval | None = None
    already_paid: bool = False
    start_next_month: bool = False


class SubscriptionUpdateRequest(CamelModel):
    status: SubscriptionStatus | None = None
    end_date: datetime | None = None


class SubscriptionResponse(CamelModel):
    id: UUID
    tenant_id: UUID
    user_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    credits_remaining: int
    start_date: datetime
    end_date: datetime
