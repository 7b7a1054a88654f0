"""Pydantic models for payment routes."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import Field

from api.models.common import CamelModel
from database.models import PaymentMethod, PaymentStatus, PaymentType


class DirectPaymentRequest(CamelModel):
    """Body of POST /payments: record a settled payment."""

    user_id: UUID
    amount: Decimal = Field(ge=0)
    method: PaymentMethod
    appointment_id: UUID | None = None
    subscription_id: UUID | None = None


class PreferenceRequest(CamelModel):
    appointment_id: UUID
    gateway: str = "mercadopago"


class PreferenceResponse(CamelModel):
    checkout_url: str
    session_id: str | None = None


class PaymentStatusRequest(CamelModel):
    status: PaymentStatus


class PaymentResponse(CamelModel):
    id: UUID
    tenant_id: UUID
    user_id: UUID
    appointment_id: UUID | None
    subscription_id: UUID | None
    amount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    type: PaymentType
    gateway_payment_id: str | None = None
    created_at: datetime | None = None
