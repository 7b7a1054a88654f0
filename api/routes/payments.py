"""Payment routes: direct payments, hosted checkout and gateway webhooks."""

import logging
from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Query, Request, status
from fastapi.responses import JSONResponse

from api.dependencies import AdminRequester, CurrentRequester, TenantId
from api.models.payments import (
    DirectPaymentRequest,
    PaymentResponse,
    PaymentStatusRequest,
    PreferenceRequest,
    PreferenceResponse,
)
from booking.services import payment_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: DirectPaymentRequest,
    tenant_id: TenantId,
    requester: AdminRequester,
) -> PaymentResponse:
    payment = await payment_service.create_direct_payment(
        tenant_id=tenant_id,
        user_id=body.user_id,
        amount=body.amount,
        method=body.method,
        appointment_id=body.appointment_id,
        subscription_id=body.subscription_id,
    )
    return PaymentResponse.model_validate(payment)


@router.post("/preference", response_model=PreferenceResponse)
async def create_checkout_preference(
    body: PreferenceRequest,
    tenant_id: TenantId,
    requester: CurrentRequester,
) -> PreferenceResponse:
    """Open a hosted checkout for an appointment and return its URL."""
    checkout = await payment_service.create_preference(
        body.appointment_id, tenant_id, body.gateway
    )
    return PreferenceResponse(checkout_url=checkout.checkout_url, session_id=checkout.session_id)


@router.get("", response_model=list[PaymentResponse])
async def list_payments(
    tenant_id: TenantId,
    requester: AdminRequester,
) -> list[PaymentResponse]:
    payments = await payment_service.list_payments(tenant_id)
    return [PaymentResponse.model_validate(p) for p in payments]


@router.patch("/{payment_id}/status", response_model=PaymentResponse)
async def update_payment_status(
    payment_id: UUID,
    body: PaymentStatusRequest,
    tenant_id: TenantId,
    requester: AdminRequester,
) -> PaymentResponse:
    payment = await payment_service.update_payment_status(payment_id, tenant_id, body.status)
    return PaymentResponse.model_validate(payment)


def _parse_tenant_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


@router.post("/webhook/{gateway}")
async def receive_payment_webhook(
    gateway: str,
    request: Request,
    tenant_id: Annotated[str | None, Query(alias="tenantId")] = None,
) -> JSONResponse:
    """
    Gateway payment notification.

    Always answers 200 {"status": "received"} so the gateway stops retrying;
    processing failures are logged by the payment service.
    """
    try:
        body: Any = await request.json()
    except ValueError:
        logger.warning(f"Non-JSON {gateway} webhook body ignored")
        body = {}

    if not isinstance(body, dict):
        body = {}

    result = await payment_service.handle_webhook(body, _parse_tenant_id(tenant_id), gateway)
    return JSONResponse(status_code=200, content=result)
