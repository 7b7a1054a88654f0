"""
Payment gateway adapters and registry.

Each gateway turns its webhook body into a GatewayNotification, fetches the
authoritative payment status with the tenant's credentials and creates
hosted checkout sessions. Webhook bodies are never trusted for the payment
outcome: status is always re-fetched from the gateway.

Registry keys:
    - "mercadopago" / "MERCADO_PAGO": Mercado Pago REST API (httpx)
    - "stripe" / "STRIPE": Stripe Checkout (stripe SDK)
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
import stripe
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from booking.exceptions import ExternalServiceError
from shared.config import get_settings
from shared.manychat_client import is_retryable_http_error

logger = logging.getLogger(__name__)

PAYMENT_TOPIC = "payment"

# Stripe SDK retries connection errors and 5xx itself; 2 retries = 3 attempts
STRIPE_MAX_NETWORK_RETRIES = 2


@dataclass(frozen=True)
class GatewayNotification:
    """Normalized webhook event."""

    topic: str | None
    payment_id: str | None
    is_test: bool = False

    @property
    def is_payment(self) -> bool:
        return not self.is_test and self.topic == PAYMENT_TOPIC and bool(self.payment_id)


@dataclass(frozen=True)
class GatewayPaymentStatus:
    payment_id: str
    status: str
    approved: bool
    amount: Decimal | None
    external_reference: str | None
    approved_at: datetime | None


@dataclass(frozen=True)
class CheckoutItem:
    id: str
    title: str
    unit_price: Decimal
    quantity: int = 1


@dataclass(frozen=True)
class Payer:
    name: str
    email: str


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    session_id: str | None = None


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    return Decimal(str(value))


def _parse_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable gateway timestamp: {value}")
        return None


class PaymentGateway(ABC):
    """Port implemented by every payment gateway adapter."""

    name: str

    @abstractmethod
    def access_token(self, payment_config: dict[str, Any]) -> str | None:
        """Tenant credential for this gateway from tenant.config["payment"]."""

    @abstractmethod
    def parse_notification(self, body: dict[str, Any]) -> GatewayNotification:
        """Extract topic and payment id from a webhook body."""

    @abstractmethod
    async def get_payment_status(self, token: str, payment_id: str) -> GatewayPaymentStatus:
        """Fetch the authoritative payment status."""

    @abstractmethod
    async def create_checkout_session(
        self,
        token: str,
        items: list[CheckoutItem],
        payer: Payer,
        external_reference: str,
        callback_url: str,
        back_urls: dict[str, str],
    ) -> CheckoutSession:
        """Create a hosted checkout and return its URL."""


class MercadoPagoGateway(PaymentGateway):
    """
    Mercado Pago over its REST API.

    Webhook body: {"type": "payment", "action": "payment.created", "data": {"id": "123"}}
    Test pings carry action "test.created".
    """

    name = "mercadopago"

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        self.api_url = settings.MERCADOPAGO_API_URL.rstrip("/")
        self.timeout = settings.EXTERNAL_API_TIMEOUT_SECONDS
        self.transport = transport

    def access_token(self, payment_config: dict[str, Any]) -> str | None:
        return payment_config.get("mpAccessToken") or None

    def parse_notification(self, body: dict[str, Any]) -> GatewayNotification:
        if body.get("action") == "test.created":
            return GatewayNotification(topic=body.get("type"), payment_id=None, is_test=True)

        data = body.get("data") or {}
        payment_id = data.get("id") if isinstance(data, dict) else None
        topic = body.get("type") or body.get("topic")
        return GatewayNotification(
            topic=topic,
            payment_id=str(payment_id) if payment_id is not None else None,
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_retryable_http_error),
        reraise=True,
    )
    async def _request(
        self, method: str, path: str, token: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(transport=self.transport) as client:
            response = await client.request(
                method,
                f"{self.api_url}{path}",
                json=json,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

    @staticmethod
    def _error_message(error: httpx.HTTPError) -> str:
        if isinstance(error, httpx.HTTPStatusError):
            try:
                message = error.response.json().get("message")
            except ValueError:
                message = None
            if message:
                return str(message)
        return str(error) or "Mercado Pago request failed"

    async def get_payment_status(self, token: str, payment_id: str) -> GatewayPaymentStatus:
        try:
            data = await self._request("GET", f"/v1/payments/{payment_id}", token)
        except httpx.HTTPError as e:
            raise ExternalServiceError(
                self._error_message(e), service=self.name, payment_id=payment_id
            ) from e

        status = data.get("status") or "unknown"
        external_reference = data.get("external_reference")
        return GatewayPaymentStatus(
            payment_id=str(data.get("id", payment_id)),
            status=status,
            approved=status == "approved",
            amount=_to_decimal(data.get("transaction_amount")),
            external_reference=str(external_reference) if external_reference else None,
            approved_at=_parse_datetime(data.get("date_approved")),
        )

    async def create_checkout_session(
        self,
        token: str,
        items: list[CheckoutItem],
        payer: Payer,
        external_reference: str,
        callback_url: str,
        back_urls: dict[str, str],
    ) -> CheckoutSession:
        body = {
            "items": [
                {
                    "id": item.id,
                    "title": item.title,
                    "unit_price": float(item.unit_price),
                    "quantity": item.quantity,
                }
                for item in items
            ],
            "payer": {"name": payer.name, "email": payer.email},
            "external_reference": external_reference,
            "notification_url": callback_url,
            "back_urls": back_urls,
        }

        try:
            data = await self._request("POST", "/checkout/preferences", token, json=body)
        except httpx.HTTPError as e:
            raise ExternalServiceError(self._error_message(e), service=self.name) from e

        return CheckoutSession(checkout_url=data["init_point"], session_id=data.get("id"))


class StripeGateway(PaymentGateway):
    """
    Stripe Checkout Sessions.

    The webhook event checkout.session.completed carries the session id, which
    is the payment id here. client_reference_id holds the appointment id.
    The stripe SDK is blocking, so calls run in a worker thread with the
    tenant's secret key passed per request.
    """

    name = "stripe"

    PAYMENT_EVENTS = frozenset({
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    })

    def __init__(self, currency: str = "brl"):
        self.currency = currency
        # The SDK HTTP client is process-wide
        stripe.default_http_client = stripe.RequestsClient(
            timeout=get_settings().EXTERNAL_API_TIMEOUT_SECONDS
        )
        stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES

    def access_token(self, payment_config: dict[str, Any]) -> str | None:
        return payment_config.get("stripeSecretKey") or None

    def parse_notification(self, body: dict[str, Any]) -> GatewayNotification:
        event_type = body.get("type")
        if event_type not in self.PAYMENT_EVENTS:
            return GatewayNotification(topic=event_type, payment_id=None)

        session = (body.get("data") or {}).get("object") or {}
        return GatewayNotification(topic=PAYMENT_TOPIC, payment_id=session.get("id"))

    async def get_payment_status(self, token: str, payment_id: str) -> GatewayPaymentStatus:
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.retrieve, payment_id, api_key=token
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(
                f"Stripe API error: {e}", service=self.name, payment_id=payment_id
            ) from e

        amount_total = getattr(session, "amount_total", None)
        payment_status = getattr(session, "payment_status", None) or "unknown"
        return GatewayPaymentStatus(
            payment_id=session.id,
            status=payment_status,
            approved=payment_status == "paid",
            amount=(Decimal(amount_total) / 100) if amount_total is not None else None,
            external_reference=getattr(session, "client_reference_id", None),
            approved_at=None,
        )

    async def create_checkout_session(
        self,
        token: str,
        items: list[CheckoutItem],
        payer: Payer,
        external_reference: str,
        callback_url: str,
        back_urls: dict[str, str],
    ) -> CheckoutSession:
        # Stripe delivers webhooks to the endpoint configured in the dashboard;
        # callback_url is kept in metadata for reference only.
        line_items = [
            {
                "price_data": {
                    "currency": self.currency,
                    "unit_amount": int(item.unit_price * 100),
                    "product_data": {"name": item.title},
                },
                "quantity": item.quantity,
            }
            for item in items
        ]

        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                api_key=token,
                mode="payment",
                line_items=line_items,
                customer_email=payer.email,
                client_reference_id=external_reference,
                success_url=back_urls["success"],
                cancel_url=back_urls["failure"],
                metadata={"notification_url": callback_url},
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(
                getattr(e, "user_message", None) or str(e), service=self.name
            ) from e

        return CheckoutSession(checkout_url=session.url, session_id=session.id)


_GATEWAYS: dict[str, PaymentGateway] = {}


def register_gateway(gateway: PaymentGateway, *aliases: str) -> None:
    for key in (gateway.name, *aliases):
        _GATEWAYS[normalize_gateway_name(key)] = gateway


def normalize_gateway_name(name: str) -> str:
    return name.strip().lower().replace("_", "").replace("-", "")


def get_gateway(name: str | None) -> PaymentGateway | None:
    """Gateway adapter for a route/body gateway name, or None when unsupported."""
    if not name:
        return None
    return _GATEWAYS.get(normalize_gateway_name(name))


register_gateway(MercadoPagoGateway(), "MERCADO_PAGO")
register_gateway(StripeGateway(), "STRIPE")
