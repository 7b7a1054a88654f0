"""
Notification dispatch - best-effort email and chat side channel.

Primary operations never talk to SMTP or ManyChat directly. They collect
notification intents in a NotificationOutbox while they still hold the
loaded entities, commit, and hand the outbox to dispatch_notifications().
The dispatcher delivers every intent inside its own failure boundary, as a
fire-and-forget asyncio task (or inline when NOTIFICATIONS_BACKGROUND is
false). Nothing raised while sending can reach the primary operation.

Channels:
- Chat: ManyChat text message to a user, resolved to their current
  subscriber id at delivery
- Email: Templated HTML email (tenant override, else built-in default) to a
  user by id, or to a plain address for professionals

Usage:
    outbox = NotificationOutbox()
    queue_booking_confirmation(outbox, appointment)
    await session.commit()
    await dispatch_notifications(outbox)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import and_, select

from booking.services import email_templates as templates
from database.connection import get_async_session
from database.models import Appointment, AppointmentStatus, Payment, Subscription, User
from shared.config import get_settings
from shared.email_client import resolve_smtp_config, send_email
from shared.manychat_client import ManyChatClient
from shared.tenant_config import get_tenant_context

logger = logging.getLogger(__name__)

UNSPECIFIED_PROFESSIONAL = "Não especificado"

STATUS_CHAT_MESSAGES = {
    AppointmentStatus.CONFIRMED: "✅ Seu agendamento foi CONFIRMADO!",
    AppointmentStatus.CANCELED: "❌ Seu agendamento foi CANCELADO.",
    AppointmentStatus.COMPLETED: "👋 Obrigado pela visita! Esperamos vê-lo novamente em breve.",
}

STATUS_EMAIL_TEMPLATES = {
    AppointmentStatus.CONFIRMED: templates.APPOINTMENT_CONFIRMATION,
    AppointmentStatus.CANCELED: templates.APPOINTMENT_CANCELLATION,
    AppointmentStatus.COMPLETED: templates.APPOINTMENT_COMPLETED,
}


# ============================================================================
# Formatting (pt-BR)
# ============================================================================


def local_date_parts(dt: datetime) -> tuple[str, str]:
    """Return ("dd/mm/yyyy", "HH:MM") in the business timezone."""
    local = dt.astimezone(ZoneInfo(get_settings().TIMEZONE))
    return local.strftime("%d/%m/%Y"), local.strftime("%H:%M")


def format_datetime_ptbr(dt: datetime) -> str:
    date_str, time_str = local_date_parts(dt)
    return f"{date_str} {time_str}"


def format_currency_brl(amount: Decimal | float | int | str) -> str:
    """Format an amount as Brazilian reais, e.g. R$ 1.234,56."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        return str(amount)
    formatted = f"{value:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {formatted}"


# ============================================================================
# Intents & Outbox
# ============================================================================


@dataclass(frozen=True)
class ChatIntent:
    tenant_id: UUID
    user_id: UUID
    text: str


@dataclass(frozen=True)
class UserEmailIntent:
    tenant_id: UUID
    user_id: UUID
    template_key: str
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EmailIntent:
    """Email to an address with no user record (assigned professionals)."""

    tenant_id: UUID
    to: str
    template_key: str
    variables: dict[str, Any] = field(default_factory=dict)


NotificationIntent = ChatIntent | UserEmailIntent | EmailIntent


class NotificationOutbox:
    """Intents produced by one primary operation, delivered after it commits."""

    def __init__(self) -> None:
        self.intents: list[NotificationIntent] = []

    def chat(self, tenant_id: UUID, user: User | None, text: str) -> None:
        """Queue a chat message for a user linked to ManyChat."""
        if user is not None and user.manychat_subscriber_id:
            self.intents.append(ChatIntent(tenant_id, user.id, text))

    def email_user(
        self,
        tenant_id: UUID,
        user: User | None,
        template_key: str,
        variables: dict[str, Any],
    ) -> None:
        if user is not None and user.email:
            self.intents.append(UserEmailIntent(tenant_id, user.id, template_key, variables))

    def email(
        self,
        tenant_id: UUID,
        to: str | None,
        template_key: str,
        variables: dict[str, Any],
    ) -> None:
        if to:
            self.intents.append(EmailIntent(tenant_id, to, template_key, variables))

    def __len__(self) -> int:
        return len(self.intents)

    def __iter__(self):
        return iter(self.intents)


# ============================================================================
# Intent builders
# ============================================================================


def _appointment_variables(appointment: Appointment) -> dict[str, Any]:
    date_str, time_str = local_date_parts(appointment.date)
    user = appointment.user
    return {
        "userName": user.name if user else "",
        "userEmail": user.email if user else "",
        "serviceName": ", ".join(s.name for s in appointment.services),
        "professionalName": (
            appointment.professional.name
            if appointment.professional
            else UNSPECIFIED_PROFESSIONAL
        ),
        "date": date_str,
        "time": time_str,
    }


def _professional_email(appointment: Appointment) -> str | None:
    return appointment.professional.email if appointment.professional else None


def queue_booking_confirmation(outbox: NotificationOutbox, appointment: Appointment) -> None:
    """
    Confirmed booking: client chat + appointmentConfirmation email, and
    newAppointmentAdmin email to the assigned professional.

    Requires user, professional and services to be loaded.
    """
    tenant_id = appointment.tenant_id
    user = appointment.user
    variables = _appointment_variables(appointment)

    outbox.chat(
        tenant_id,
        user,
        f"🗓️ Novo agendamento confirmado para {format_datetime_ptbr(appointment.date)}!",
    )
    outbox.email_user(
        tenant_id,
        user,
        templates.APPOINTMENT_CONFIRMATION,
        {k: variables[k] for k in ("userName", "serviceName", "professionalName", "date", "time")},
    )
    outbox.email(
        tenant_id,
        _professional_email(appointment),
        templates.NEW_APPOINTMENT_ADMIN,
        variables,
    )


def queue_status_change(
    outbox: NotificationOutbox, appointment: Appointment, status: AppointmentStatus
) -> None:
    """
    Status transition: client chat + status email; CANCELED also emails the
    assigned professional. PENDING produces nothing.
    """
    text = STATUS_CHAT_MESSAGES.get(status)
    if text is None:
        return

    tenant_id = appointment.tenant_id
    user = appointment.user
    variables = _appointment_variables(appointment)

    outbox.chat(tenant_id, user, text)

    client_variables = {
        k: variables[k] for k in ("userName", "serviceName", "date", "time")
    }
    if status != AppointmentStatus.CANCELED:
        client_variables["professionalName"] = variables["professionalName"]

    outbox.email_user(
        tenant_id,
        user,
        STATUS_EMAIL_TEMPLATES[status],
        client_variables,
    )

    if status == AppointmentStatus.CANCELED:
        outbox.email(
            tenant_id,
            _professional_email(appointment),
            templates.APPOINTMENT_CANCELLED_ADMIN,
            {k: variables[k] for k in ("userName", "serviceName", "date", "time")},
        )


def queue_payment_confirmation(
    outbox: NotificationOutbox, payment: Payment, user: User | None
) -> None:
    """Completed payment: paymentConfirmation email + chat with the amount."""
    if user is None:
        return

    formatted_amount = format_currency_brl(payment.amount)
    outbox.email_user(
        payment.tenant_id,
        user,
        templates.PAYMENT_CONFIRMATION,
        {
            "name": user.name,
            "amount": formatted_amount,
            "id": str(payment.id),
            "date": format_datetime_ptbr(payment.created_at),
        },
    )
    outbox.chat(
        payment.tenant_id,
        user,
        f"💳 Pagamento confirmado no valor de {formatted_amount}.",
    )


def queue_payment_failed(outbox: NotificationOutbox, payment: Payment, user: User | None) -> None:
    if user is None:
        return
    date_str, _ = local_date_parts(payment.created_at)
    outbox.email_user(
        payment.tenant_id,
        user,
        templates.PAYMENT_FAILED,
        {
            "name": user.name,
            "amount": format_currency_brl(payment.amount),
            "reason": "Processamento falhou",
            "date": date_str,
        },
    )


def queue_subscription_notice(
    outbox: NotificationOutbox,
    subscription: Subscription,
    user: User | None,
    template_key: str = templates.SUBSCRIPTION_CREATED,
) -> None:
    """subscriptionCreated or subscriptionStatusChanged email. Requires plan loaded."""
    if user is None:
        return

    start_date, _ = local_date_parts(subscription.start_date)
    end_date, _ = local_date_parts(subscription.end_date)
    variables: dict[str, Any] = {
        "userName": user.name,
        "planName": subscription.plan.name if subscription.plan else "",
        "credits": str(subscription.credits_remaining),
        "endDate": end_date,
    }
    if template_key == templates.SUBSCRIPTION_STATUS_CHANGED:
        variables["status"] = subscription.status.value
    else:
        variables["startDate"] = start_date

    outbox.email_user(subscription.tenant_id, user, template_key, variables)


# ============================================================================
# Notification Port
# ============================================================================


class NotificationService:
    """
    Delivery over the tenant's channels.

    Missing channel configuration (no ManyChat key, no SMTP settings) skips
    the send with a warning. Delivery errors are raised as
    ExternalServiceError; the dispatcher isolates them.
    """

    async def send_text(self, tenant_id: UUID, subscriber_id: str, text: str) -> bool:
        tenant = await get_tenant_context(tenant_id)
        if not tenant.manychat_api_key:
            logger.warning(
                "ManyChat API key not configured, skipping chat message",
                extra={"tenant_id": tenant_id},
            )
            return False

        await ManyChatClient(tenant.manychat_api_key).send_text(subscriber_id, text)
        return True

    async def notify_user(self, tenant_id: UUID, user_id: UUID, text: str) -> bool:
        """Chat message to a user of the tenant via their stored subscriber id."""
        async with get_async_session() as session:
            result = await session.execute(
                select(User.manychat_subscriber_id).where(
                    and_(User.id == user_id, User.tenant_id == tenant_id)
                )
            )
            subscriber_id = result.scalar_one_or_none()

        if not subscriber_id:
            logger.debug(
                f"User {user_id} has no ManyChat subscriber, skipping chat message",
                extra={"tenant_id": tenant_id},
            )
            return False

        return await self.send_text(tenant_id, subscriber_id, text)

    async def send_template_email(
        self,
        tenant_id: UUID,
        to: str,
        template_key: str,
        variables: dict[str, Any],
    ) -> bool:
        tenant = await get_tenant_context(tenant_id)
        smtp_config = resolve_smtp_config(tenant.smtp_config)
        if smtp_config is None:
            logger.warning(
                f"SMTP not configured, skipping email '{template_key}'",
                extra={"tenant_id": tenant_id},
            )
            return False

        subject, body = templates.render_template(
            template_key, variables, tenant.config, tenant.business_name
        )
        await send_email(smtp_config, to, subject, body)
        return True

    async def send_template_message(
        self,
        tenant_id: UUID,
        user_id: UUID,
        template_key: str,
        variables: dict[str, Any],
    ) -> bool:
        """Templated email to a user of the tenant, addressed by id."""
        async with get_async_session() as session:
            result = await session.execute(
                select(User.email).where(
                    and_(User.id == user_id, User.tenant_id == tenant_id)
                )
            )
            email = result.scalar_one_or_none()

        if not email:
            logger.debug(
                f"User {user_id} has no email, skipping '{template_key}'",
                extra={"tenant_id": tenant_id},
            )
            return False

        return await self.send_template_email(tenant_id, email, template_key, variables)


# ============================================================================
# Dispatcher
# ============================================================================


class NotificationDispatcher:
    """Drains outboxes with per-intent error isolation."""

    def __init__(
        self,
        port: NotificationService | None = None,
        background: bool | None = None,
    ):
        self.port = port or NotificationService()
        self.background = (
            get_settings().NOTIFICATIONS_BACKGROUND if background is None else background
        )
        # Strong references so pending tasks are not garbage collected
        self._tasks: set[asyncio.Task] = set()

    async def _deliver(self, intent: NotificationIntent) -> bool:
        if isinstance(intent, ChatIntent):
            return await self.port.notify_user(intent.tenant_id, intent.user_id, intent.text)
        if isinstance(intent, UserEmailIntent):
            return await self.port.send_template_message(
                intent.tenant_id, intent.user_id, intent.template_key, intent.variables
            )
        return await self.port.send_template_email(
            intent.tenant_id, intent.to, intent.template_key, intent.variables
        )

    async def drain(self, intents: list[NotificationIntent]) -> int:
        """Deliver intents in order; returns how many were sent."""
        sent = 0
        for intent in intents:
            try:
                if await self._deliver(intent):
                    sent += 1
            except Exception as e:
                logger.error(
                    f"Notification delivery failed ({type(intent).__name__}): {e}",
                    extra={"tenant_id": intent.tenant_id},
                    exc_info=True,
                )
        return sent

    async def dispatch(self, outbox: NotificationOutbox) -> None:
        intents = list(outbox)
        if not intents:
            return

        if not self.background:
            await self.drain(intents)
            return

        task = asyncio.create_task(self.drain(intents))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self) -> None:
        """Wait for in-flight background deliveries (used on shutdown)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


async def dispatch_notifications(outbox: NotificationOutbox) -> None:
    """Hand an outbox to the process dispatcher; never raises."""
    try:
        await get_dispatcher().dispatch(outbox)
    except Exception as e:
        logger.error(f"Notification dispatch failed: {e}", exc_info=True)
