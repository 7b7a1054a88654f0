"""
SMTP email delivery.

Tenant SMTP settings (tenant.config["smtp"]) are used when complete; the
SMTP_* environment settings are the fallback. smtplib is blocking, so the
send runs in a worker thread.
"""

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any

from booking.exceptions import ExternalServiceError
from shared.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    user: str
    password: str
    from_email: str
    from_name: str | None = None
    secure: bool = False

    @property
    def sender(self) -> str:
        if self.from_name:
            return f"{self.from_name} <{self.from_email}>"
        return self.from_email


def resolve_smtp_config(tenant_smtp: dict[str, Any] | None) -> SMTPConfig | None:
    """Tenant SMTP settings when complete, else environment settings, else None."""
    smtp = tenant_smtp or {}
    required = ("host", "port", "user", "password", "fromEmail")
    if all(smtp.get(key) for key in required):
        return SMTPConfig(
            host=smtp["host"],
            port=int(smtp["port"]),
            user=smtp["user"],
            password=smtp["password"],
            from_email=smtp["fromEmail"],
            from_name=smtp.get("fromName"),
            secure=bool(smtp.get("secure", False)),
        )

    settings = get_settings()
    if (
        settings.SMTP_HOST
        and settings.SMTP_USER
        and settings.SMTP_PASSWORD
        and settings.SMTP_FROM
    ):
        return SMTPConfig(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            user=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_email=settings.SMTP_FROM,
        )

    return None


def build_message(config: SMTPConfig, to: str, subject: str, html: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = config.sender
    msg["To"] = to
    msg.set_content("Este e-mail requer um cliente com suporte a HTML.")
    msg.add_alternative(html, subtype="html")
    return msg


def _send_blocking(config: SMTPConfig, msg: EmailMessage, timeout: float) -> None:
    context = ssl.create_default_context()
    if config.secure:
        with smtplib.SMTP_SSL(config.host, config.port, context=context, timeout=timeout) as server:
            server.login(config.user, config.password)
            server.send_message(msg)
    else:
        with smtplib.SMTP(config.host, config.port, timeout=timeout) as server:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls(context=context)
                server.ehlo()
            server.login(config.user, config.password)
            server.send_message(msg)


async def send_email(config: SMTPConfig, to: str, subject: str, html: str) -> None:
    """
    Send an HTML email.

    Raises:
        ExternalServiceError: SMTP connection, authentication or delivery failed
    """
    msg = build_message(config, to, subject, html)
    timeout = get_settings().EXTERNAL_API_TIMEOUT_SECONDS

    try:
        await asyncio.to_thread(_send_blocking, config, msg, timeout)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"SMTP send to {to} via {config.host} failed: {e}")
        raise ExternalServiceError(f"SMTP send failed: {e}", service="smtp") from e

    logger.info(f"Email sent to {to}: {subject}")
