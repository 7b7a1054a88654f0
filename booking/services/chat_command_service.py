"""
Chat Command Adapter - translates ManyChat webhook actions into booking calls.

Actions:
- check_availability: {date, serviceId?, professionalId?} -> open slots
- create_appointment: {email, date, serviceId, name?, phone?, professionalId?, subscriber_id?}
- get_services / get_professionals: tenant catalog
- get_user_appointments: {email} -> last five appointments, newest first

Unknown actions return {"status": "ignored"}.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking.exceptions import BadRequestError
from booking.services.appointment_service import create_appointment, get_available_slots
from database.connection import get_async_session
from database.models import Appointment, PaymentMethod, Professional, Service, User, UserRole
from shared.config import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CHAT_USER_NAME = "ManyChat User"
RECENT_APPOINTMENTS_LIMIT = 5


def _parse_uuid(value: Any, field: str) -> UUID | None:
    if value in (None, ""):
        return None
    try:
        return UUID(str(value))
    except ValueError as e:
        raise BadRequestError(f"Invalid {field}", **{field: str(value)}) from e


def parse_chat_datetime(value: str) -> datetime:
    """ISO timestamp or "YYYY-MM-DD HH:MM"; naive values are business-local time."""
    try:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError as e:
        raise BadRequestError("Invalid date", date=str(value)) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(get_settings().TIMEZONE))
    return parsed


def parse_chat_date(value: str) -> date:
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError as e:
        raise BadRequestError("Invalid date", date=text) from e


async def find_or_create_chat_user(
    session: AsyncSession,
    tenant_id: UUID,
    email: str,
    name: str | None = None,
    phone: str | None = None,
    subscriber_id: str | None = None,
) -> User:
    """Client user by (email, tenant); created on first contact, subscriber id kept fresh."""
    result = await session.execute(
        select(User).where(and_(User.email == email, User.tenant_id == tenant_id))
    )
    user = result.scalar_one_or_none()

    if user is None:
        user = User(
            id=uuid4(),
            tenant_id=tenant_id,
            email=email,
            name=name or DEFAULT_CHAT_USER_NAME,
            phone=phone,
            role=UserRole.CLIENT,
            manychat_subscriber_id=subscriber_id,
        )
        session.add(user)
        await session.commit()
        logger.info(f"Chat user created for {email}", extra={"tenant_id": tenant_id})
    elif subscriber_id and user.manychat_subscriber_id != subscriber_id:
        user.manychat_subscriber_id = subscriber_id
        await session.commit()

    return user


async def check_availability(tenant_id: UUID, body: dict[str, Any]) -> dict[str, Any]:
    if not body.get("date"):
        return {"status": "error", "message": "Date is required"}

    slots = await get_available_slots(
        tenant_id,
        parse_chat_date(body["date"]),
        service_id=_parse_uuid(body.get("serviceId"), "serviceId"),
        professional_id=_parse_uuid(body.get("professionalId"), "professionalId"),
    )
    return {"status": "success", "date": body["date"], "slots": slots}


async def create_chat_appointment(tenant_id: UUID, body: dict[str, Any]) -> dict[str, Any]:
    email = body.get("email")
    if not email or not body.get("date") or not body.get("serviceId"):
        raise BadRequestError("Missing required fields: email, date, serviceId")

    appointment_date = parse_chat_datetime(body["date"])
    service_id = _parse_uuid(body["serviceId"], "serviceId")
    professional_id = _parse_uuid(body.get("professionalId"), "professionalId")

    async with get_async_session() as session:
        user = await find_or_create_chat_user(
            session,
            tenant_id,
            email,
            name=body.get("name"),
            phone=body.get("phone"),
            subscriber_id=body.get("subscriber_id"),
        )
        user_id = user.id

    appointment = await create_appointment(
        tenant_id=tenant_id,
        user_id=user_id,
        appointment_date=appointment_date,
        service_ids=[service_id],
        professional_id=professional_id,
        payment_method=PaymentMethod.AT_LOCATION,
    )

    return {
        "status": "success",
        "appointmentId": str(appointment.id),
        "message": "Agendamento realizado com sucesso!",
    }


async def get_services(tenant_id: UUID, body: dict[str, Any]) -> dict[str, Any]:
    async with get_async_session() as session:
        result = await session.execute(
            select(Service).where(Service.tenant_id == tenant_id).order_by(Service.name)
        )
        services = result.scalars().all()

    return {
        "status": "success",
        "services": [
            {
                "id": str(s.id),
                "name": s.name,
                "price": float(s.price),
                "duration": s.duration_minutes,
            }
            for s in services
        ],
    }


async def get_professionals(tenant_id: UUID, body: dict[str, Any]) -> dict[str, Any]:
    async with get_async_session() as session:
        result = await session.execute(
            select(Professional)
            .where(Professional.tenant_id == tenant_id)
            .order_by(Professional.name)
        )
        professionals = result.scalars().all()

    return {
        "status": "success",
        "professionals": [{"id": str(p.id), "name": p.name} for p in professionals],
    }


async def get_user_appointments(tenant_id: UUID, body: dict[str, Any]) -> dict[str, Any]:
    email = body.get("email")
    if not email:
        return {"status": "error", "message": "Email required"}

    async with get_async_session() as session:
        user_result = await session.execute(
            select(User.id).where(and_(User.email == email, User.tenant_id == tenant_id))
        )
        user_id = user_result.scalar_one_or_none()
        if user_id is None:
            return {"status": "success", "appointments": []}

        result = await session.execute(
            select(Appointment)
            .options(selectinload(Appointment.services), selectinload(Appointment.professional))
            .where(and_(Appointment.tenant_id == tenant_id, Appointment.user_id == user_id))
            .order_by(Appointment.date.desc())
            .limit(RECENT_APPOINTMENTS_LIMIT)
        )
        appointments = result.scalars().all()

    return {
        "status": "success",
        "appointments": [
            {
                "id": str(a.id),
                "date": a.date.isoformat(),
                "status": a.status.value,
                "serviceName": a.services[0].name if a.services else "Serviço",
                "professionalName": a.professional.name if a.professional else "Profissional",
            }
            for a in appointments
        ],
    }


ChatHandler = Callable[[UUID, dict[str, Any]], Awaitable[dict[str, Any]]]

ACTIONS: dict[str, ChatHandler] = {
    "check_availability": check_availability,
    "create_appointment": create_chat_appointment,
    "get_services": get_services,
    "get_professionals": get_professionals,
    "get_user_appointments": get_user_appointments,
}


async def handle_chat_command(tenant_id: UUID, body: dict[str, Any]) -> dict[str, Any]:
    """Route a chat action to its handler; unknown actions are ignored."""
    action = body.get("action")
    handler = ACTIONS.get(action) if isinstance(action, str) else None

    if handler is None:
        logger.info(f"Chat action ignored: {action}", extra={"tenant_id": tenant_id})
        return {"status": "ignored", "message": f"Unknown action: {action}"}

    logger.info(f"Chat action: {action}", extra={"tenant_id": tenant_id})
    return await handler(tenant_id, body)
