"""
Availability Engine.

Computes open start times for a tenant on a given day from the existing
non-canceled appointments. The database read and the slot arithmetic are
separate: compute_available_slots() is a pure function over busy intervals.

Rules:
- Operating window BUSINESS_OPEN_HOUR..BUSINESS_CLOSE_HOUR local time (TIMEZONE)
- Candidates every SLOT_INTERVAL_MINUTES from opening time
- A candidate [start, start + duration) is rejected when it ends after closing
  time or overlaps a busy interval (half-open: touching bounds do not collide)

This is a point-in-time snapshot. Double booking is prevented at write time
by the appointment lifecycle (advisory lock + partial unique index).

Usage:
    from booking.services.availability_service import get_available_slots

    slots = await get_available_slots(
        tenant_id=uuid,
        target_date=date(2025, 3, 10),
        service_id=service_uuid,
        professional_id=professional_uuid,
    )
    # ["09:00", "09:30", ...]
"""

import logging
from datetime import date, datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.connection import get_async_session
from database.models import Appointment, AppointmentStatus, Service
from shared.config import get_settings

logger = logging.getLogger(__name__)

BusyInterval = tuple[datetime, datetime]


def get_local_timezone() -> ZoneInfo:
    return ZoneInfo(get_settings().TIMEZONE)


def get_day_bounds(target_date: date, tz: ZoneInfo | None = None) -> tuple[datetime, datetime]:
    """Return [00:00, 23:59:59.999999] of target_date in the business timezone."""
    tz = tz or get_local_timezone()
    start = datetime.combine(target_date, time.min, tzinfo=tz)
    end = datetime.combine(target_date, time.max, tzinfo=tz)
    return start, end


def appointment_interval(appointment: Appointment, default_minutes: int) -> BusyInterval:
    """Busy interval of an appointment: sum of its service durations, or the default."""
    duration = appointment.duration_minutes or default_minutes
    return appointment.date, appointment.date + timedelta(minutes=duration)


def overlaps(start: datetime, end: datetime, busy_start: datetime, busy_end: datetime) -> bool:
    """Half-open interval overlap."""
    return start < busy_end and end > busy_start


def compute_available_slots(
    target_date: date,
    duration_minutes: int,
    busy: list[BusyInterval],
    tz: ZoneInfo,
    open_hour: int = 9,
    close_hour: int = 18,
    interval_minutes: int = 30,
) -> list[str]:
    """
    Pure slot arithmetic.

    Args:
        target_date: Day to compute slots for (local calendar date)
        duration_minutes: Length of the requested booking
        busy: Existing busy intervals (timezone-aware)
        tz: Business timezone
        open_hour: Opening hour (local)
        close_hour: Closing hour (local); slots may end exactly at it
        interval_minutes: Grid step

    Returns:
        Ordered "HH:MM" start times that fit the window and collide with nothing.
    """
    day_start = datetime.combine(target_date, time.min, tzinfo=tz)
    window_open = day_start + timedelta(hours=open_hour)
    window_close = day_start + timedelta(hours=close_hour)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=interval_minutes)

    slots: list[str] = []
    candidate = window_open
    while candidate < window_close:
        candidate_end = candidate + duration
        if candidate_end <= window_close and not any(
            overlaps(candidate, candidate_end, busy_start, busy_end)
            for busy_start, busy_end in busy
        ):
            slots.append(candidate.strftime("%H:%M"))
        candidate += step

    return slots


async def get_service_duration(
    session: AsyncSession, tenant_id: UUID, service_id: UUID | None
) -> int | None:
    """Duration of a tenant's service, or None when unknown."""
    if service_id is None:
        return None
    result = await session.execute(
        select(Service.duration_minutes).where(
            and_(Service.id == service_id, Service.tenant_id == tenant_id)
        )
    )
    return result.scalar_one_or_none()


async def load_day_appointments(
    session: AsyncSession,
    tenant_id: UUID,
    day_start: datetime,
    day_end: datetime,
    professional_id: UUID | None = None,
) -> list[Appointment]:
    """Non-canceled appointments of the day, optionally for one professional."""
    conditions = [
        Appointment.tenant_id == tenant_id,
        Appointment.date >= day_start,
        Appointment.date <= day_end,
        Appointment.status != AppointmentStatus.CANCELED,
    ]
    if professional_id is not None:
        conditions.append(Appointment.professional_id == professional_id)

    result = await session.execute(
        select(Appointment)
        .options(selectinload(Appointment.services))
        .where(and_(*conditions))
        .order_by(Appointment.date.asc())
    )
    return list(result.scalars().all())


async def get_available_slots(
    tenant_id: UUID,
    target_date: date,
    service_id: UUID | None = None,
    professional_id: UUID | None = None,
) -> list[str]:
    """
    Open start times for a tenant/day, optionally for a service and professional.

    Without a professional every appointment of the tenant on that day blocks
    the slot. An unknown service falls back to the default duration.
    """
    settings = get_settings()
    tz = get_local_timezone()
    day_start, day_end = get_day_bounds(target_date, tz)

    async with get_async_session() as session:
        duration = await get_service_duration(session, tenant_id, service_id)
        appointments = await load_day_appointments(
            session, tenant_id, day_start, day_end, professional_id
        )

    if duration is None:
        duration = settings.DEFAULT_SERVICE_DURATION_MINUTES

    busy = [
        appointment_interval(appt, settings.DEFAULT_SERVICE_DURATION_MINUTES)
        for appt in appointments
    ]

    slots = compute_available_slots(
        target_date,
        duration,
        busy,
        tz,
        open_hour=settings.BUSINESS_OPEN_HOUR,
        close_hour=settings.BUSINESS_CLOSE_HOUR,
        interval_minutes=settings.SLOT_INTERVAL_MINUTES,
    )

    logger.debug(
        f"Computed {len(slots)} slots for {target_date} "
        f"(duration={duration}min, busy={len(busy)})",
        extra={"tenant_id": tenant_id},
    )
    return slots
