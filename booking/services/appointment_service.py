"""
Appointment Lifecycle - creation, listing, reschedule, status transitions
and bulk deletion of appointments.

Every operation is tenant-scoped and starts with a policy check
(booking.services.authorization). Status writes go through AppointmentFSM.

Double booking is prevented at write time:
1. pg_advisory_xact_lock keyed on (tenant, professional) serializes the
   conflict check and the insert/update of concurrent requests
2. The partial unique index uq_appointments_professional_slot rejects any
   duplicate that slips through; only a violation of that index becomes
   SchedulingConflictError, other integrity errors are BadRequestError

Notifications are collected in an outbox and dispatched after commit.
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, NoReturn
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from booking.exceptions import (
    BadRequestError,
    BookingError,
    NotFoundError,
    SchedulingConflictError,
)
from booking.fsm import AppointmentFSM
from booking.services import availability_service
from booking.services.authorization import (
    ListingScope,
    Operation,
    Requester,
    authorize,
    listing_scope,
)
from booking.services.notification_service import (
    NotificationOutbox,
    dispatch_notifications,
    queue_booking_confirmation,
    queue_status_change,
)
from booking.services.payment_service import create_direct_payment
from database.connection import get_async_session
from database.models import (
    Appointment,
    AppointmentStatus,
    Location,
    Payment,
    PaymentMethod,
    Professional,
    Service,
    User,
)

logger = logging.getLogger(__name__)

# Fields that update() may change
EDITABLE_FIELDS = frozenset({"date", "professional_id", "location_id", "notes", "service_ids"})
# Editable fields that cannot be cleared
REQUIRED_FIELDS = frozenset({"date", "service_ids"})

SLOT_INDEX_NAME = "uq_appointments_professional_slot"


@dataclass
class AppointmentPage:
    """Paginated listing: data plus {total, page, limit, totalPages} meta."""

    data: list[Appointment]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


# ============================================================================
# Query helpers
# ============================================================================


def _with_relations(stmt):
    return stmt.options(
        selectinload(Appointment.services),
        selectinload(Appointment.user),
        selectinload(Appointment.professional),
        selectinload(Appointment.location),
    )


async def get_appointment(
    session: AsyncSession,
    appointment_id: UUID,
    tenant_id: UUID,
    for_update: bool = False,
) -> Appointment | None:
    """
    Tenant-scoped appointment with services, user, professional and location.

    Always repopulates an instance already present in the session so that
    relations reflect the latest committed foreign keys.
    """
    stmt = _with_relations(
        select(Appointment).where(
            and_(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
        )
    ).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update(of=Appointment)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def lock_professional_schedule(
    session: AsyncSession, tenant_id: UUID, professional_id: UUID
) -> None:
    """Transaction-scoped advisory lock serializing writes to one professional's schedule."""
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtextextended(:key, 0))"),
        {"key": f"appointment-slot:{tenant_id}:{professional_id}"},
    )


async def find_conflicting_appointment(
    session: AsyncSession,
    tenant_id: UUID,
    professional_id: UUID,
    start: datetime,
    exclude_id: UUID | None = None,
) -> Appointment | None:
    """Non-canceled appointment of the professional at exactly this instant."""
    conditions = [
        Appointment.tenant_id == tenant_id,
        Appointment.professional_id == professional_id,
        Appointment.date == start,
        Appointment.status != AppointmentStatus.CANCELED,
    ]
    if exclude_id is not None:
        conditions.append(Appointment.id != exclude_id)

    result = await session.execute(select(Appointment).where(and_(*conditions)).limit(1))
    return result.scalar_one_or_none()


async def load_services(
    session: AsyncSession, tenant_id: UUID, service_ids: list[UUID]
) -> list[Service]:
    """Tenant services by id; raises BadRequestError when any id is unknown."""
    unique_ids = list(dict.fromkeys(service_ids))
    if not unique_ids:
        return []

    result = await session.execute(
        select(Service).where(and_(Service.id.in_(unique_ids), Service.tenant_id == tenant_id))
    )
    services = list(result.scalars().all())
    if len(services) != len(unique_ids):
        found = {s.id for s in services}
        missing = [str(sid) for sid in unique_ids if sid not in found]
        raise BadRequestError("Service not found", service_ids=missing)
    return services


async def ensure_tenant_entity(
    session: AsyncSession, model: Any, entity_id: UUID | None, tenant_id: UUID, label: str
) -> None:
    """Reject references to rows of another tenant (or missing rows)."""
    if entity_id is None:
        return
    result = await session.execute(
        select(model.id).where(and_(model.id == entity_id, model.tenant_id == tenant_id))
    )
    if result.scalar_one_or_none() is None:
        raise BadRequestError(f"{label} not found", **{f"{label.lower()}_id": str(entity_id)})


def violated_constraint(error: IntegrityError) -> str | None:
    """Constraint name reported by the driver, if any."""
    orig = error.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name
    return None


def raise_for_integrity_error(error: IntegrityError, log_extra: dict[str, Any]) -> NoReturn:
    """
    Translate an appointment write failure.

    Only the professional slot index means a double booking; any other
    violation is reported as invalid input.
    """
    constraint = violated_constraint(error)
    if constraint == SLOT_INDEX_NAME or (
        constraint is None and SLOT_INDEX_NAME in str(error.orig)
    ):
        logger.warning("Unique slot index rejected appointment write", extra=log_extra)
        raise SchedulingConflictError("Time slot already booked for this professional") from error

    logger.warning(f"Appointment write rejected by constraint {constraint}", extra=log_extra)
    raise BadRequestError(
        "Appointment violates a data constraint", constraint=constraint
    ) from error


def _listing_conditions(
    tenant_id: UUID, target_date: date | None, scope: ListingScope
) -> list[Any]:
    conditions: list[Any] = [Appointment.tenant_id == tenant_id]

    if target_date is not None:
        day_start, day_end = availability_service.get_day_bounds(target_date)
        conditions.append(Appointment.date >= day_start)
        conditions.append(Appointment.date <= day_end)

    if scope.user_id is not None:
        conditions.append(Appointment.user_id == scope.user_id)

    if scope.professional_email is not None:
        conditions.append(
            Appointment.professional.has(
                and_(
                    Professional.tenant_id == tenant_id,
                    func.lower(Professional.email) == scope.professional_email,
                )
            )
        )

    return conditions


# ============================================================================
# Operations
# ============================================================================


async def create_appointment(
    tenant_id: UUID,
    user_id: UUID,
    appointment_date: datetime,
    service_ids: list[UUID],
    professional_id: UUID | None = None,
    location_id: UUID | None = None,
    payment_method: PaymentMethod = PaymentMethod.AT_LOCATION,
    notes: str | None = None,
) -> Appointment:
    """
    Create an appointment.

    Status is CONFIRMED for offline payment methods and PENDING for ONLINE.
    PLAN_CREDIT bookings try to consume one subscription credit; a failure
    there is logged and the booking still succeeds.

    Raises:
        SchedulingConflictError: Professional already booked at this instant
        BadRequestError: Unknown service, user, professional or location
    """
    appointment_id = uuid4()
    log_extra = {"tenant_id": tenant_id, "appointment_id": appointment_id}

    async with get_async_session() as session:
        await ensure_tenant_entity(session, User, user_id, tenant_id, "User")
        await ensure_tenant_entity(session, Professional, professional_id, tenant_id, "Professional")
        await ensure_tenant_entity(session, Location, location_id, tenant_id, "Location")
        services = await load_services(session, tenant_id, service_ids)

        if professional_id is not None:
            await lock_professional_schedule(session, tenant_id, professional_id)
            conflict = await find_conflicting_appointment(
                session, tenant_id, professional_id, appointment_date
            )
            if conflict is not None:
                logger.info(
                    f"Slot {appointment_date.isoformat()} already taken for professional {professional_id}",
                    extra=log_extra,
                )
                raise SchedulingConflictError(
                    "Time slot already booked for this professional",
                    conflicting_appointment_id=str(conflict.id),
                )

        appointment = Appointment(
            id=appointment_id,
            tenant_id=tenant_id,
            user_id=user_id,
            professional_id=professional_id,
            location_id=location_id,
            date=appointment_date,
            status=AppointmentFSM.initial_status(payment_method),
            payment_method=payment_method,
            notes=notes,
        )
        appointment.services = services
        session.add(appointment)

        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise_for_integrity_error(e, log_extra)

        appointment = await get_appointment(session, appointment_id, tenant_id)

    logger.info(
        f"Appointment created for {appointment_date.isoformat()} "
        f"(status={appointment.status.value}, method={payment_method.value})",
        extra=log_extra,
    )

    if payment_method == PaymentMethod.PLAN_CREDIT:
        try:
            await create_direct_payment(
                tenant_id=tenant_id,
                user_id=user_id,
                amount=0,
                method=PaymentMethod.PLAN_CREDIT,
                appointment_id=appointment_id,
            )
        except BookingError as e:
            logger.warning(f"Plan credit payment not recorded: {e.message}", extra=log_extra)
        except Exception as e:
            logger.error(f"Plan credit payment failed: {e}", extra=log_extra, exc_info=True)

    if payment_method != PaymentMethod.ONLINE:
        outbox = NotificationOutbox()
        queue_booking_confirmation(outbox, appointment)
        await dispatch_notifications(outbox)

    return appointment


async def find_all_appointments(
    tenant_id: UUID,
    target_date: date | None = None,
    page: int | None = None,
    limit: int | None = None,
    requester: Requester | None = None,
) -> list[Appointment] | AppointmentPage:
    """
    Role-scoped listing.

    Without both page and limit: every matching appointment, oldest first.
    With page and limit: newest first, data and total count read concurrently.
    """
    conditions = _listing_conditions(tenant_id, target_date, listing_scope(requester))

    if not page or not limit:
        async with get_async_session() as session:
            result = await session.execute(
                _with_relations(select(Appointment).where(and_(*conditions))).order_by(
                    Appointment.date.asc()
                )
            )
            return list(result.scalars().all())

    async def _fetch_page() -> list[Appointment]:
        async with get_async_session() as session:
            result = await session.execute(
                _with_relations(select(Appointment).where(and_(*conditions)))
                .order_by(Appointment.date.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def _count() -> int:
        async with get_async_session() as session:
            result = await session.execute(
                select(func.count()).select_from(Appointment).where(and_(*conditions))
            )
            return int(result.scalar_one())

    data, total = await asyncio.gather(_fetch_page(), _count())
    return AppointmentPage(data=data, total=total, page=page, limit=limit)


async def find_one_appointment(
    appointment_id: UUID, tenant_id: UUID, requester: Requester | None = None
) -> Appointment:
    async with get_async_session() as session:
        appointment = await get_appointment(session, appointment_id, tenant_id)

    if appointment is None:
        raise NotFoundError("Appointment not found", appointment_id=str(appointment_id))

    authorize(Operation.VIEW, requester, appointment)
    return appointment


async def update_appointment(
    appointment_id: UUID,
    tenant_id: UUID,
    changes: dict[str, Any],
    requester: Requester | None = None,
) -> Appointment:
    """
    Reschedule or edit an appointment.

    Changing date or professional re-validates the slot against the other
    non-canceled appointments of the (new) professional. Status is not
    editable here; use update_appointment_status().

    Raises:
        NotFoundError, ForbiddenError, SchedulingConflictError, BadRequestError
    """
    unknown = set(changes) - EDITABLE_FIELDS
    if unknown:
        raise BadRequestError("Fields not editable", fields=sorted(unknown))

    cleared = sorted(f for f in REQUIRED_FIELDS if f in changes and changes[f] is None)
    if cleared:
        raise BadRequestError("Fields cannot be null", fields=cleared)

    log_extra = {"tenant_id": tenant_id, "appointment_id": appointment_id}

    async with get_async_session() as session:
        appointment = await get_appointment(session, appointment_id, tenant_id, for_update=True)
        if appointment is None:
            raise NotFoundError("Appointment not found", appointment_id=str(appointment_id))

        authorize(Operation.UPDATE, requester, appointment)

        if AppointmentFSM.is_terminal(appointment.status):
            raise BadRequestError(
                f"Cannot edit a {appointment.status.value} appointment",
                status=appointment.status.value,
            )

        new_date = changes.get("date", appointment.date)
        new_professional_id = changes.get("professional_id", appointment.professional_id)
        slot_changed = (
            new_date != appointment.date
            or new_professional_id != appointment.professional_id
        )

        if "professional_id" in changes:
            await ensure_tenant_entity(
                session, Professional, new_professional_id, tenant_id, "Professional"
            )
        if "location_id" in changes:
            await ensure_tenant_entity(
                session, Location, changes["location_id"], tenant_id, "Location"
            )

        if slot_changed and new_professional_id is not None:
            await lock_professional_schedule(session, tenant_id, new_professional_id)
            conflict = await find_conflicting_appointment(
                session, tenant_id, new_professional_id, new_date, exclude_id=appointment.id
            )
            if conflict is not None:
                raise SchedulingConflictError(
                    "Time slot already booked for this professional",
                    conflicting_appointment_id=str(conflict.id),
                )

        if "service_ids" in changes:
            appointment.services = await load_services(
                session, tenant_id, changes["service_ids"]
            )

        appointment.date = new_date
        appointment.professional_id = new_professional_id
        if "location_id" in changes:
            appointment.location_id = changes["location_id"]
        if "notes" in changes:
            appointment.notes = changes["notes"]

        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise_for_integrity_error(e, log_extra)

        appointment = await get_appointment(session, appointment_id, tenant_id)

    logger.info(f"Appointment updated: {sorted(changes)}", extra=log_extra)
    return appointment


async def update_appointment_status(
    appointment_id: UUID,
    tenant_id: UUID,
    status: AppointmentStatus,
    requester: Requester | None = None,
) -> Appointment:
    """
    Transition an appointment's status and notify the client (and the
    professional on cancellation).

    Raises:
        NotFoundError, ForbiddenError, InvalidTransitionError
    """
    outbox = NotificationOutbox()

    async with get_async_session() as session:
        appointment = await get_appointment(session, appointment_id, tenant_id, for_update=True)
        if appointment is None:
            raise NotFoundError("Appointment not found", appointment_id=str(appointment_id))

        authorize(Operation.UPDATE_STATUS, requester, appointment, target_status=status)
        AppointmentFSM.validate_transition(appointment.status, status)

        previous = appointment.status
        appointment.status = status
        queue_status_change(outbox, appointment, status)
        await session.commit()

    logger.info(
        f"Appointment status changed {previous.value} -> {status.value}",
        extra={"tenant_id": tenant_id, "appointment_id": appointment_id},
    )

    await dispatch_notifications(outbox)
    return appointment


async def delete_appointments(
    appointment_ids: list[UUID],
    tenant_id: UUID,
    requester: Requester | None = None,
) -> int:
    """
    Delete a batch of appointments and their payments in one transaction.

    The whole batch is rejected when any target is COMPLETED. Ids that do
    not belong to the tenant are ignored. Returns the number deleted.
    """
    authorize(Operation.DELETE_MANY, requester)

    ids = list(dict.fromkeys(appointment_ids))
    if not ids:
        return 0

    async with get_async_session() as session:
        result = await session.execute(
            select(Appointment.id, Appointment.status)
            .where(and_(Appointment.id.in_(ids), Appointment.tenant_id == tenant_id))
            .with_for_update()
        )
        rows = result.all()

        completed = [str(row.id) for row in rows if row.status == AppointmentStatus.COMPLETED]
        if completed:
            raise BadRequestError(
                "Completed appointments cannot be deleted", appointment_ids=completed
            )

        found_ids = [row.id for row in rows]
        if not found_ids:
            return 0

        await session.execute(
            delete(Payment).where(
                and_(Payment.appointment_id.in_(found_ids), Payment.tenant_id == tenant_id)
            )
        )
        deleted = await session.execute(
            delete(Appointment).where(
                and_(Appointment.id.in_(found_ids), Appointment.tenant_id == tenant_id)
            )
        )
        await session.commit()

    count = deleted.rowcount
    logger.info(f"Deleted {count} appointments", extra={"tenant_id": tenant_id})
    return count


async def get_available_slots(
    tenant_id: UUID,
    target_date: date,
    service_id: UUID | None = None,
    professional_id: UUID | None = None,
) -> list[str]:
    """Open start times; see availability_service.get_available_slots()."""
    return await availability_service.get_available_slots(
        tenant_id, target_date, service_id=service_id, professional_id=professional_id
    )
