"""Appointment routes: booking, listing, availability, edits and bulk deletion."""

import logging
from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, status

from api.dependencies import CurrentRequester, TenantId
from api.models.appointments import (
    AppointmentCreateRequest,
    AppointmentPageResponse,
    AppointmentResponse,
    AppointmentStatusRequest,
    AppointmentUpdateRequest,
    AvailableSlotsResponse,
    BulkDeleteRequest,
    BulkDeleteResponse,
    PageMeta,
)
from booking.services import appointment_service
from booking.services.appointment_service import AppointmentPage
from database.models import UserRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
async def create_appointment(
    body: AppointmentCreateRequest,
    tenant_id: TenantId,
    requester: CurrentRequester,
) -> AppointmentResponse:
    """
    Book an appointment.

    Clients always book for themselves; staff and admins may book on behalf
    of another user by passing userId.
    """
    user_id = body.user_id or requester.user_id
    if requester.role == UserRole.CLIENT:
        user_id = requester.user_id

    appointment = await appointment_service.create_appointment(
        tenant_id=tenant_id,
        user_id=user_id,
        appointment_date=body.date,
        service_ids=body.service_ids,
        professional_id=body.professional_id,
        location_id=body.location_id,
        payment_method=body.payment_method,
        notes=body.notes,
    )
    return AppointmentResponse.model_validate(appointment)


@router.get("", response_model=list[AppointmentResponse] | AppointmentPageResponse)
async def list_appointments(
    tenant_id: TenantId,
    requester: CurrentRequester,
    target_date: Annotated[date | None, Query(alias="date")] = None,
    page: Annotated[int | None, Query(ge=1)] = None,
    limit: Annotated[int | None, Query(ge=1, le=100)] = None,
) -> list[AppointmentResponse] | AppointmentPageResponse:
    """List appointments visible to the requester; paginated only with both page and limit."""
    result = await appointment_service.find_all_appointments(
        tenant_id,
        target_date=target_date,
        page=page,
        limit=limit,
        requester=requester,
    )

    if isinstance(result, AppointmentPage):
        return AppointmentPageResponse(
            data=[AppointmentResponse.model_validate(a) for a in result.data],
            meta=PageMeta(
                total=result.total,
                page=result.page,
                limit=result.limit,
                total_pages=result.total_pages,
            ),
        )
    return [AppointmentResponse.model_validate(a) for a in result]


@router.get("/slots", response_model=AvailableSlotsResponse)
async def available_slots(
    tenant_id: TenantId,
    target_date: Annotated[date, Query(alias="date")],
    service_id: Annotated[UUID | None, Query(alias="serviceId")] = None,
    professional_id: Annotated[UUID | None, Query(alias="professionalId")] = None,
) -> AvailableSlotsResponse:
    slots = await appointment_service.get_available_slots(
        tenant_id, target_date, service_id=service_id, professional_id=professional_id
    )
    return AvailableSlotsResponse(date=target_date.isoformat(), slots=slots)


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_id: UUID,
    tenant_id: TenantId,
    requester: CurrentRequester,
) -> AppointmentResponse:
    appointment = await appointment_service.find_one_appointment(
        appointment_id, tenant_id, requester=requester
    )
    return AppointmentResponse.model_validate(appointment)


@router.patch("/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: UUID,
    body: AppointmentUpdateRequest,
    tenant_id: TenantId,
    requester: CurrentRequester,
) -> AppointmentResponse:
    appointment = await appointment_service.update_appointment(
        appointment_id, tenant_id, body.changes(), requester=requester
    )
    return AppointmentResponse.model_validate(appointment)


@router.patch("/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: UUID,
    body: AppointmentStatusRequest,
    tenant_id: TenantId,
    requester: CurrentRequester,
) -> AppointmentResponse:
    appointment = await appointment_service.update_appointment_status(
        appointment_id, tenant_id, body.status, requester=requester
    )
    return AppointmentResponse.model_validate(appointment)


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete_appointments(
    body: BulkDeleteRequest,
    tenant_id: TenantId,
    requester: CurrentRequester,
) -> BulkDeleteResponse:
    """Delete several appointments at once; rejected entirely if any is COMPLETED."""
    deleted = await appointment_service.delete_appointments(
        body.ids, tenant_id, requester=requester
    )
    return BulkDeleteResponse(deleted=deleted)
