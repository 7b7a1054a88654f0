"""Pydantic models for appointment routes."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import Field, field_validator

from api.models.common import CamelModel
from database.models import AppointmentStatus, PaymentMethod


class AppointmentCreateRequest(CamelModel):
    """Body of POST /appointments."""

    user_id: UUID | None = None
    date: datetime
    service_ids: list[UUID] = Field(min_length=1)
    professional_id: UUID | None = None
    location_id: UUID | None = None
    payment_method: PaymentMethod = PaymentMethod.AT_LOCATION
    notes: str | None = None

    @field_validator("date")
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        """Appointment instants must carry an offset."""
        if v.tzinfo is None:
            raise ValueError("date must include a timezone offset")
        return v


class AppointmentUpdateRequest(CamelModel):
    """
    Body of PATCH /appointments/{id}; only fields present are changed.

    professionalId, locationId and notes may be cleared with null; date and
    serviceIds may be omitted but never null.
    """

    date: datetime | None = None
    service_ids: list[UUID] | None = Field(default=None, min_length=1)
    professional_id: UUID | None = None
    location_id: UUID | None = None
    notes: str | None = None

    @field_validator("date", "service_ids")
    @classmethod
    def reject_null(cls, v):
        if v is None:
            raise ValueError("cannot be null")
        return v

    @field_validator("date")
    @classmethod
    def validate_timezone(cls, v: datetime) -> datetime:
        if v is not None and v.tzinfo is None:
            raise ValueError("date must include a timezone offset")
        return v

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class AppointmentStatusRequest(CamelModel):
    status: AppointmentStatus


class BulkDeleteRequest(CamelModel):
    ids: list[UUID] = Field(min_length=1)


class BulkDeleteResponse(CamelModel):
    deleted: int


class ServiceSummary(CamelModel):
    id: UUID
    name: str
    duration_minutes: int
    price: Decimal


class PersonSummary(CamelModel):
    id: UUID
    name: str
    email: str | None = None


class AppointmentResponse(CamelModel):
    id: UUID
    tenant_id: UUID
    user_id: UUID
    professional_id: UUID | None
    location_id: UUID | None
    date: datetime
    status: AppointmentStatus
    payment_method: PaymentMethod
    notes: str | None
    duration_minutes: int | None = None
    services: list[ServiceSummary] = []
    user: PersonSummary | None = None
    professional: PersonSummary | None = None
    created_at: datetime | None = None


class PageMeta(CamelModel):
    total: int
    page: int
    limit: int
    total_pages: int


class AppointmentPageResponse(CamelModel):
    data: list[AppointmentResponse]
    meta: PageMeta


class AvailableSlotsResponse(CamelModel):
    date: str
    slots: list[str]
