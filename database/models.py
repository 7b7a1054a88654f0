"""
SQLAlchemy ORM models for the booking core.

This module defines the tables:
- tenants: Business accounts (isolation boundary) with an opaque config blob
- users: Clients, staff and admins of a tenant
- professionals / locations / services / plans: Tenant catalog (read-only here)
- appointments: Bookings with lifecycle status and service associations
- payments: Settled or pending payments for appointments and subscriptions
- subscriptions: Plan subscriptions holding booking credits

All models use:
- UUID primary keys (auto-generated)
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB for flexible configuration storage
- A tenant_id column on every tenant-owned row
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    TIMESTAMP,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class UserRole(str, PyEnum):
    """Role of an authenticated user inside a tenant."""

    ADMIN = "ADMIN"
    STAFF = "STAFF"
    CLIENT = "CLIENT"


class AppointmentStatus(str, PyEnum):
    """Appointment lifecycle status."""

    PENDING = "PENDING"        # Awaiting online payment
    CONFIRMED = "CONFIRMED"
    CANCELED = "CANCELED"      # Terminal
    COMPLETED = "COMPLETED"    # Terminal

    def __str__(self):
        return self.value


class PaymentMethod(str, PyEnum):
    """How an appointment or payment is settled."""

    AT_LOCATION = "AT_LOCATION"
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    PIX = "PIX"
    PLAN_CREDIT = "PLAN_CREDIT"
    ONLINE = "ONLINE"


class PaymentStatus(str, PyEnum):
    """Payment settlement status."""

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class PaymentType(str, PyEnum):
    """What a payment pays for."""

    APPOINTMENT = "APPOINTMENT"
    SUBSCRIPTION = "SUBSCRIPTION"


class SubscriptionStatus(str, PyEnum):
    """Subscription lifecycle status."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"


class PlanInterval(str, PyEnum):
    """Billing interval of a plan."""

    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


def _enum_column(enum_cls: type[PyEnum], name: str) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


# ============================================================================
# Tenant & Users
# ============================================================================


class Tenant(Base):
    """
    Tenant model - A business account; every other row is scoped to one.

    The config blob holds SMTP credentials, the ManyChat API key, payment
    gateway tokens and custom email templates:

        {
            "smtp": {"host", "port", "secure", "user", "password", "fromEmail", "fromName"},
            "manyChatApiKey": str,
            "payment": {"mpAccessToken": str, "stripeSecretKey": str},
            "emailTemplates": {"<templateKey>": {"subject": str, "body": str}}
        }
    """

    __tablename__ = "tenants"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    config: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}')>"


class User(Base):
    """
    User model - Clients, staff members and admins.

    Staff users are linked to a Professional record by email.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole, "user_role"),
        default=UserRole.CLIENT,
        nullable=False,
    )

    # ManyChat subscriber used for chat notifications
    manychat_subscriber_id: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("email", "tenant_id", name="uq_users_email_tenant"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role.value}')>"


# ============================================================================
# Catalog Models (read-only from the booking core)
# ============================================================================


class Professional(Base):
    """Professional model - Person providing services."""

    __tablename__ = "professionals"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_professionals_tenant_email", "tenant_id", "email"),
    )

    def __repr__(self) -> str:
        return f"<Professional(id={self.id}, name='{self.name}')>"


class Location(Base):
    """Location model - Physical unit where appointments happen."""

    __tablename__ = "locations"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    def __repr__(self) -> str:
        return f"<Location(id={self.id}, name='{self.name}')>"


class Service(Base):
    """Service model - Bookable service with fixed duration and price."""

    __tablename__ = "services"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="check_duration_positive"),
        CheckConstraint("price >= 0", name="check_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}')>"


class Plan(Base):
    """Plan model - Subscription plan granting booking credits per period."""

    __tablename__ = "plans"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    interval: Mapped[PlanInterval] = mapped_column(
        _enum_column(PlanInterval, "plan_interval"),
        default=PlanInterval.MONTHLY,
        nullable=False,
    )
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00"), nullable=False
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="check_plan_credits_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, name='{self.name}', credits={self.credits})>"


# ============================================================================
# Transactional Models
# ============================================================================


appointment_services = Table(
    "appointment_services",
    Base.metadata,
    Column(
        "appointment_id",
        PGUUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "service_id",
        PGUUID(as_uuid=True),
        ForeignKey("services.id", ondelete="RESTRICT"),
        primary_key=True,
    ),
)


class Appointment(Base):
    """
    Appointment model - Booking with lifecycle status.

    Status starts as CONFIRMED for offline payment methods and PENDING for
    ONLINE payments until the gateway webhook confirms it.

    The partial unique index guarantees at most one non-canceled appointment
    per (tenant, professional, instant).
    """

    __tablename__ = "appointments"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    professional_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("professionals.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    location_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("locations.id", ondelete="SET NULL"),
        nullable=True,
    )

    date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, index=True
    )
    status: Mapped[AppointmentStatus] = mapped_column(
        _enum_column(AppointmentStatus, "appointment_status"),
        default=AppointmentStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod, "payment_method"),
        default=PaymentMethod.AT_LOCATION,
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    # Relationships
    user: Mapped["User"] = relationship("User")
    professional: Mapped[Optional["Professional"]] = relationship("Professional")
    location: Mapped[Optional["Location"]] = relationship("Location")
    services: Mapped[list["Service"]] = relationship(
        "Service", secondary=appointment_services
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="appointment"
    )

    __table_args__ = (
        Index(
            "uq_appointments_professional_slot",
            "tenant_id",
            "professional_id",
            "date",
            unique=True,
            postgresql_where=text(
                "professional_id IS NOT NULL AND status <> 'CANCELED'"
            ),
        ),
        Index("idx_appointments_tenant_date", "tenant_id", "date"),
    )

    @property
    def duration_minutes(self) -> int | None:
        """Sum of the service durations, or None when no services are linked."""
        total = sum(s.duration_minutes for s in self.services)
        return total or None

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, date={self.date}, "
            f"status='{self.status.value}')>"
        )


class Subscription(Base):
    """
    Subscription model - A user's plan subscription holding booking credits.

    credits_remaining is only ever decremented by a conditional UPDATE and is
    guarded by a CHECK constraint.
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        _enum_column(SubscriptionStatus, "subscription_status"),
        default=SubscriptionStatus.PENDING,
        nullable=False,
    )
    credits_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    start_date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False
    )
    end_date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User")
    plan: Mapped["Plan"] = relationship("Plan")

    __table_args__ = (
        CheckConstraint("credits_remaining >= 0", name="check_credits_non_negative"),
        Index(
            "uq_subscriptions_one_active",
            "tenant_id",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, status='{self.status.value}', "
            f"credits={self.credits_remaining})>"
        )


class Payment(Base):
    """
    Payment model - Payment records for appointments and subscriptions.

    amount and method are fixed at creation; only status changes afterwards.
    gateway_payment_id stores the gateway's id for webhook-created payments.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )
    tenant_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    appointment_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    subscription_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(
        _enum_column(PaymentMethod, "payment_method"),
        nullable=False,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    type: Mapped[PaymentType] = mapped_column(
        _enum_column(PaymentType, "payment_type"),
        nullable=False,
    )
    gateway_payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User")
    appointment: Mapped[Optional["Appointment"]] = relationship(
        "Appointment", back_populates="payments"
    )
    subscription: Mapped[Optional["Subscription"]] = relationship("Subscription")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="check_amount_non_negative"),
        Index("idx_payments_appointment_status", "appointment_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, amount={self.amount}, "
            f"status='{self.status.value}')>"
        )
