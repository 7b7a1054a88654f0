"""Create booking schema: tenants, catalog, appointments, subscriptions, payments

Revision ID: 3f1a9c2e7b40
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b40'
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Enum types are created once and shared between tables
user_role = postgresql.ENUM('ADMIN', 'STAFF', 'CLIENT', name='user_role', create_type=False)
appointment_status = postgresql.ENUM(
    'PENDING', 'CONFIRMED', 'CANCELED', 'COMPLETED', name='appointment_status', create_type=False
)
payment_method = postgresql.ENUM(
    'AT_LOCATION', 'CASH', 'CREDIT_CARD', 'PIX', 'PLAN_CREDIT', 'ONLINE',
    name='payment_method', create_type=False,
)
payment_status = postgresql.ENUM(
    'PENDING', 'COMPLETED', 'FAILED', name='payment_status', create_type=False
)
payment_type = postgresql.ENUM(
    'APPOINTMENT', 'SUBSCRIPTION', name='payment_type', create_type=False
)
subscription_status = postgresql.ENUM(
    'PENDING', 'ACTIVE', 'CANCELED', name='subscription_status', create_type=False
)
plan_interval = postgresql.ENUM('MONTHLY', 'YEARLY', name='plan_interval', create_type=False)

ENUMS = (
    user_role,
    appointment_status,
    payment_method,
    payment_status,
    payment_type,
    subscription_status,
    plan_interval,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table('tenants',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('config', postgresql.JSONB(astext_type=sa.Text()), nullable=False,
                  server_default=sa.text("'{}'::jsonb")),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('users',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('phone', sa.String(length=30), nullable=True),
        sa.Column('role', user_role, nullable=False, server_default='CLIENT'),
        sa.Column('manychat_subscriber_id', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', 'tenant_id', name='uq_users_email_tenant')
    )
    op.create_index('ix_users_tenant_id', 'users', ['tenant_id'])

    op.create_table('professionals',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_professionals_tenant_id', 'professionals', ['tenant_id'])
    op.create_index('idx_professionals_tenant_email', 'professionals', ['tenant_id', 'email'])

    op.create_table('locations',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_locations_tenant_id', 'locations', ['tenant_id'])

    op.create_table('services',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False,
                  server_default='0'),
        sa.CheckConstraint('duration_minutes > 0', name='check_duration_positive'),
        sa.CheckConstraint('price >= 0', name='check_price_non_negative'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_services_tenant_id', 'services', ['tenant_id'])

    op.create_table('plans',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('interval', plan_interval, nullable=False, server_default='MONTHLY'),
        sa.Column('credits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=False,
                  server_default='0'),
        sa.CheckConstraint('credits >= 0', name='check_plan_credits_non_negative'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_plans_tenant_id', 'plans', ['tenant_id'])

    op.create_table('appointments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('professional_id', sa.UUID(), nullable=True),
        sa.Column('location_id', sa.UUID(), nullable=True),
        sa.Column('date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('status', appointment_status, nullable=False, server_default='PENDING'),
        sa.Column('payment_method', payment_method, nullable=False,
                  server_default='AT_LOCATION'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['professional_id'], ['professionals.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_appointments_tenant_id', 'appointments', ['tenant_id'])
    op.create_index('ix_appointments_user_id', 'appointments', ['user_id'])
    op.create_index('ix_appointments_professional_id', 'appointments', ['professional_id'])
    op.create_index('ix_appointments_date', 'appointments', ['date'])
    op.create_index('ix_appointments_status', 'appointments', ['status'])
    op.create_index('idx_appointments_tenant_date', 'appointments', ['tenant_id', 'date'])

    # At most one non-canceled appointment per professional and instant
    op.create_index(
        'uq_appointments_professional_slot',
        'appointments',
        ['tenant_id', 'professional_id', 'date'],
        unique=True,
        postgresql_where=sa.text("professional_id IS NOT NULL AND status <> 'CANCELED'"),
    )

    op.create_table('appointment_services',
        sa.Column('appointment_id', sa.UUID(), nullable=False),
        sa.Column('service_id', sa.UUID(), nullable=False),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['service_id'], ['services.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('appointment_id', 'service_id')
    )

    op.create_table('subscriptions',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('plan_id', sa.UUID(), nullable=False),
        sa.Column('status', subscription_status, nullable=False, server_default='PENDING'),
        sa.Column('credits_remaining', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('end_date', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.CheckConstraint('credits_remaining >= 0', name='check_credits_non_negative'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'])
    op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])

    # A user holds at most one ACTIVE subscription per tenant
    op.create_index(
        'uq_subscriptions_one_active',
        'subscriptions',
        ['tenant_id', 'user_id'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table('payments',
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('tenant_id', sa.UUID(), nullable=False),
        sa.Column('user_id', sa.UUID(), nullable=False),
        sa.Column('appointment_id', sa.UUID(), nullable=True),
        sa.Column('subscription_id', sa.UUID(), nullable=True),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('method', payment_method, nullable=False),
        sa.Column('status', payment_status, nullable=False, server_default='PENDING'),
        sa.Column('type', payment_type, nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('now()')),
        sa.CheckConstraint('amount >= 0', name='check_amount_non_negative'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['appointment_id'], ['appointments.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payments_tenant_id', 'payments', ['tenant_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_appointment_id', 'payments', ['appointment_id'])
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('idx_payments_appointment_status', 'payments', ['appointment_id', 'status'])


def downgrade() -> None:
    op.drop_table('payments')
    op.drop_index('uq_subscriptions_one_active', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('appointment_services')
    op.drop_index('uq_appointments_professional_slot', table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('plans')
    op.drop_table('services')
    op.drop_table('locations')
    op.drop_table('professionals')
    op.drop_table('users')
    op.drop_table('tenants')

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
