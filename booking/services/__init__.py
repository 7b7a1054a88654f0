"""
Booking services module.

Provides the business logic of the booking core.

Services:
- availability_service: Open slot computation (pure arithmetic + day read)
- authorization: Role/operation policy table
- appointment_service: Appointment lifecycle operations
- payment_service: Direct payments, hosted checkout and webhook reconciliation
- subscription_service: Plan subscriptions and credit activation
- notification_service: Notification outbox, port and dispatcher
- chat_command_service: ManyChat action adapter
"""

from booking.services.appointment_service import (
    AppointmentPage,
    create_appointment,
    delete_appointments,
    find_all_appointments,
    find_one_appointment,
    get_available_slots,
    update_appointment,
    update_appointment_status,
)
from booking.services.chat_command_service import handle_chat_command
from booking.services.payment_service import (
    create_direct_payment,
    create_preference,
    handle_webhook,
    list_payments,
    update_payment_status,
)
from booking.services.subscription_service import create_subscription, update_subscription

__all__ = [
    # Appointment lifecycle
    "AppointmentPage",
    "create_appointment",
    "delete_appointments",
    "find_all_appointments",
    "find_one_appointment",
    "get_available_slots",
    "update_appointment",
    "update_appointment_status",
    # Payments
    "create_direct_payment",
    "create_preference",
    "handle_webhook",
    "list_payments",
    "update_payment_status",
    # Subscriptions
    "create_subscription",
    "update_subscription",
    # Chat adapter
    "handle_chat_command",
]
