"""
Domain exceptions for the booking core.

Lifecycle, payment and subscription operations raise these; the FastAPI
layer maps each class to an HTTP status code (see api/main.py).

Hierarchy:
    BookingError
    ├── NotFoundError            (404)
    ├── ForbiddenError           (403)
    ├── BadRequestError          (400)
    │   ├── SchedulingConflictError  (409)
    │   └── InvalidTransitionError   (400)
    └── ExternalServiceError     (502)
"""


class BookingError(Exception):
    """Base class for all booking core errors."""

    status_code = 500
    error = "booking_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class NotFoundError(BookingError):
    """A tenant-scoped entity does not exist."""

    status_code = 404
    error = "not_found"


class ForbiddenError(BookingError):
    """Role or ownership rule denies the operation."""

    status_code = 403
    error = "forbidden"


class BadRequestError(BookingError):
    """Invalid input, missing relation or business-rule violation."""

    status_code = 400
    error = "bad_request"


class SchedulingConflictError(BadRequestError):
    """Another non-canceled appointment already holds the slot."""

    status_code = 409
    error = "scheduling_conflict"


class InvalidTransitionError(BadRequestError):
    """Appointment status transition not allowed by the lifecycle table."""

    error = "invalid_transition"


class ExternalServiceError(BookingError):
    """Payment gateway, chat platform or SMTP call failed."""

    status_code = 502
    error = "external_service_error"

    def __init__(self, message: str, service: str, **details):
        super().__init__(message, service=service, **details)
        self.service = service
