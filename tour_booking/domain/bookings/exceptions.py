"""Booking domain errors

Every error carries the HTTP status it maps to and optional structured
details that are merged into the JSON error body.
"""

from typing import Any, Optional


class BookingError(Exception):
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class BookingValidationError(BookingError):
    """Malformed or incomplete input, rejected before any side effect"""

    status_code = 400


class BookingNotFoundError(BookingError):
    status_code = 404

    def __init__(self, message: str = "Booking not found", details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)


class InvalidBookingStateError(BookingError):
    """A transition guard rejected the booking's current status"""

    status_code = 400

    def __init__(self, message: str, current_status: str, expected_status: list[str]):
        super().__init__(
            message,
            {"currentStatus": current_status, "expectedStatus": expected_status},
        )
        self.current_status = current_status
        self.expected_status = expected_status


class InvalidLinkError(BookingError):
    """Feedback or payment-success token failed verification"""

    status_code = 400

    def __init__(self, message: str = "Invalid or expired link"):
        super().__init__(message)


class PaymentLinkError(BookingError):
    """A payment link cannot be issued for the booking in its current shape"""

    status_code = 400


class AlreadyPaidError(BookingError):
    status_code = 400

    def __init__(self, message: str = "Booking is already fully paid"):
        super().__init__(message)


class ConcurrentModificationError(BookingError):
    """The stored booking changed between read and write"""

    status_code = 409

    def __init__(self, booking_id: str, expected_version: int):
        super().__init__(
            "Booking was modified by another request, please retry",
            {"bookingId": booking_id, "expectedVersion": expected_version},
        )
        self.booking_id = booking_id
        self.expected_version = expected_version


class DuplicateMarkerError(Exception):
    """An idempotency marker for this booking already exists"""

    def __init__(self, booking_id: str, key: str):
        super().__init__(f"Marker {key} already recorded for booking {booking_id}")
        self.booking_id = booking_id
        self.key = key


class NotificationError(BookingError):
    """A critical-path email could not be delivered"""

    status_code = 500


class InvariantViolationError(BookingError):
    """A transition produced a booking that breaks an aggregate invariant"""

    status_code = 500


class PaymentGatewayError(BookingError):
    """The payment provider rejected or failed a request"""

    status_code = 502
