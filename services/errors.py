"""
Domain errors for fare metering, the ledger and seat reservations.

Every error carries an HTTP status, a stable machine-readable `code` that
offline devices branch on (retry, discard, alert the operator), and a human
message. Routes render them as {"error": message, "code": code, **extra}.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FareError(Exception):
    status_code = 400
    code = "INVALID_REQUEST"
    message = "Invalid request"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"error": self.message, "code": self.code}
        out.update(self.extra)
        return out


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class InvalidRequest(FareError):
    status_code = 400
    code = "INVALID_REQUEST"
    message = "Invalid request"


class InvalidLocation(FareError):
    status_code = 400
    code = "INVALID_LOCATION"
    message = "Location must carry numeric lat/lng within range"


class BatchTooLarge(FareError):
    status_code = 400
    code = "BATCH_TOO_LARGE"
    message = "Batch size exceeds the maximum"


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------
class CardNotFound(FareError):
    status_code = 404
    code = "CARD_NOT_FOUND"
    message = "Card not registered"


class BusNotFound(FareError):
    status_code = 404
    code = "BUS_NOT_FOUND"
    message = "Bus not found"


class NoActiveJourney(FareError):
    status_code = 404
    code = "NO_ACTIVE_JOURNEY"
    message = "No active journey found. Please tap in first."


class BookingNotFound(FareError):
    status_code = 404
    code = "BOOKING_NOT_FOUND"
    message = "Booking not found"


class StopNotFound(FareError):
    status_code = 404
    code = "STOP_NOT_FOUND"
    message = "Stop not found"


# ---------------------------------------------------------------------------
# Conflicts / preconditions
# ---------------------------------------------------------------------------
class AlreadyActive(FareError):
    status_code = 400
    code = "ALREADY_TAPPED_IN"
    message = "Card already tapped in. Please tap out first."


class SeatTaken(FareError):
    status_code = 409
    code = "SEAT_TAKEN"
    message = "Seat is already taken"


class BookingClosed(FareError):
    status_code = 409
    code = "BOOKING_CLOSED"
    message = "Booking is no longer active"


class InsufficientFunds(FareError):
    status_code = 402
    code = "INSUFFICIENT_BALANCE"
    message = "Insufficient balance. Please top up your card."


class Forbidden(FareError):
    status_code = 403
    code = "FORBIDDEN"
    message = "Insufficient permissions"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
class Internal(FareError):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"


class UniqueViolation(Exception):
    """Raised by the storage ports when a uniqueness guard rejects a write."""

    def __init__(self, constraint: str):
        self.constraint = constraint
        super().__init__(constraint)
