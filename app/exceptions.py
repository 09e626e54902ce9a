"""Booking-core error taxonomy and its HTTP rendering."""
import logging
from typing import Dict, Iterable, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


logger = logging.getLogger(__name__)


class BookingError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "booking_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def extra(self) -> Dict:
        return {}


class InsufficientSeats(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "insufficient_seats"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(f"Not enough available seats: requested {requested}, available {available}")

    def extra(self) -> Dict:
        return {"requested": self.requested, "available": self.available}


class SeatConflict(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "seat_conflict"

    def __init__(self, seats: Iterable[str]):
        self.seats = sorted(seats, key=seat_sort_key)
        super().__init__(f"Seats {', '.join(self.seats)} are already booked")

    def extra(self) -> Dict:
        return {"seats": self.seats}


class InvalidSeatSelection(BookingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_seat_selection"


class TripUnavailable(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "trip_unavailable"


class BookingNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "booking_not_found"


class PaymentNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "payment_not_found"


class Unauthorized(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "unauthorized"


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class BookingExpired(InvalidTransition):
    status_code = status.HTTP_410_GONE
    code = "booking_expired"

    def __init__(self, message: str = "Booking expired, seats released"):
        super().__init__(message)


class ProviderUnavailable(BookingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "provider_unavailable"


class TransientError(BookingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "transient_error"


def seat_sort_key(label: str):
    return (0, int(label), label) if label.isdecimal() else (1, 0, label)


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("booking error %s: %s", exc.code, exc.message)
    body = {"detail": exc.message, "code": exc.code}
    body.update(exc.extra())
    return JSONResponse(status_code=exc.status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "code": "internal_error"},
    )


def register_exception_handlers(app) -> None:
    app.add_exception_handler(BookingError, booking_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
