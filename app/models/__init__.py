from .models import *

__all__ = [
    "Base",
    "BookingStatus",
    "CancelReason",
    "PaymentStatus",
    "TripStatus",
    "User",
    "Route",
    "Bus",
    "Trip",
    "SeatMap",
    "Seat",
    "Booking",
    "BookingSeat",
    "Payment",
    "AuditLog",
]
