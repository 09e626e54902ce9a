from prometheus_client import Counter, Gauge, Histogram
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.models import Booking, BookingStatus

# Reservation metrics
RESERVATIONS = Counter("linkbus_reservations_total", "Reservation attempts by outcome", ["result"])
RESERVE_LATENCY = Histogram("linkbus_reserve_latency_seconds", "Latency of the check-and-reserve transaction")

# Seats returned to the ledger, by reason (expired, payment_failed, cancelled_by_user, ...)
SEAT_RELEASES = Counter("linkbus_seat_releases_total", "Seats released back to trip inventory", ["reason"])

# Payment metrics
PAYMENT_OUTCOMES = Counter("linkbus_payment_outcomes_total", "Terminal payment outcomes", ["provider", "outcome"])
PROVIDER_ERRORS = Counter("linkbus_provider_errors_total", "Provider communication failures", ["provider", "operation"])

# Sweeper metrics
SWEEP_RUNS = Counter("linkbus_sweep_runs_total", "Expiration sweeps executed")
PENDING_HOLDS = Gauge("linkbus_pending_holds", "Bookings currently holding seats while awaiting payment")


async def update_pending_holds(db: AsyncSession) -> int:
    """Refresh the pending-holds gauge from the bookings table."""
    res = await db.execute(select(func.count(Booking.id)).where(Booking.status == BookingStatus.PENDING))
    count = res.scalar_one()
    PENDING_HOLDS.set(count)
    return count
