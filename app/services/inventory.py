"""Seat inventory ledger.

``Trip.seats_available`` is the authoritative count of unsold seats and
``booking_seats`` holds one row per live seat claim. Every mutation of either
goes through this module, inside the caller's transaction, after the trip row
has been locked with :func:`lock_trip`. Lock order is always trip, then
booking, then seat rows.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.metrics import SEAT_RELEASES
from app.models.models import Booking, BookingSeat, BookingStatus, Bus, Seat, SeatMap, Trip


logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class ReleaseOutcome:
    booking_id: int
    trip_id: int
    previous_status: str
    status: str
    reason: str
    seats_released: int


@dataclass
class LedgerSnapshot:
    trip_id: int
    capacity: int
    seats_available: int
    live_seats: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.seats_available + len(self.live_seats) == self.capacity and self.seats_available >= 0


async def lock_trip(db: AsyncSession, trip_id: int) -> Optional[Trip]:
    """Load the trip row with an exclusive row lock held until the transaction ends."""
    stmt = select(Trip).where(Trip.id == trip_id).with_for_update().execution_options(populate_existing=True)
    res = await db.execute(stmt)
    return res.scalars().first()


async def trip_capacity(db: AsyncSession, trip: Trip) -> int:
    if trip.bus_id is None:
        return 0
    res = await db.execute(select(Bus.capacity).where(Bus.id == trip.bus_id))
    return res.scalar_one_or_none() or 0


async def valid_seat_labels(db: AsyncSession, trip: Trip) -> Set[str]:
    """Seat labels allowed on the trip's bus: its seat map if one exists, else 1..capacity."""
    if trip.bus_id is None:
        return set()
    stmt = (
        select(Seat.seat_number)
        .join(SeatMap, Seat.seatmap_id == SeatMap.id)
        .where(SeatMap.bus_id == trip.bus_id)
    )
    res = await db.execute(stmt)
    labels = set(res.scalars().all())
    if labels:
        return labels
    capacity = await trip_capacity(db, trip)
    return {str(n) for n in range(1, capacity + 1)}


async def claimed_seats(db: AsyncSession, trip_id: int, seat_numbers: Optional[Iterable[str]] = None) -> List[str]:
    """Seat labels currently held by live bookings on the trip."""
    stmt = select(BookingSeat.seat_number).where(BookingSeat.trip_id == trip_id)
    if seat_numbers is not None:
        stmt = stmt.where(BookingSeat.seat_number.in_(list(seat_numbers)))
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def take_seats(db: AsyncSession, trip_id: int, count: int) -> bool:
    """Guarded decrement of the ledger. False when fewer than ``count`` seats remain."""
    stmt = (
        update(Trip)
        .where(Trip.id == trip_id)
        .where(Trip.seats_available >= count)
        .values(seats_available=Trip.seats_available - count)
        .execution_options(synchronize_session=False)
    )
    res = await db.execute(stmt)
    return res.rowcount == 1


async def claim_seats(db: AsyncSession, booking: Booking, seat_numbers: Sequence[str]) -> None:
    db.add_all(
        [BookingSeat(booking_id=booking.id, trip_id=booking.trip_id, seat_number=seat) for seat in seat_numbers]
    )
    await db.flush()


async def release_booking(
    db: AsyncSession,
    booking_id: int,
    to_status: str,
    reason: str,
    from_statuses: Sequence[str],
    now: Optional[datetime] = None,
    extra_conditions: Sequence = (),
) -> Optional[ReleaseOutcome]:
    """Flip a booking to a terminal status and return its seats to the ledger.

    The status change is a conditional update (``status IN from_statuses``), so of
    several actors racing to release the same booking exactly one gets an outcome;
    the rest get ``None`` and must treat it as a no-op. Runs inside the caller's
    transaction.
    """
    now = now or utcnow()
    res = await db.execute(select(Booking.trip_id).where(Booking.id == booking_id))
    trip_id = res.scalar_one_or_none()
    if trip_id is None:
        return None

    await lock_trip(db, trip_id)
    # every status writer holds the trip lock, so this read is stable
    res = await db.execute(select(Booking.status).where(Booking.id == booking_id))
    previous_status = res.scalar_one()
    if previous_status not in from_statuses:
        return None

    values = {"status": to_status, "cancel_reason": reason}
    if to_status == BookingStatus.CANCELLED:
        values["cancelled_at"] = now
    stmt = (
        update(Booking)
        .where(Booking.id == booking_id)
        .where(Booking.status.in_(list(from_statuses)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    for condition in extra_conditions:
        stmt = stmt.where(condition)
    flipped = await db.execute(stmt)
    if flipped.rowcount != 1:
        return None

    res = await db.execute(select(func.count(BookingSeat.id)).where(BookingSeat.booking_id == booking_id))
    freed = res.scalar_one()
    await db.execute(delete(BookingSeat).where(BookingSeat.booking_id == booking_id))
    if freed:
        await db.execute(
            update(Trip)
            .where(Trip.id == trip_id)
            .values(seats_available=Trip.seats_available + freed)
            .execution_options(synchronize_session=False)
        )
    SEAT_RELEASES.labels(reason=reason).inc(freed)
    logger.info(
        "released booking",
        extra={"booking_id": booking_id, "trip_id": trip_id, "reason": reason, "seats": freed},
    )
    return ReleaseOutcome(
        booking_id=booking_id,
        trip_id=trip_id,
        previous_status=previous_status,
        status=to_status,
        reason=reason,
        seats_released=freed,
    )


async def ledger_snapshot(db: AsyncSession, trip_id: int) -> Optional[LedgerSnapshot]:
    res = await db.execute(select(Trip).where(Trip.id == trip_id).execution_options(populate_existing=True))
    trip = res.scalars().first()
    if trip is None:
        return None
    capacity = await trip_capacity(db, trip)
    live = await claimed_seats(db, trip_id)
    return LedgerSnapshot(trip_id=trip_id, capacity=capacity, seats_available=trip.seats_available, live_seats=live)
