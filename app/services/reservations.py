"""Reservation manager: turns a seat selection into a pending booking."""
import logging
import re
import secrets
import time
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.session import run_in_transaction
from app.exceptions import (
    BookingError,
    InsufficientSeats,
    InvalidSeatSelection,
    SeatConflict,
    TransientError,
    TripUnavailable,
)
from app.metrics import RESERVATIONS, RESERVE_LATENCY
from app.models.models import Booking, BookingStatus, TripStatus
from app.services import inventory


logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^LB[A-F0-9]{4}-[A-F0-9]{4}-[A-F0-9]{4}$")


def make_booking_reference() -> str:
    """Short shareable reference, e.g. ``LB3F2A-09BC-E41D``."""
    return "LB" + "-".join(secrets.token_hex(2).upper() for _ in range(3))


def is_valid_booking_reference(reference: str) -> bool:
    return bool(REFERENCE_PATTERN.match(reference or ""))


def normalize_seat_numbers(seat_numbers: Iterable) -> List[str]:
    labels = [str(seat).strip() for seat in seat_numbers or []]
    if not labels or any(not label for label in labels):
        raise InvalidSeatSelection("At least one seat must be selected")
    duplicates = sorted(label for label, count in Counter(labels).items() if count > 1)
    if duplicates:
        raise InvalidSeatSelection(f"Seats selected more than once: {', '.join(duplicates)}")
    return labels


async def _reference_taken(db: AsyncSession, reference: str) -> bool:
    res = await db.execute(select(Booking.id).where(Booking.reference == reference))
    return res.scalar_one_or_none() is not None


async def _insert_booking(db: AsyncSession, booking: Booking) -> None:
    # a reference collision only rolls back the savepoint, not the reservation
    for _ in range(settings.BOOKING_REFERENCE_ATTEMPTS):
        booking.reference = make_booking_reference()
        try:
            async with db.begin_nested():
                db.add(booking)
                await db.flush()
            return
        except IntegrityError:
            # other constraint failures are not retried
            if not await _reference_taken(db, booking.reference):
                raise
            logger.warning("booking reference collision on %s, regenerating", booking.reference)
    raise TransientError("Could not allocate a booking reference")


async def _reserve(
    db: AsyncSession,
    trip_id: int,
    user_id: int,
    seats: List[str],
    total_amount: Optional[Decimal],
    passenger_name: Optional[str],
    passenger_phone: Optional[str],
    now: datetime,
) -> Booking:
    trip = await inventory.lock_trip(db, trip_id)
    if trip is None:
        raise TripUnavailable("Trip not found", status_code=404)
    if trip.status != TripStatus.SCHEDULED or trip.bus_id is None:
        raise TripUnavailable("Trip is not open for booking")

    valid = await inventory.valid_seat_labels(db, trip)
    unknown = [seat for seat in seats if seat not in valid]
    if unknown:
        raise InvalidSeatSelection(f"Seats {', '.join(unknown)} do not exist on this bus")

    if len(seats) > trip.seats_available:
        raise InsufficientSeats(len(seats), trip.seats_available)

    taken = await inventory.claimed_seats(db, trip_id, seats)
    if taken:
        raise SeatConflict(taken)

    if total_amount is None:
        total_amount = Decimal(trip.price or 0) * len(seats)

    booking = Booking(
        user_id=user_id,
        trip_id=trip_id,
        seat_numbers=list(seats),
        passenger_name=passenger_name,
        passenger_phone=passenger_phone,
        total_amount=total_amount,
        status=BookingStatus.PENDING,
        created_at=now,
        expires_at=now + timedelta(minutes=settings.BOOKING_HOLD_MINUTES),
    )
    await _insert_booking(db, booking)

    try:
        await inventory.claim_seats(db, booking, seats)
    except IntegrityError as exc:
        # another transaction claimed one of the seats after our check
        raise SeatConflict(seats) from exc

    if not await inventory.take_seats(db, trip_id, len(seats)):
        raise InsufficientSeats(len(seats), trip.seats_available)
    return booking


async def reserve(
    db: AsyncSession,
    trip_id: int,
    user_id: int,
    seat_numbers: Iterable,
    total_amount: Optional[Decimal] = None,
    passenger_name: Optional[str] = None,
    passenger_phone: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Atomically hold ``seat_numbers`` on a trip and create a pending booking.

    Either the booking, its seat claims and the ledger decrement are all committed,
    or nothing is. Raises InsufficientSeats, SeatConflict, InvalidSeatSelection or
    TripUnavailable for client-correctable problems and TransientError when the
    database keeps failing.
    """
    seats = normalize_seat_numbers(seat_numbers)
    now = now or inventory.utcnow()
    started = time.perf_counter()
    try:
        booking = await run_in_transaction(
            db, _reserve, trip_id, user_id, seats, total_amount, passenger_name, passenger_phone, now
        )
    except BookingError as exc:
        RESERVATIONS.labels(result=exc.code).inc()
        logger.info("reservation rejected: %s", exc.message, extra={"trip_id": trip_id, "user_id": user_id})
        raise
    RESERVE_LATENCY.observe(time.perf_counter() - started)
    RESERVATIONS.labels(result="success").inc()
    logger.info(
        "booking reserved",
        extra={"booking_id": booking.id, "reference": booking.reference, "trip_id": trip_id, "seats": len(seats)},
    )
    return booking
