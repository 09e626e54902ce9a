"""Expiration sweeper: releases seats held by bookings that were never paid."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.session import run_in_transaction
from app.exceptions import BookingNotFound, Unauthorized
from app.metrics import SWEEP_RUNS
from app.models.models import Booking, BookingStatus, CancelReason
from app.services import inventory
from app.services.inventory import ReleaseOutcome, as_utc, utcnow


logger = logging.getLogger(__name__)


class HoldState:
    ACTIVE = "active"
    EXPIRED = "expired"
    SETTLED = "settled"


@dataclass
class HoldStatus:
    booking_id: int
    state: str
    status: str
    seconds_remaining: int
    expires_at: Optional[datetime]
    cancel_reason: Optional[str] = None


async def expire_booking(db: AsyncSession, booking_id: int, now: Optional[datetime] = None) -> Optional[ReleaseOutcome]:
    """Cancel one overdue pending booking. No-op for anything already terminal or not yet due.

    Must run inside a transaction; the pending and deadline checks are part of the
    same conditional update that flips the status, so a second sweep of the same
    booking cannot return its seats twice.
    """
    now = now or utcnow()
    return await inventory.release_booking(
        db,
        booking_id,
        to_status=BookingStatus.CANCELLED,
        reason=CancelReason.EXPIRED,
        from_statuses=(BookingStatus.PENDING,),
        now=now,
        extra_conditions=(Booking.expires_at <= now,),
    )


async def overdue_booking_ids(db: AsyncSession, now: datetime, limit: Optional[int] = None) -> List[int]:
    stmt = (
        select(Booking.id)
        .where(Booking.status == BookingStatus.PENDING)
        .where(Booking.expires_at <= now)
        .order_by(Booking.expires_at)
        .limit(limit or settings.SWEEP_BATCH_SIZE)
    )
    res = await db.execute(stmt)
    return list(res.scalars().all())


async def sweep_expired(db: AsyncSession, now: Optional[datetime] = None, limit: Optional[int] = None) -> int:
    """Release every overdue pending booking, one transaction per booking.

    Returns the number of bookings this run expired. Bookings that another actor
    settled or cancelled first are skipped silently.
    """
    now = now or utcnow()
    SWEEP_RUNS.inc()
    expired = 0
    for booking_id in await overdue_booking_ids(db, now, limit):
        try:
            outcome = await run_in_transaction(db, expire_booking, booking_id, now)
        except Exception:
            logger.exception("could not expire booking %s", booking_id)
            continue
        if outcome is not None:
            expired += 1
    if expired:
        logger.info("sweep expired %d bookings", expired)
    return expired


def hold_status(booking: Booking, now: datetime) -> HoldStatus:
    if booking.status == BookingStatus.COMPLETED:
        state = HoldState.SETTLED
    elif booking.status == BookingStatus.PENDING:
        state = HoldState.ACTIVE
    else:
        state = HoldState.EXPIRED
    remaining = 0
    expires_at = as_utc(booking.expires_at)
    if state == HoldState.ACTIVE and expires_at is not None:
        # cap to the hold window so a skewed clock never shows more than a full hold
        remaining = int(max(0, min((expires_at - now).total_seconds(), settings.hold_window_seconds)))
    return HoldStatus(
        booking_id=booking.id,
        state=state,
        status=booking.status,
        seconds_remaining=remaining,
        expires_at=expires_at,
        cancel_reason=booking.cancel_reason,
    )


async def time_remaining(db: AsyncSession, booking_id: int, actor, now: Optional[datetime] = None) -> HoldStatus:
    """Countdown for a booking's hold. An overdue pending booking is expired on the spot."""
    now = now or utcnow()
    booking = await db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise BookingNotFound("Booking not found")
    if booking.user_id != actor.user_id and not actor.is_admin:
        raise Unauthorized("Access denied")

    expires_at = as_utc(booking.expires_at)
    if booking.status == BookingStatus.PENDING and expires_at is not None and expires_at <= now:
        await run_in_transaction(db, expire_booking, booking_id, now)
        booking = await db.get(Booking, booking_id, populate_existing=True)
    return hold_status(booking, now)
