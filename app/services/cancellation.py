"""Explicit cancellation of a live booking by its owner or an administrator."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import run_in_transaction
from app.exceptions import BookingNotFound, InvalidTransition, Unauthorized
from app.models.models import Booking, BookingStatus, CancelReason
from app.services import inventory
from app.services.audit import log_audit
from app.services.inventory import utcnow


logger = logging.getLogger(__name__)


@dataclass
class CancellationResult:
    booking: Booking
    reason: str
    seats_released: int
    refund_required: bool


async def _cancel(db: AsyncSession, booking_id: int, actor, now: datetime, ip_address: Optional[str]) -> CancellationResult:
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise BookingNotFound("Booking not found")
    if booking.user_id != actor.user_id and not actor.is_admin:
        raise Unauthorized("Unauthorized access to booking")

    reason = CancelReason.BY_USER if booking.user_id == actor.user_id else CancelReason.BY_ADMIN
    outcome = await inventory.release_booking(
        db,
        booking_id,
        to_status=BookingStatus.CANCELLED,
        reason=reason,
        from_statuses=BookingStatus.LIVE,
        now=now,
    )
    await db.refresh(booking)
    if outcome is None:
        raise InvalidTransition(f"Booking is {booking.status} and cannot be cancelled")

    refund_required = outcome.previous_status == BookingStatus.COMPLETED
    await log_audit(
        db,
        actor_id=actor.user_id,
        action="booking.cancel",
        object_type="booking",
        object_id=str(booking_id),
        detail={
            "reason": reason,
            "previous_status": outcome.previous_status,
            "seats_released": outcome.seats_released,
            "refund_required": refund_required,
        },
        ip_address=ip_address,
    )
    return CancellationResult(
        booking=booking,
        reason=reason,
        seats_released=outcome.seats_released,
        refund_required=refund_required,
    )


async def cancel_booking(
    db: AsyncSession,
    booking_id: int,
    actor,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
) -> CancellationResult:
    """Cancel a pending or paid booking and return its seats to the trip.

    A paid booking is flagged ``refund_required``; issuing the refund is left to
    the payments team. Bookings that are already failed or cancelled raise
    InvalidTransition and the ledger is not touched.
    """
    now = now or utcnow()
    result = await run_in_transaction(db, _cancel, booking_id, actor, now, ip_address)
    logger.info(
        "booking cancelled",
        extra={
            "booking_id": booking_id,
            "reason": result.reason,
            "seats": result.seats_released,
            "refund_required": result.refund_required,
        },
    )
    return result
