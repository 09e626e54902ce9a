from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import Actor, get_current_actor
from app.db.session import get_session
from app.exceptions import BookingNotFound, Unauthorized
from app.models.models import Booking, BookingStatus
from app.schemas.booking import (
    BookingResponse,
    CancellationResponse,
    HoldStatusResponse,
    ReservationResponse,
    ReserveRequest,
)
from app.services import cancellation, expiry, reservations
from app.services.inventory import utcnow

router = APIRouter()


def cancellation_response(result: cancellation.CancellationResult) -> CancellationResponse:
    return CancellationResponse(
        booking=BookingResponse.model_validate(result.booking),
        reason=result.reason,
        seats_released=result.seats_released,
        refund_required=result.refund_required,
    )


async def load_booking(db: AsyncSession, booking_id: int, actor: Actor) -> Booking:
    booking = await db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise BookingNotFound("Booking not found")
    if booking.user_id != actor.user_id and not actor.is_admin:
        raise Unauthorized("Unauthorized access to booking")
    return booking


@router.post("/", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    req: ReserveRequest,
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    """Hold the selected seats and open a pending booking with a payment deadline."""
    now = utcnow()
    booking = await reservations.reserve(
        db,
        trip_id=req.trip_id,
        user_id=actor.user_id,
        seat_numbers=req.seat_numbers,
        total_amount=req.total_amount,
        passenger_name=req.passenger_name,
        passenger_phone=req.passenger_phone,
        now=now,
    )
    hold = expiry.hold_status(booking, now)
    return ReservationResponse(
        **BookingResponse.model_validate(booking).model_dump(),
        seconds_remaining=hold.seconds_remaining,
    )


@router.get("/", response_model=List[BookingResponse])
async def my_bookings(
    status_filter: Optional[str] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    stmt = sa_select(Booking).where(Booking.user_id == actor.user_id)
    if status_filter in BookingStatus.ALL:
        stmt = stmt.where(Booking.status == status_filter)
    stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc())
    res = await db.execute(stmt)
    return [BookingResponse.model_validate(b) for b in res.scalars().all()]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: int, db: AsyncSession = Depends(get_session), actor: Actor = Depends(get_current_actor)):
    booking = await load_booking(db, booking_id, actor)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/time-remaining", response_model=HoldStatusResponse)
async def time_remaining(booking_id: int, db: AsyncSession = Depends(get_session), actor: Actor = Depends(get_current_actor)):
    hold = await expiry.time_remaining(db, booking_id, actor)
    return HoldStatusResponse(**asdict(hold))


@router.post("/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: int,
    request: Request,
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    ip = request.client.host if request.client else None
    result = await cancellation.cancel_booking(db, booking_id, actor, ip_address=ip)
    return cancellation_response(result)
