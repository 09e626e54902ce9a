from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import Actor, require_admin
from app.db.session import get_session, run_in_transaction
from app.exceptions import BookingNotFound, TripUnavailable, seat_sort_key
from app.models.models import Booking
from app.modules.bookings.router import cancellation_response
from app.schemas.booking import AuditEntry, BookingResponse, CancellationResponse, InventoryResponse, SweepResponse
from app.services import cancellation, expiry, inventory
from app.services.audit import audit_trail, log_audit

router = APIRouter()


# Bookings view
@router.get("/bookings", response_model=List[BookingResponse], dependencies=[Depends(require_admin)])
async def view_bookings(
    trip_id: Optional[int] = None,
    status: Optional[str] = None,
    user_id: Optional[int] = None,
    reference: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
):
    stmt = sa_select(Booking)
    if trip_id:
        stmt = stmt.where(Booking.trip_id == trip_id)
    if status:
        stmt = stmt.where(Booking.status == status)
    if user_id:
        stmt = stmt.where(Booking.user_id == user_id)
    if reference:
        stmt = stmt.where(Booking.reference == reference.strip().upper())
    stmt = stmt.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit).offset(offset)
    res = await db.execute(stmt)
    return [BookingResponse.model_validate(b) for b in res.scalars().all()]


@router.get("/bookings/{booking_id}/audit", response_model=List[AuditEntry], dependencies=[Depends(require_admin)])
async def booking_audit(booking_id: int, db: AsyncSession = Depends(get_session)):
    if await db.get(Booking, booking_id) is None:
        raise BookingNotFound("Booking not found")
    entries = await audit_trail(db, "booking", str(booking_id))
    return [AuditEntry.model_validate(e) for e in entries]


@router.post("/bookings/{booking_id}/cancel", response_model=CancellationResponse)
async def cancel_booking(
    booking_id: int,
    request: Request,
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(require_admin),
):
    ip = request.client.host if request.client else None
    result = await cancellation.cancel_booking(db, booking_id, actor, ip_address=ip)
    return cancellation_response(result)


# Ledger audit: capacity must equal unsold seats plus live seat claims
@router.get("/trips/{trip_id}/inventory", response_model=InventoryResponse, dependencies=[Depends(require_admin)])
async def trip_inventory(trip_id: int, db: AsyncSession = Depends(get_session)):
    snapshot = await inventory.ledger_snapshot(db, trip_id)
    if snapshot is None:
        raise TripUnavailable("Trip not found", status_code=404)
    return InventoryResponse(
        trip_id=snapshot.trip_id,
        capacity=snapshot.capacity,
        seats_available=snapshot.seats_available,
        seats_held=len(snapshot.live_seats),
        held_seat_numbers=sorted(snapshot.live_seats, key=seat_sort_key),
        consistent=snapshot.consistent,
    )


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(request: Request, db: AsyncSession = Depends(get_session), actor: Actor = Depends(require_admin)):
    """Expire overdue holds now instead of waiting for the scheduled sweep."""
    expired = await expiry.sweep_expired(db)
    ip = request.client.host if request.client else None
    await run_in_transaction(db, log_audit, actor.user_id, "booking.sweep", "sweep", None, {"expired": expired}, ip)
    return SweepResponse(expired=expired)
