"""Payment session coordinator.

Drives a pending booking to ``completed`` or ``failed`` from provider outcomes
that arrive either by polling or by webhook. Provider calls never run inside a
database transaction; every state change afterwards is a conditional update on
``status = 'pending'`` so the sweeper and the coordinator cannot both win.
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.session import run_in_transaction
from app.exceptions import (
    BookingExpired,
    BookingNotFound,
    InvalidTransition,
    PaymentNotFound,
    ProviderUnavailable,
    Unauthorized,
)
from app.metrics import PAYMENT_OUTCOMES, PROVIDER_ERRORS
from app.models.models import Booking, BookingStatus, CancelReason, Payment, PaymentStatus
from app.services import inventory
from app.services.expiry import expire_booking
from app.services.inventory import as_utc, utcnow
from app.services.payment_gateway import BaseAdapter, ProviderError, ProviderOutcome, get_adapter


logger = logging.getLogger(__name__)


def _terminal_error(booking: Booking) -> InvalidTransition:
    if booking.cancel_reason == CancelReason.EXPIRED:
        return BookingExpired()
    return InvalidTransition(f"Booking is {booking.status}")


def _is_overdue(booking: Booking, now: datetime) -> bool:
    expires_at = as_utc(booking.expires_at)
    return expires_at is not None and expires_at <= now


async def _release_read_transaction(db: AsyncSession) -> None:
    # never keep a transaction open across a provider round trip
    if db.in_transaction():
        await db.commit()


async def _call_provider(adapter: BaseAdapter, operation: str, *args):
    attempts = max(1, settings.PROVIDER_RETRY_ATTEMPTS)
    last_error = None
    for attempt in range(attempts):
        try:
            return await getattr(adapter, operation)(*args)
        except ProviderError as exc:
            last_error = exc
            PROVIDER_ERRORS.labels(provider=adapter.provider_name, operation=operation).inc()
            logger.warning(
                "provider %s %s failed (attempt %d/%d): %s",
                adapter.provider_name, operation, attempt + 1, attempts, exc,
            )
            if attempt + 1 < attempts:
                await asyncio.sleep(settings.PROVIDER_RETRY_BACKOFF_SECONDS * (2 ** attempt))
    raise ProviderUnavailable(f"Payment provider {adapter.provider_name} is unavailable, please retry") from last_error


async def _load_owned_booking(db: AsyncSession, booking_id: int, actor) -> Booking:
    booking = await db.get(Booking, booking_id, populate_existing=True)
    if booking is None:
        raise BookingNotFound("Booking not found")
    if booking.user_id != actor.user_id and not actor.is_admin:
        raise Unauthorized("Unauthorized access to booking")
    return booking


async def _record_payment(
    db: AsyncSession,
    booking_id: int,
    provider: str,
    charge: Dict,
    phone_number: str,
    amount: Decimal,
    now: datetime,
) -> Payment:
    booking = await db.get(Booking, booking_id)
    await inventory.lock_trip(db, booking.trip_id)
    res = await db.execute(select(Booking.status).where(Booking.id == booking_id))
    status = res.scalar_one()

    payment = Payment(
        booking_id=booking_id,
        amount=amount,
        currency=settings.PAYMENT_CURRENCY,
        provider=provider,
        provider_ref=charge["provider_ref"],
        phone_number=phone_number,
        status=PaymentStatus.PENDING,
        detail=charge.get("detail"),
        initiated_at=now,
    )
    if status != BookingStatus.PENDING:
        # the hold ended while the provider was being called; keep the attempt for reconciliation
        payment.status = PaymentStatus.FAILED
        payment.detail = {"reason": f"booking {status} before payment was recorded", "provider": charge.get("detail")}
        payment.settled_at = now
    db.add(payment)
    await db.flush()
    return payment


async def initiate_payment(
    db: AsyncSession,
    booking_id: int,
    actor,
    provider: str,
    phone_number: str,
    now: Optional[datetime] = None,
) -> Payment:
    """Start a mobile-money charge for a pending booking and record the attempt.

    Raises BookingExpired if the hold has lapsed (the seats are released on the
    spot), InvalidTransition for any other non-pending booking and
    ProviderUnavailable when the provider keeps failing; in that case nothing is
    recorded and the booking stays pending.
    """
    now = now or utcnow()
    adapter = await get_adapter(provider)
    booking = await _load_owned_booking(db, booking_id, actor)
    if booking.status != BookingStatus.PENDING:
        raise _terminal_error(booking)
    if _is_overdue(booking, now):
        await run_in_transaction(db, expire_booking, booking_id, now)
        raise BookingExpired()

    amount = booking.total_amount
    reference = booking.reference
    await _release_read_transaction(db)
    charge = await _call_provider(adapter, "charge", phone_number, float(amount), settings.PAYMENT_CURRENCY, reference)

    payment = await run_in_transaction(
        db, _record_payment, booking_id, adapter.provider_name, charge, phone_number, amount, now
    )
    if payment.status == PaymentStatus.FAILED:
        booking = await db.get(Booking, booking_id, populate_existing=True)
        raise _terminal_error(booking)
    logger.info(
        "payment initiated",
        extra={"payment_id": payment.id, "booking_id": booking_id, "provider": adapter.provider_name},
    )
    return payment


async def apply_provider_outcome(
    db: AsyncSession,
    payment_id: int,
    outcome: str,
    detail: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> Payment:
    """Settle a pending payment and its booking. Must run inside a transaction.

    Re-applying an outcome to a payment that is already terminal is a no-op, so
    duplicate webhooks and polls racing each other are harmless.
    """
    now = now or utcnow()
    payment = await db.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFound("Payment not found")
    booking = await db.get(Booking, payment.booking_id)
    await inventory.lock_trip(db, booking.trip_id)
    await db.refresh(payment)
    if payment.status in PaymentStatus.TERMINAL or outcome == ProviderOutcome.PENDING:
        return payment

    detail = dict(detail or {})
    if outcome == ProviderOutcome.COMPLETED:
        res = await db.execute(
            update(Booking)
            .where(Booking.id == booking.id)
            .where(Booking.status == BookingStatus.PENDING)
            .values(status=BookingStatus.COMPLETED, paid_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            # the hold was released first; the money has to go back
            detail["refund_required"] = True
            logger.warning(
                "payment completed for booking that is no longer pending",
                extra={"payment_id": payment_id, "booking_id": booking.id},
            )
        new_status = PaymentStatus.COMPLETED
    else:
        await inventory.release_booking(
            db,
            booking.id,
            to_status=BookingStatus.FAILED,
            reason=CancelReason.PAYMENT_FAILED,
            from_statuses=(BookingStatus.PENDING,),
            now=now,
        )
        new_status = PaymentStatus.FAILED

    await db.execute(
        update(Payment)
        .where(Payment.id == payment_id)
        .where(Payment.status == PaymentStatus.PENDING)
        .values(status=new_status, detail=detail, settled_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    await db.refresh(booking)
    PAYMENT_OUTCOMES.labels(provider=payment.provider, outcome=new_status).inc()
    logger.info(
        "payment settled",
        extra={"payment_id": payment_id, "booking_id": booking.id, "outcome": new_status, "booking_status": booking.status},
    )
    return payment


async def poll_status(db: AsyncSession, payment_id: int, actor, now: Optional[datetime] = None) -> Payment:
    """Ask the provider about a pending payment and settle it if it finished.

    Returns the payment, pending or terminal. A booking whose hold lapsed is
    expired here rather than waiting for the sweeper, and BookingExpired raised.
    """
    now = now or utcnow()
    payment = await db.get(Payment, payment_id, populate_existing=True)
    if payment is None:
        raise PaymentNotFound("Payment not found")
    booking = await db.get(Booking, payment.booking_id, populate_existing=True)
    if booking is None or (booking.user_id != actor.user_id and not actor.is_admin):
        raise Unauthorized("Unauthorized access to payment")

    if payment.status in PaymentStatus.TERMINAL:
        return payment
    if booking.status != BookingStatus.PENDING:
        raise _terminal_error(booking)

    adapter = await get_adapter(payment.provider)
    provider_ref = payment.provider_ref
    await _release_read_transaction(db)
    result = await _call_provider(adapter, "query_status", provider_ref)

    if result["status"] != ProviderOutcome.PENDING:
        payment = await run_in_transaction(
            db, apply_provider_outcome, payment_id, result["status"], result.get("detail"), now
        )
        booking = await db.get(Booking, payment.booking_id, populate_existing=True)
        if payment.status == PaymentStatus.COMPLETED and booking.status != BookingStatus.COMPLETED:
            raise _terminal_error(booking)
        return payment

    if _is_overdue(booking, now):
        await run_in_transaction(db, expire_booking, booking.id, now)
        raise BookingExpired()
    return payment


async def payment_for_provider_ref(db: AsyncSession, provider: str, provider_ref: str) -> Optional[Payment]:
    res = await db.execute(
        select(Payment).where(Payment.provider == provider).where(Payment.provider_ref == provider_ref)
    )
    return res.scalars().first()
