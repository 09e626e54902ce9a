import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.deps import Actor, get_current_actor
from app.db.session import get_session, run_in_transaction
from app.schemas.payment import PaymentInitiateRequest, PaymentResponse, WebhookAck
from app.services import payments
from app.services.payment_gateway import forget_event, get_adapter, mark_event_processed, normalize_outcome

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/initiate", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    req: PaymentInitiateRequest,
    db: AsyncSession = Depends(get_session),
    actor: Actor = Depends(get_current_actor),
):
    payment = await payments.initiate_payment(db, req.booking_id, actor, req.provider, req.phone_number)
    return PaymentResponse.model_validate(payment)


@router.get("/{payment_id}/status", response_model=PaymentResponse)
async def payment_status(payment_id: int, db: AsyncSession = Depends(get_session), actor: Actor = Depends(get_current_actor)):
    """Poll the provider once. Clients repeat this with backoff until a terminal status."""
    payment = await payments.poll_status(db, payment_id, actor)
    return PaymentResponse.model_validate(payment)


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def payment_webhook(provider: str, request: Request, db: AsyncSession = Depends(get_session)):
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    adapter = await get_adapter(provider)

    # verify signature
    valid = await adapter.verify_signature(headers, body)
    if not valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed JSON body")

    event_id, provider_ref, raw_status = adapter.parse_event(payload)
    if not event_id:
        # cannot deduplicate without id
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id for idempotency")
    if not provider_ref:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing transaction reference")

    added = await mark_event_processed(adapter.provider_name, str(event_id))
    if not added:
        return WebhookAck(received=True, duplicate=True)

    payment = await payments.payment_for_provider_ref(db, adapter.provider_name, str(provider_ref))
    if payment is None:
        logger.warning("webhook for unknown payment", extra={"provider": adapter.provider_name, "provider_ref": provider_ref})
        return WebhookAck(received=True)

    try:
        payment = await run_in_transaction(
            db, payments.apply_provider_outcome, payment.id, normalize_outcome(raw_status), payload
        )
    except Exception:
        # let the provider redeliver
        await forget_event(adapter.provider_name, str(event_id))
        raise
    return WebhookAck(received=True, status=payment.status)
