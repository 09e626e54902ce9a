import hmac
import hashlib
import json
import random
import time
from typing import Dict, Optional, Tuple
from uuid import uuid4

import httpx

from app.config import settings
from app.exceptions import BookingError
from app.redis_client import redis_client


class PaymentError(BookingError):
    """The request can never succeed as sent (unknown provider, rejected payer)."""

    code = "payment_error"


class ProviderError(Exception):
    """The provider could not be reached or answered unexpectedly; safe to retry."""


class ProviderOutcome:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


_COMPLETED_STATUSES = {"successful", "success", "paid", "completed", "ts"}
_FAILED_STATUSES = {"failed", "failed_attempt", "error", "declined", "cancelled", "rejected", "expired", "timeout", "tf"}


def normalize_outcome(raw_status: Optional[str]) -> str:
    status = (raw_status or "").strip().lower()
    if status in _COMPLETED_STATUSES:
        return ProviderOutcome.COMPLETED
    if status in _FAILED_STATUSES:
        return ProviderOutcome.FAILED
    return ProviderOutcome.PENDING


class BaseAdapter:
    provider_name: str = "base"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    def _client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, timeout=settings.PROVIDER_TIMEOUT_SECONDS, transport=self.transport)

    async def charge(self, phone_number: str, amount: float, currency: str, reference: str) -> Dict:
        """Start a mobile-money collection. Returns ``{"provider_ref": ..., "detail": {...}}``."""
        raise NotImplementedError()

    async def query_status(self, provider_ref: str) -> Dict:
        """Current state of a collection. Returns ``{"status": ProviderOutcome, "detail": {...}}``."""
        raise NotImplementedError()

    async def verify_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        # default: HMAC-SHA256 using provider secret configured in settings
        secret = self.get_secret()
        if not secret:
            return False
        sig_header = headers.get("x-signature") or ""
        computed = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, sig_header)

    def parse_event(self, payload: Dict) -> Tuple[Optional[str], Optional[str], Optional[str]]:
        """Extract ``(event_id, provider_ref, raw_status)`` from a webhook body."""
        data = payload.get("data") or payload
        if not isinstance(data, dict):
            data = {}
        event_id = payload.get("id") or payload.get("event_id") or data.get("id")
        provider_ref = data.get("transaction_id") or data.get("reference") or data.get("provider_ref")
        raw_status = data.get("status") or data.get("transaction_status")
        return event_id, provider_ref, raw_status

    def get_secret(self) -> Optional[str]:
        return ""


class MTNAdapter(BaseAdapter):
    """MTN MoMo collections (request-to-pay)."""

    provider_name = "mtn"

    def get_secret(self) -> Optional[str]:
        return settings.MTN_SECRET

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "X-Target-Environment": settings.MTN_TARGET_ENVIRONMENT,
            "Ocp-Apim-Subscription-Key": settings.MTN_SUBSCRIPTION_KEY,
        }

    async def _token(self, client: httpx.AsyncClient) -> str:
        resp = await client.post(
            "/collection/token/",
            auth=(settings.MTN_API_USER, settings.MTN_API_KEY),
            headers={"Ocp-Apim-Subscription-Key": settings.MTN_SUBSCRIPTION_KEY},
        )
        if resp.status_code != 200:
            raise ProviderError(f"mtn token request returned {resp.status_code}")
        return resp.json()["access_token"]

    async def charge(self, phone_number: str, amount: float, currency: str, reference: str) -> Dict:
        body = {
            "amount": str(amount),
            "currency": currency,
            "externalId": reference,
            "payer": {"partyIdType": "MSISDN", "partyId": phone_number},
            "payerMessage": "Bus ticket",
            "payeeNote": reference,
        }
        try:
            async with self._client(settings.MTN_API_URL) as client:
                token = await self._token(client)
                # MoMo identifies the collection by the caller-chosen X-Reference-Id
                provider_ref = str(uuid4())
                headers = self._headers(token)
                headers["X-Reference-Id"] = provider_ref
                resp = await client.post("/collection/v1_0/requesttopay", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"mtn unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise ProviderError(f"mtn request-to-pay returned {resp.status_code}")
        if resp.status_code != 202:
            raise PaymentError(f"MTN rejected the payment request ({resp.status_code})")
        return {"provider_ref": provider_ref, "detail": {"externalId": reference}}

    async def query_status(self, provider_ref: str) -> Dict:
        try:
            async with self._client(settings.MTN_API_URL) as client:
                token = await self._token(client)
                resp = await client.get(f"/collection/v1_0/requesttopay/{provider_ref}", headers=self._headers(token))
        except httpx.HTTPError as exc:
            raise ProviderError(f"mtn unreachable: {exc}") from exc
        if resp.status_code != 200:
            raise ProviderError(f"mtn status query returned {resp.status_code}")
        data = resp.json()
        return {"status": normalize_outcome(data.get("status")), "detail": data}


class AirtelAdapter(BaseAdapter):
    """Airtel Money collections."""

    provider_name = "airtel"

    def get_secret(self) -> Optional[str]:
        return settings.AIRTEL_SECRET

    async def _headers(self, client: httpx.AsyncClient) -> Dict[str, str]:
        resp = await client.post(
            "/auth/oauth2/token",
            json={
                "client_id": settings.AIRTEL_CLIENT_ID,
                "client_secret": settings.AIRTEL_CLIENT_SECRET,
                "grant_type": "client_credentials",
            },
        )
        if resp.status_code != 200:
            raise ProviderError(f"airtel token request returned {resp.status_code}")
        return {
            "Authorization": f"Bearer {resp.json()['access_token']}",
            "X-Country": settings.AIRTEL_COUNTRY,
            "X-Currency": settings.PAYMENT_CURRENCY,
        }

    async def charge(self, phone_number: str, amount: float, currency: str, reference: str) -> Dict:
        provider_ref = f"airtel_{uuid4().hex}"
        body = {
            "reference": reference,
            # Airtel expects the msisdn without the country code
            "subscriber": {"country": settings.AIRTEL_COUNTRY, "currency": currency, "msisdn": phone_number[3:]},
            "transaction": {"amount": amount, "country": settings.AIRTEL_COUNTRY, "currency": currency, "id": provider_ref},
        }
        try:
            async with self._client(settings.AIRTEL_API_URL) as client:
                headers = await self._headers(client)
                resp = await client.post("/merchant/v1/payments/", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"airtel unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise ProviderError(f"airtel payment request returned {resp.status_code}")
        if resp.status_code != 200:
            raise PaymentError(f"Airtel rejected the payment request ({resp.status_code})")
        return {"provider_ref": provider_ref, "detail": resp.json()}

    async def query_status(self, provider_ref: str) -> Dict:
        try:
            async with self._client(settings.AIRTEL_API_URL) as client:
                headers = await self._headers(client)
                resp = await client.get(f"/standard/v1/payments/{provider_ref}", headers=headers)
        except httpx.HTTPError as exc:
            raise ProviderError(f"airtel unreachable: {exc}") from exc
        if resp.status_code != 200:
            raise ProviderError(f"airtel status query returned {resp.status_code}")
        data = resp.json()
        transaction = (data.get("data") or {}).get("transaction") or {}
        return {"status": normalize_outcome(transaction.get("status")), "detail": data}


SANDBOX_KEY_TPL = "sandbox_payment:{provider_ref}"


class SandboxAdapter(BaseAdapter):
    """Simulated mobile-money provider for development.

    The outcome of each charge is drawn once (``PAYMENT_SANDBOX_SUCCESS_RATE``) and
    becomes visible after ``PAYMENT_SANDBOX_DELAY_SECONDS``.
    """

    def __init__(self, live: BaseAdapter):
        super().__init__()
        self.live = live
        self.provider_name = live.provider_name

    def get_secret(self) -> Optional[str]:
        return self.live.get_secret()

    def parse_event(self, payload: Dict):
        return self.live.parse_event(payload)

    async def charge(self, phone_number: str, amount: float, currency: str, reference: str) -> Dict:
        provider_ref = f"{self.provider_name}_{uuid4().hex}"
        succeeds = random.random() < settings.PAYMENT_SANDBOX_SUCCESS_RATE
        state = {
            "created": time.time(),
            "outcome": ProviderOutcome.COMPLETED if succeeds else ProviderOutcome.FAILED,
            "amount": amount,
            "currency": currency,
            "reference": reference,
        }
        key = SANDBOX_KEY_TPL.format(provider_ref=provider_ref)
        try:
            await redis_client.set(key, json.dumps(state), ex=60 * 60 * 24)
        except Exception as exc:
            raise ProviderError(f"sandbox store unavailable: {exc}") from exc
        return {"provider_ref": provider_ref, "detail": {"sandbox": True}}

    async def query_status(self, provider_ref: str) -> Dict:
        key = SANDBOX_KEY_TPL.format(provider_ref=provider_ref)
        try:
            raw = await redis_client.get(key)
        except Exception as exc:
            raise ProviderError(f"sandbox store unavailable: {exc}") from exc
        if raw is None:
            return {"status": ProviderOutcome.FAILED, "detail": {"reason": "Unknown transaction"}}
        state = json.loads(raw)
        if time.time() - state["created"] < settings.PAYMENT_SANDBOX_DELAY_SECONDS:
            return {"status": ProviderOutcome.PENDING, "detail": {"status": "PENDING"}}
        if state["outcome"] == ProviderOutcome.COMPLETED:
            detail = {
                "transactionId": f"{self.provider_name.upper()}-{int(state['created'] * 1000)}",
                "status": "SUCCESSFUL",
                "amount": state["amount"],
                "currency": state["currency"],
                "reason": "Payment completed successfully",
            }
        else:
            detail = {"status": "FAILED", "reason": "Insufficient funds or network error"}
        return {"status": state["outcome"], "detail": detail}


ADAPTERS = {
    "mtn": MTNAdapter(),
    "airtel": AirtelAdapter(),
}


async def get_adapter(name: str) -> BaseAdapter:
    ad = ADAPTERS.get((name or "").lower())
    if not ad:
        raise PaymentError(f"Unknown provider: {name}")
    if settings.PAYMENT_SANDBOX:
        return SandboxAdapter(ad)
    return ad


IDEMPOTENCY_KEY_TPL = "payment_webhook:{provider}:{event_id}"


async def mark_event_processed(provider: str, event_id: str, ttl: int = None) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    # set NX to ensure we only process once
    added = await redis_client.set(key, "1", ex=ttl or settings.WEBHOOK_IDEMPOTENCY_TTL_SECONDS, nx=True)
    return bool(added)


async def forget_event(provider: str, event_id: str) -> None:
    """Allow a webhook event to be redelivered after processing failed."""
    await redis_client.delete(IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id))
