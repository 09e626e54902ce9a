import hashlib
import hmac
import json

import httpx
import pytest

from app.services import payment_gateway
from app.services.payment_gateway import (
    AirtelAdapter,
    MTNAdapter,
    PaymentError,
    ProviderError,
    ProviderOutcome,
    SandboxAdapter,
    get_adapter,
    mark_event_processed,
    normalize_outcome,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("SUCCESSFUL", ProviderOutcome.COMPLETED),
        ("paid", ProviderOutcome.COMPLETED),
        ("TS", ProviderOutcome.COMPLETED),
        ("FAILED", ProviderOutcome.FAILED),
        ("declined", ProviderOutcome.FAILED),
        ("TF", ProviderOutcome.FAILED),
        ("PENDING", ProviderOutcome.PENDING),
        ("TIP", ProviderOutcome.PENDING),
        (None, ProviderOutcome.PENDING),
    ],
)
def test_normalize_outcome(raw, expected):
    assert normalize_outcome(raw) == expected


async def test_signature_verification(test_settings):
    adapter = MTNAdapter()
    body = b'{"id": "evt-1"}'
    good = hmac.new(test_settings.MTN_SECRET.encode(), body, hashlib.sha256).hexdigest()

    assert await adapter.verify_signature({"x-signature": good}, body)
    assert not await adapter.verify_signature({"x-signature": "0" * 64}, body)
    assert not await adapter.verify_signature({}, body)


async def test_signature_rejected_without_secret(test_settings, monkeypatch):
    monkeypatch.setattr(test_settings, "AIRTEL_SECRET", "")
    assert not await AirtelAdapter().verify_signature({"x-signature": "anything"}, b"{}")


def test_parse_event_reads_nested_and_flat_payloads():
    adapter = MTNAdapter()
    nested = {"id": "evt-9", "data": {"transaction_id": "mtn_abc", "status": "SUCCESSFUL"}}
    flat = {"event_id": "evt-10", "reference": "mtn_def", "transaction_status": "FAILED"}

    assert adapter.parse_event(nested) == ("evt-9", "mtn_abc", "SUCCESSFUL")
    assert adapter.parse_event(flat) == ("evt-10", "mtn_def", "FAILED")


async def test_get_adapter(test_settings):
    sandbox = await get_adapter("MTN")
    assert isinstance(sandbox, SandboxAdapter)
    assert sandbox.provider_name == "mtn"

    test_settings.PAYMENT_SANDBOX = False
    assert isinstance(await get_adapter("airtel"), AirtelAdapter)

    with pytest.raises(PaymentError):
        await get_adapter("flutterwave")


async def test_sandbox_decides_once_and_reveals_after_delay(fake_redis, test_settings):
    test_settings.PAYMENT_SANDBOX_DELAY_SECONDS = 3600
    adapter = SandboxAdapter(MTNAdapter())

    charge = await adapter.charge("256772123456", 50000.0, "UGX", "LB0000-0000-0001")
    assert charge["provider_ref"].startswith("mtn_")
    assert (await adapter.query_status(charge["provider_ref"]))["status"] == ProviderOutcome.PENDING

    test_settings.PAYMENT_SANDBOX_DELAY_SECONDS = 0
    result = await adapter.query_status(charge["provider_ref"])
    assert result["status"] == ProviderOutcome.COMPLETED
    assert result["detail"]["status"] == "SUCCESSFUL"


async def test_sandbox_unknown_reference_fails(fake_redis):
    result = await SandboxAdapter(AirtelAdapter()).query_status("airtel_missing")
    assert result["status"] == ProviderOutcome.FAILED


async def test_webhook_events_are_marked_once(fake_redis):
    assert await mark_event_processed("mtn", "evt-1") is True
    assert await mark_event_processed("mtn", "evt-1") is False
    assert await mark_event_processed("airtel", "evt-1") is True


def _mtn_transport(requesttopay_status=202, status_body=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/collection/token/":
            return httpx.Response(200, json={"access_token": "tok"})
        if request.url.path == "/collection/v1_0/requesttopay" and request.method == "POST":
            assert request.headers["X-Reference-Id"]
            assert json.loads(request.content)["payer"]["partyId"] == "256772123456"
            return httpx.Response(requesttopay_status)
        if request.url.path.startswith("/collection/v1_0/requesttopay/"):
            return httpx.Response(200, json=status_body or {"status": "PENDING"})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


async def test_mtn_charge_and_status():
    adapter = MTNAdapter(transport=_mtn_transport(status_body={"status": "SUCCESSFUL", "financialTransactionId": "1"}))

    charge = await adapter.charge("256772123456", 25000.0, "UGX", "LB0000-0000-0002")
    status = await adapter.query_status(charge["provider_ref"])

    assert charge["detail"]["externalId"] == "LB0000-0000-0002"
    assert status["status"] == ProviderOutcome.COMPLETED


async def test_mtn_server_error_is_retryable_client_error_is_not():
    with pytest.raises(ProviderError):
        await MTNAdapter(transport=_mtn_transport(requesttopay_status=500)).charge("256772123456", 1.0, "UGX", "r")
    with pytest.raises(PaymentError):
        await MTNAdapter(transport=_mtn_transport(requesttopay_status=400)).charge("256772123456", 1.0, "UGX", "r")


async def test_mtn_unreachable_is_provider_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderError):
        await MTNAdapter(transport=httpx.MockTransport(handler)).query_status("ref")


async def test_airtel_status_codes():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/oauth2/token":
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(200, json={"data": {"transaction": {"id": "airtel_1", "status": "TF"}}})

    status = await AirtelAdapter(transport=httpx.MockTransport(handler)).query_status("airtel_1")
    assert status["status"] == ProviderOutcome.FAILED


def test_adapter_registry_covers_supported_providers():
    assert set(payment_gateway.ADAPTERS) == {"mtn", "airtel"}
