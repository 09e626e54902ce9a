import hashlib
import hmac
import json
from decimal import Decimal

from app.models.models import Booking, BookingStatus, Payment

PHONE = "256772123456"


async def _reserve(client, bearer, catalog, seats, user_id=None):
    resp = await client.post(
        "/bookings/",
        json={"trip_id": catalog.trip_id, "seat_numbers": seats},
        headers=bearer(user_id or catalog.user_id),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _signed(secret, payload):
    body = json.dumps(payload).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"x-signature": signature, "content-type": "application/json"}


async def test_reserve_endpoint_returns_reference_and_countdown(client, bearer, catalog):
    body = await _reserve(client, bearer, catalog, [1, 2])

    assert body["reference"].startswith("LB")
    assert body["status"] == BookingStatus.PENDING
    assert body["seat_numbers"] == ["1", "2"]
    assert Decimal(str(body["total_amount"])) == Decimal("50000")
    assert 0 < body["seconds_remaining"] <= 15 * 60


async def test_seat_conflict_body_lists_seats(client, bearer, catalog):
    await _reserve(client, bearer, catalog, ["4"])

    resp = await client.post(
        "/bookings/",
        json={"trip_id": catalog.trip_id, "seat_numbers": ["4", "5"]},
        headers=bearer(catalog.other_id),
    )

    assert resp.status_code == 409
    assert resp.json()["code"] == "seat_conflict"
    assert resp.json()["seats"] == ["4"]


async def test_validation_and_auth_errors(client, bearer, catalog):
    resp = await client.post("/bookings/", json={"trip_id": catalog.trip_id, "seat_numbers": ["1"]})
    assert resp.status_code == 401

    resp = await client.post(
        "/bookings/", json={"trip_id": catalog.trip_id, "seat_numbers": ["99"]}, headers=bearer(catalog.user_id)
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "invalid_seat_selection"

    resp = await client.post(
        "/bookings/", json={"trip_id": 4040, "seat_numbers": ["1"]}, headers=bearer(catalog.user_id)
    )
    assert resp.status_code == 404


async def test_booking_reads_are_scoped_to_owner(client, bearer, catalog):
    mine = await _reserve(client, bearer, catalog, ["1"])
    await _reserve(client, bearer, catalog, ["2"], user_id=catalog.other_id)

    listing = await client.get("/bookings/", headers=bearer(catalog.user_id))
    assert [b["id"] for b in listing.json()] == [mine["id"]]

    assert (await client.get(f"/bookings/{mine['id']}", headers=bearer(catalog.other_id))).status_code == 403
    assert (await client.get(f"/bookings/{mine['id']}", headers=bearer(catalog.admin_id, is_admin=True))).status_code == 200

    hold = await client.get(f"/bookings/{mine['id']}/time-remaining", headers=bearer(catalog.user_id))
    assert hold.status_code == 200
    assert hold.json()["state"] == "active"


async def test_pay_and_poll_through_the_api(client, bearer, catalog, fetch):
    booking = await _reserve(client, bearer, catalog, ["3"])

    resp = await client.post(
        "/payments/initiate",
        json={"booking_id": booking["id"], "provider": "MTN", "phone_number": "+256 772123456"},
        headers=bearer(catalog.user_id),
    )
    assert resp.status_code == 201, resp.text
    payment = resp.json()
    assert payment["status"] == "pending"
    assert payment["phone_number"] == PHONE

    resp = await client.get(f"/payments/{payment['id']}/status", headers=bearer(catalog.user_id))
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"
    assert (await fetch(Booking, booking["id"])).status == BookingStatus.COMPLETED


async def test_payment_request_validation(client, bearer, catalog):
    booking = await _reserve(client, bearer, catalog, ["3"])

    bad_phone = await client.post(
        "/payments/initiate",
        json={"booking_id": booking["id"], "provider": "mtn", "phone_number": "0772123456"},
        headers=bearer(catalog.user_id),
    )
    bad_provider = await client.post(
        "/payments/initiate",
        json={"booking_id": booking["id"], "provider": "paypal", "phone_number": PHONE},
        headers=bearer(catalog.user_id),
    )

    assert bad_phone.status_code == 422
    assert bad_provider.status_code == 422


async def test_cancel_endpoint(client, bearer, catalog):
    booking = await _reserve(client, bearer, catalog, ["6", "7"])

    resp = await client.post(f"/bookings/{booking['id']}/cancel", headers=bearer(catalog.user_id))
    assert resp.status_code == 200
    body = resp.json()
    assert body["booking"]["status"] == BookingStatus.CANCELLED
    assert body["seats_released"] == 2
    assert body["refund_required"] is False

    again = await client.post(f"/bookings/{booking['id']}/cancel", headers=bearer(catalog.user_id))
    assert again.status_code == 409
    assert again.json()["code"] == "invalid_transition"


async def test_webhook_settles_payment_once(client, bearer, catalog, fetch, test_settings):
    test_settings.PAYMENT_SANDBOX_DELAY_SECONDS = 3600
    booking = await _reserve(client, bearer, catalog, ["8"])
    payment = (
        await client.post(
            "/payments/initiate",
            json={"booking_id": booking["id"], "provider": "mtn", "phone_number": PHONE},
            headers=bearer(catalog.user_id),
        )
    ).json()

    payload = {"id": "evt-100", "data": {"transaction_id": payment["provider_ref"], "status": "SUCCESSFUL"}}
    body, headers = _signed(test_settings.MTN_SECRET, payload)

    first = await client.post("/payments/webhook/mtn", content=body, headers=headers)
    replay = await client.post("/payments/webhook/mtn", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True, "duplicate": False, "status": "completed"}
    assert replay.json()["duplicate"] is True
    assert (await fetch(Payment, payment["id"])).status == "completed"
    assert (await fetch(Booking, booking["id"])).status == BookingStatus.COMPLETED


async def test_webhook_rejects_bad_signature(client, test_settings):
    body, _ = _signed(test_settings.MTN_SECRET, {"id": "evt-1", "data": {"transaction_id": "x", "status": "paid"}})

    resp = await client.post("/payments/webhook/mtn", content=body, headers={"x-signature": "forged"})

    assert resp.status_code == 400


async def test_admin_endpoints(client, bearer, catalog):
    booking = await _reserve(client, bearer, catalog, ["9", "10"])
    admin = bearer(catalog.admin_id, is_admin=True)

    assert (await client.get("/admin/bookings", headers=bearer(catalog.user_id))).status_code == 403

    listing = await client.get("/admin/bookings", params={"reference": booking["reference"]}, headers=admin)
    assert [b["id"] for b in listing.json()] == [booking["id"]]

    inventory = await client.get(f"/admin/trips/{catalog.trip_id}/inventory", headers=admin)
    assert inventory.json() == {
        "trip_id": catalog.trip_id,
        "capacity": 10,
        "seats_available": 8,
        "seats_held": 2,
        "held_seat_numbers": ["9", "10"],
        "consistent": True,
    }

    cancelled = await client.post(f"/admin/bookings/{booking['id']}/cancel", headers=admin)
    assert cancelled.json()["reason"] == "cancelled_by_admin"

    audit = await client.get(f"/admin/bookings/{booking['id']}/audit", headers=admin)
    assert [e["action"] for e in audit.json()] == ["booking.cancel"]

    sweep = await client.post("/admin/sweep", headers=admin)
    assert sweep.json() == {"expired": 0}


async def test_service_endpoints(client):
    assert (await client.get("/health")).json() == {"status": "ok"}
    assert (await client.get("/ready")).json() == {"status": "ready"}

    metrics = await client.get("/metrics")
    assert metrics.status_code == 200
    assert "linkbus_pending_holds" in metrics.text
    assert metrics.headers["x-trace-id"]
