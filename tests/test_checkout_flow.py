import asyncio

import orjson
import pytest
from sqlalchemy import func, select

from studiopay import server
from studiopay.cleanup import CleanupService
from studiopay.errors import ProviderRejected
from studiopay.helpers import now_ts
from studiopay.model.db import Order, Payment

from factories import (
    approved_event,
    captured_event,
    denied_event,
    sandbox_headers,
)

EMAIL = "guest@example.com"
ORDER_DATA = {
    "items": [{"serviceId": "svc-logo", "quantity": 1},
              {"serviceId": "svc-social", "quantity": 1}],
    "currency": "SAR",
    "customerInfo": {"name": "Guest", "email": EMAIL},
    "notes": "rush please",
    "total": 172.5,
}


async def prove_email(client, mailer, ref_key, ref, email=EMAIL):
    resp = await client.post("/api/checkout/email/send-code",
                             json={ref_key: ref, "email": email,
                                   "name": "Guest"})
    assert resp.status_code == 200, resp.text
    code = mailer.outbox[-1]["data"]["code"]
    resp = await client.post("/api/checkout/email/verify",
                             json={ref_key: ref, "email": email,
                                   "code": code})
    assert resp.status_code == 200, resp.text


async def start_temp_checkout(client, mailer, temp_id="temp_flow01"):
    await prove_email(client, mailer, "tempOrderId", temp_id)
    resp = await client.post("/api/payments/create-session", json={
        "temporaryOrderId": temp_id, "orderData": ORDER_DATA,
    })
    assert resp.status_code == 200, resp.text
    return resp.json()


async def post_event(client, event):
    return await client.post("/api/payments/webhook/paypal",
                             content=orjson.dumps(event),
                             headers=sandbox_headers())


async def count(db, model):
    async with db.tx() as s:
        return (await s.execute(
            select(func.count()).select_from(model)
        )).scalar_one()


def confirmations(mailer):
    return [m for m in mailer.outbox if m["template"] == "order-confirmation"]


async def test_session_is_priced_server_side(client, catalog, mailer, db,
                                             gateway):
    session = await start_temp_checkout(client, mailer)
    assert session["sessionId"].startswith("mock_")
    assert session["approvalUrl"]

    async with db.tx() as s:
        payment = await s.get(Payment, session["paymentId"])
    assert payment.amount == 17250
    assert payment.order_id is None
    assert payment.context["kind"] == "temporary"
    assert gateway.created[-1]["amount"] == 17250
    # nothing is persisted as an order before payment
    assert await count(db, Order) == 0


async def test_full_payment_flow(client, catalog, mailer, db, gateway):
    session = await start_temp_checkout(client, mailer)
    sid = session["sessionId"]

    resp = await post_event(client, approved_event(sid))
    assert resp.status_code == 200
    assert gateway.captures == [sid]

    resp = await post_event(client, captured_event(sid))
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["email"] == "sent"

    resp = await client.post("/api/payments/verify", json={"sessionId": sid})
    data = resp.json()
    assert data["status"] == "complete"
    order = data["order"]
    assert order["paymentStatus"] == "paid"
    assert order["orderNumber"] == body["orderNumber"]
    assert (order["subtotal"], order["tax"], order["total"]) == \
        (150.0, 22.5, 172.5)
    assert order["deliveryEmailSent"] is True
    assert order["emailVerified"] is True

    [mail] = confirmations(mailer)
    assert mail["to"] == EMAIL
    urls = [ln["url"] for ln in mail["data"]["deliveryLinks"]]
    assert urls == ["https://files.test/logo", "https://files.test/social"]


async def test_duplicate_capture_is_idempotent(client, catalog, mailer, db):
    session = await start_temp_checkout(client, mailer)
    sid = session["sessionId"]
    event = captured_event(sid)

    first = await post_event(client, event)
    second = await post_event(client, event)
    third = await post_event(client, captured_event(sid))

    assert first.status_code == second.status_code == third.status_code == 200
    numbers = {r.json()["orderNumber"] for r in (first, second, third)}
    assert len(numbers) == 1
    assert second.json()["idempotent"] is True
    assert await count(db, Order) == 1
    assert len(confirmations(mailer)) == 1


async def test_concurrent_duplicate_captures(client, catalog, mailer, db):
    session = await start_temp_checkout(client, mailer)
    sid = session["sessionId"]
    event = captured_event(sid)

    responses = await asyncio.gather(
        *(post_event(client, event) for _ in range(4))
    )
    assert all(r.status_code == 200 for r in responses)
    assert len({r.json()["orderNumber"] for r in responses}) == 1
    assert await count(db, Order) == 1
    assert len(confirmations(mailer)) == 1


async def test_verify_never_trusts_provider(client, catalog, mailer, db,
                                            gateway):
    session = await start_temp_checkout(client, mailer)
    gateway.remote_status = "COMPLETED"

    resp = await client.post("/api/payments/verify",
                             json={"sessionId": session["sessionId"]})
    data = resp.json()
    assert resp.status_code == 200
    assert data["status"] == "pending_webhook_verification"
    assert data["providerStatus"] == "COMPLETED"
    assert "order" not in data

    async with db.tx() as s:
        payment = await s.get(Payment, session["paymentId"])
    assert payment.status == "pending"
    assert payment.webhook_confirmed is False
    assert payment.user_returned_at is not None
    assert await count(db, Order) == 0


async def test_denied_capture(client, catalog, mailer, db):
    session = await start_temp_checkout(client, mailer)
    sid = session["sessionId"]
    await post_event(client, approved_event(sid))

    resp = await post_event(client, denied_event(sid))
    assert resp.status_code == 200

    async with db.tx() as s:
        payment = await s.get(Payment, session["paymentId"])
    assert payment.status == "failed"
    assert payment.failure_reason == "PAYER_CANNOT_PAY"
    resp = await client.post("/api/payments/verify", json={"sessionId": sid})
    assert resp.json()["status"] == "pending_webhook_verification"


async def test_webhook_rejects_unsigned(client, catalog, mailer, db):
    session = await start_temp_checkout(client, mailer)
    headers = sandbox_headers()
    del headers["paypal-transmission-sig"]
    resp = await client.post(
        "/api/payments/webhook/paypal",
        content=orjson.dumps(captured_event(session["sessionId"])),
        headers=headers,
    )
    assert resp.status_code == 401
    async with db.tx() as s:
        payment = await s.get(Payment, session["paymentId"])
    assert payment.status == "pending"
    assert await count(db, Order) == 0


async def test_webhook_for_unknown_payment_is_acknowledged(client):
    resp = await post_event(client, captured_event("ORDER-NOT-OURS"))
    assert resp.status_code == 200
    assert resp.json()["handled"] is False


async def test_webhook_internal_failure_returns_500(client, catalog, mailer,
                                                    monkeypatch):
    session = await start_temp_checkout(client, mailer)

    async def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr("studiopay.webhook.materialize", boom)
    resp = await post_event(client, captured_event(session["sessionId"]))
    assert resp.status_code == 500


async def test_temp_session_requires_verified_email(client, catalog):
    resp = await client.post("/api/payments/create-session", json={
        "temporaryOrderId": "temp_noproof", "orderData": ORDER_DATA,
    })
    assert resp.status_code == 403


async def test_temp_session_rejects_total_mismatch(client, catalog, mailer):
    await prove_email(client, mailer, "tempOrderId", "temp_mismatch")
    resp = await client.post("/api/payments/create-session", json={
        "temporaryOrderId": "temp_mismatch",
        "orderData": {**ORDER_DATA, "total": 10.0},
    })
    assert resp.status_code == 400
    assert resp.json()["code"] == "pricing_mismatch"


async def test_provider_timeout_leaves_no_payment(client, catalog, mailer,
                                                  db, gateway):
    await prove_email(client, mailer, "tempOrderId", "temp_timeout")
    gateway.fail_next = 1
    resp = await client.post("/api/payments/create-session", json={
        "temporaryOrderId": "temp_timeout", "orderData": ORDER_DATA,
    })
    assert resp.status_code == 502
    assert await count(db, Payment) == 0


async def test_persisted_order_flow(client, catalog, mailer, db):
    resp = await client.post("/api/orders", json={
        "items": [{"serviceId": "svc-logo", "quantity": 2}],
        "currency": "SAR",
        "customerInfo": {"name": "Guest", "email": EMAIL},
        "total": 230.0,
    })
    assert resp.status_code == 200, resp.text
    order = resp.json()["order"]
    assert order["orderNumber"] is None
    assert order["total"] == 230.0

    resp = await client.post("/api/payments/create-session",
                             json={"orderId": order["id"]})
    assert resp.status_code == 403

    await prove_email(client, mailer, "orderId", order["id"])
    resp = await client.post("/api/payments/create-session",
                             json={"orderId": order["id"]})
    assert resp.status_code == 200, resp.text
    sid = resp.json()["sessionId"]

    await post_event(client, captured_event(sid))
    resp = await client.get(f"/api/orders/{order['id']}")
    paid = resp.json()["order"]
    assert paid["paymentStatus"] == "paid"
    assert paid["orderNumber"]
    assert paid["deliveryEmailSent"] is True
    assert await count(db, Order) == 1

    again = await client.post("/api/payments/create-session",
                              json={"orderId": order["id"]})
    assert again.status_code == 200
    assert again.json()["idempotent"] is True
    assert await count(db, Payment) == 1


async def test_create_order_rejects_mismatch(client, catalog):
    resp = await client.post("/api/orders", json={
        "items": [{"serviceId": "svc-logo", "quantity": 1}],
        "currency": "SAR",
        "customerInfo": {"email": EMAIL},
        "total": 99.0,
    })
    assert resp.status_code == 400
    assert resp.json()["success"] is False


async def test_get_unknown_order(client):
    resp = await client.get("/api/orders/nope")
    assert resp.status_code == 404


async def test_user_id_in_body_is_ignored(client, catalog, mailer, db):
    resp = await client.post("/api/payments/create-session", json={
        "temporaryOrderId": "temp_claimed",
        "orderData": {**ORDER_DATA, "userId": "user-1"},
        "userId": "user-1",
    })
    assert resp.status_code == 403
    assert await count(db, Payment) == 0

    resp = await client.post("/api/orders", json={
        "items": [{"serviceId": "svc-logo", "quantity": 1}],
        "currency": "SAR",
        "customerInfo": {"email": EMAIL},
        "userId": "user-1",
        "total": 115.0,
    })
    assert resp.status_code == 200, resp.text
    order_id = resp.json()["order"]["id"]
    async with db.tx() as s:
        assert (await s.get(Order, order_id)).user_id is None
    resp = await client.post("/api/payments/create-session",
                             json={"orderId": order_id, "userId": "user-1"})
    assert resp.status_code == 403


async def test_orders_without_email_are_refused(client, catalog):
    resp = await client.post("/api/orders", json={
        "items": [{"serviceId": "svc-logo", "quantity": 1}],
        "currency": "SAR",
        "userId": "user-1",
    })
    assert resp.status_code == 400


@pytest.mark.parametrize("changes", [
    {"discount": "ten"},
    {"items": [{"serviceId": "svc-logo", "quantity": "two"}]},
    {"items": "svc-logo"},
    {"items": [{"quantity": 1}]},
    {"customerInfo": "guest@example.com"},
])
async def test_create_order_rejects_malformed_input(client, catalog,
                                                    changes):
    body = {
        "items": [{"serviceId": "svc-logo", "quantity": 1}],
        "currency": "SAR",
        "customerInfo": {"email": EMAIL},
        **changes,
    }
    resp = await client.post("/api/orders", content=orjson.dumps(body),
                             headers={"content-type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


async def test_create_order_rejects_overflowing_total(client, catalog):
    resp = await client.post(
        "/api/orders",
        content=b'{"items": [{"serviceId": "svc-logo"}], "currency": "SAR",'
                b' "customerInfo": {"email": "guest@example.com"},'
                b' "total": 1e999}',
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


async def test_session_rejects_malformed_quantity(client, catalog, mailer):
    await prove_email(client, mailer, "tempOrderId", "temp_badqty")
    resp = await client.post("/api/payments/create-session", json={
        "temporaryOrderId": "temp_badqty",
        "orderData": {**ORDER_DATA,
                      "items": [{"serviceId": "svc-logo",
                                 "quantity": "two"}]},
    })
    assert resp.status_code == 400


async def test_rejected_capture_fails_payment(client, catalog, mailer, db,
                                              gateway, monkeypatch):
    session = await start_temp_checkout(client, mailer)
    sid = session["sessionId"]

    async def refuse(provider_payment_id, request_id):
        raise ProviderRejected("INSTRUMENT_DECLINED", status=422)

    monkeypatch.setattr(gateway, "capture_order", refuse)
    resp = await post_event(client, approved_event(sid))
    assert resp.status_code == 200
    assert resp.json()["status"] == "failed"

    again = await post_event(client, approved_event(sid))
    assert again.status_code == 200
    assert again.json()["idempotent"] is True

    async with db.tx() as s:
        payment = await s.get(Payment, session["paymentId"])
    assert payment.status == "failed"
    assert payment.failure_reason == "CAPTURE_REJECTED_422"

    result = await CleanupService(db, mailer).cleanup_failed_payments(
        hours=1, now=now_ts() + 10 * 86400,
    )
    assert result["deleted"] == 1
    assert await count(db, Payment) == 0


async def test_capture_with_bad_credentials_is_retried(client, catalog,
                                                        mailer, db, gateway,
                                                        monkeypatch):
    session = await start_temp_checkout(client, mailer)

    async def unauthorized(provider_payment_id, request_id):
        raise ProviderRejected("provider refused our credentials",
                               status=401)

    monkeypatch.setattr(gateway, "capture_order", unauthorized)
    resp = await post_event(client, approved_event(session["sessionId"]))
    assert resp.status_code == 500
    async with db.tx() as s:
        payment = await s.get(Payment, session["paymentId"])
    assert payment.status == "processing"


@pytest.mark.parametrize("body", [
    b"this is not json",
    orjson.dumps({"id": "WH-1"}),
    orjson.dumps({"id": "WH-2", "event_type": "CHECKOUT.ORDER.APPROVED"}),
    orjson.dumps({"id": "WH-3", "event_type": "PAYMENT.CAPTURE.COMPLETED",
                  "resource": "COMPLETED"}),
])
async def test_unusable_webhook_body_is_acknowledged(client, body):
    resp = await client.post("/api/payments/webhook/paypal", content=body,
                             headers=sandbox_headers())
    assert resp.status_code == 200
    assert resp.json()["handled"] is False


async def test_repeated_polls_start_one_fallback_timer(client, catalog,
                                                       mailer):
    session = await start_temp_checkout(client, mailer)
    for _ in range(3):
        resp = await client.post("/api/payments/verify",
                                 json={"sessionId": session["sessionId"]})
        assert resp.json()["status"] == "pending_webhook_verification"
    assert len(server.app.state.emails._timers) == 1
