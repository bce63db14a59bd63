from datetime import datetime, timezone

from studiopay.helpers import new_id, now_ts
from studiopay.model.context import (
    GuestContact,
    SnapshotItem,
    TemporaryOrderContext,
    dump_context,
)
from studiopay.model.db import Order, Payment


def sandbox_headers(at=None):
    at = now_ts() if at is None else at
    return {
        "paypal-auth-algo": "SHA256withRSA",
        "paypal-transmission-id": f"tx-{new_id()}",
        "paypal-cert-id": "CERT-360caa42",
        "paypal-transmission-sig": "c2lnbmF0dXJlLXBsYWNlaG9sZGVy",
        "paypal-transmission-time": datetime.fromtimestamp(
            at, tz=timezone.utc
        ).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "content-type": "application/json",
    }


def approved_event(provider_id):
    return {
        "id": f"WH-{new_id()}",
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "resource": {"id": provider_id, "status": "APPROVED"},
    }


def captured_event(provider_id, value="172.50", currency="USD",
                   payer_email=None, event_id=None):
    resource = {
        "id": f"CAP-{new_id()[:10]}",
        "status": "COMPLETED",
        "amount": {"value": value, "currency_code": currency},
        "supplementary_data": {"related_ids": {"order_id": provider_id}},
    }
    if payer_email:
        resource["payer"] = {"email_address": payer_email}
    return {
        "id": event_id or f"WH-{new_id()}",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": resource,
    }


def denied_event(provider_id, reason="PAYER_CANNOT_PAY"):
    return {
        "id": f"WH-{new_id()}",
        "event_type": "PAYMENT.CAPTURE.DENIED",
        "resource": {
            "id": f"CAP-{new_id()[:10]}",
            "status": "DECLINED",
            "status_details": {"reason": reason},
            "supplementary_data": {"related_ids": {"order_id": provider_id}},
        },
    }


def make_order(*, status="pending", payment_status="pending", items=None,
               created_at=None, email="guest@example.com", **kw):
    now = now_ts() if created_at is None else created_at
    order = Order(
        id=new_id(), guest_name="Guest", guest_email=email,
        currency="SAR", status=status, payment_status=payment_status,
        delivery_email_sent=False, email_verified=False, notes="",
        description="", needs_review=False, discount=0,
        created_at=now, updated_at=now, **kw,
    )
    order.set_items(items or [{
        "service_id": "svc-logo", "title": {"en": "Logo Design", "ar": ""},
        "quantity": 1, "price": 10000, "currency": "SAR",
    }])
    return order


def make_payment(*, order_id=None, status="pending", amount=11500,
                 created_at=None, context=None, webhook_confirmed=False,
                 **kw):
    now = now_ts() if created_at is None else created_at
    return Payment(
        id=new_id(), order_id=order_id, provider="mock",
        provider_payment_id=f"mock_{new_id()}", amount=amount,
        currency="SAR", status=status, context=context,
        webhook_received=webhook_confirmed,
        webhook_confirmed=webhook_confirmed, refund_amount=0,
        created_at=now, updated_at=now, **kw,
    )


def temp_context(service_ids=("svc-logo", "svc-social"),
                 email="guest@example.com", temp_id=None):
    return dump_context(TemporaryOrderContext(
        temp_order_id=temp_id or f"temp_{new_id()[:12]}",
        items=[SnapshotItem(service_id=sid, quantity=1)
               for sid in service_ids],
        currency="SAR",
        guest=GuestContact(name="Guest", email=email, phone=""),
        notes="rush please",
    ))
