"""Provider webhook verification and dispatch.

Verification runs on the raw request body before anything is parsed.
Strict mode checks the RSA signature with the provider's signing
certificate. Sandbox mode only checks header shape and is refused at
startup when the provider runs live.

Dispatch keys every side effect off the persisted payment state, never
off the event sequence, so re-delivered and re-ordered events are no-ops.
"""
import base64
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import urlparse
import zlib

import httpx
import orjson
import structlog
from Crypto.Hash import SHA256
from Crypto.PublicKey import RSA
from Crypto.Signature import pkcs1_15

from . import config
from .emails import EmailGuarantee
from .errors import (
    ProviderRejected,
    TransientProviderError,
    VerificationFailure,
)
from .helpers import now_ts
from .infra.sql import Database
from .logs import audit
from .materializer import materialize
from .model import states
from .model.db import (
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
)
from .provider import PaymentGateway

log = structlog.get_logger(__name__)

H_ALGO = "paypal-auth-algo"
H_TRANSMISSION_ID = "paypal-transmission-id"
H_CERT_ID = "paypal-cert-id"
H_SIGNATURE = "paypal-transmission-sig"
H_TIME = "paypal-transmission-time"
H_CERT_URL = "paypal-cert-url"

REQUIRED_HEADERS = (H_ALGO, H_TRANSMISSION_ID, H_CERT_ID, H_SIGNATURE, H_TIME)

ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
ORDER_PROCESSING = "CHECKOUT.ORDER.PROCESSING"
CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"


def _parse_time(raw: str) -> datetime:
    raw = raw.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class WebhookVerifier:

    def __init__(self, http: Optional[httpx.AsyncClient] = None, *,
                 mode: str = config.WEBHOOK_VERIFY_MODE,
                 webhook_id: str = config.PAYPAL_WEBHOOK_ID,
                 max_age: int = config.WEBHOOK_MAX_AGE_SECONDS) -> None:
        if mode not in ("strict", "sandbox"):
            raise ValueError(f"unknown webhook verify mode {mode!r}")
        self.http = http
        self.mode = mode
        self.webhook_id = webhook_id
        self.max_age = max_age
        # cert url -> RSA public key
        self.keys: Dict[str, RSA.RsaKey] = {}

    async def verify(self, body: bytes, headers,
                     now: Optional[float] = None) -> dict:
        h = {k.lower(): v for k, v in headers.items()}
        missing = [name for name in REQUIRED_HEADERS if not h.get(name)]
        if missing:
            raise VerificationFailure("missing webhook headers",
                                      missing=missing)

        try:
            sent_at = _parse_time(h[H_TIME]).timestamp()
        except ValueError:
            raise VerificationFailure("unreadable transmission time")
        now = now_ts() if now is None else now
        if abs(now - sent_at) > self.max_age:
            raise VerificationFailure("transmission time outside window",
                                      skew=int(now - sent_at))

        if self.mode == "strict":
            await self._verify_signature(body, h)
        else:
            self._verify_shape(h)

        try:
            event = orjson.loads(body)
        except orjson.JSONDecodeError:
            event = None
        if not isinstance(event, dict) or \
                not isinstance(event.get("event_type"), str):
            # authentic but unusable; a redelivery would carry the same body
            log.warning("webhook.unreadable_body", size=len(body))
            return {}
        return event

    @staticmethod
    def _verify_shape(h: dict) -> None:
        if len(h[H_TRANSMISSION_ID]) <= 5 or "SHA" not in h[H_ALGO].upper() \
                or len(h[H_SIGNATURE]) <= 10:
            raise VerificationFailure("malformed webhook headers")

    async def _verify_signature(self, body: bytes, h: dict) -> None:
        if not self.webhook_id:
            raise VerificationFailure("webhook id is not configured")
        if h[H_ALGO].upper() != "SHA256WITHRSA":
            raise VerificationFailure("unsupported signature algorithm",
                                      algo=h[H_ALGO])
        key = await self._signing_key(h.get(H_CERT_URL) or "")
        message = "|".join((
            h[H_TRANSMISSION_ID],
            h[H_TIME],
            self.webhook_id,
            str(zlib.crc32(body)),
        )).encode()
        try:
            signature = base64.b64decode(h[H_SIGNATURE], validate=True)
            pkcs1_15.new(key).verify(SHA256.new(message), signature)
        except ValueError:
            raise VerificationFailure("signature mismatch")

    async def _signing_key(self, cert_url: str) -> RSA.RsaKey:
        if cert_url in self.keys:
            return self.keys[cert_url]
        parsed = urlparse(cert_url)
        host = parsed.hostname or ""
        if parsed.scheme != "https" or not (
            host == "paypal.com" or host.endswith(".paypal.com")
        ):
            raise VerificationFailure("certificate url is not trusted",
                                      cert_url=cert_url)
        if self.http is None:
            raise VerificationFailure("no http client for certificates")
        try:
            resp = await self.http.get(cert_url)
            resp.raise_for_status()
            key = RSA.import_key(resp.text)
        except (httpx.HTTPError, ValueError) as e:
            raise VerificationFailure(f"certificate unavailable: {e}")
        self.keys[cert_url] = key
        return key


def _related_order_id(resource: dict) -> Optional[str]:
    return (
        ((resource.get("supplementary_data") or {}).get("related_ids") or {})
        .get("order_id")
    )


class WebhookDispatcher:

    def __init__(self, db: Database, gateway: PaymentGateway,
                 emails: EmailGuarantee) -> None:
        self.db = db
        self.gateway = gateway
        self.emails = emails
        self.handlers = {
            ORDER_APPROVED: self.on_order_approved,
            CAPTURE_COMPLETED: self.on_capture_completed,
            CAPTURE_DENIED: self.on_capture_denied,
            ORDER_PROCESSING: self.on_order_processing,
        }

    async def dispatch(self, event: dict) -> dict:
        kind = event.get("event_type")
        handler = self.handlers.get(kind)
        if handler is None:
            log.info("webhook.ignored", event_type=kind)
            return {"ok": True, "handled": False}
        resource = event.get("resource")
        if not isinstance(resource, dict):
            resource = {}
        return await handler(event.get("id"), resource)

    async def _load(self, provider_id: Optional[str], event_id,
                    provider_status: Optional[str] = None):
        if not isinstance(provider_id, str) or not provider_id:
            log.warning("webhook.no_provider_order", event_id=event_id)
            return None
        async with self.db.tx() as s:
            payment = await states.find_payment(s, provider_id)
            if payment is not None:
                await states.mark_webhook_received(
                    s, payment.id, event_id, provider_status
                )
        if payment is None:
            # deleted by cleanup or never ours; money may still have moved
            log.warning("webhook.unknown_payment", provider_id=provider_id,
                        event_id=event_id)
        return payment

    async def on_order_approved(self, event_id, resource: dict) -> dict:
        payment = await self._load(resource.get("id"), event_id, "APPROVED")
        if payment is None:
            return {"ok": True, "handled": False}
        async with self.db.tx() as s:
            await states.mark_payment_processing(s, payment.id)
            payment = await states.get_payment(s, payment.id)
        if payment.status not in (PAYMENT_PENDING, PAYMENT_PROCESSING):
            return {"ok": True, "idempotent": True, "status": payment.status}

        # the capture webhook that follows is what confirms the payment
        try:
            result = await self.gateway.capture_order(
                payment.provider_payment_id,
                request_id=f"capture-{payment.id}",
            )
        except ProviderRejected as e:
            if e.status in (401, 403):
                # our credentials, not the payer; let the provider retry
                raise
            return await self._capture_refused(payment, e)
        log.info("webhook.capture_requested", payment_id=payment.id,
                 capture_status=result.get("status"))
        return {"ok": True, "status": payment.status}

    async def _capture_refused(self, payment, error: ProviderRejected) -> dict:
        reason = f"CAPTURE_REJECTED_{error.status or 0}"
        async with self.db.tx() as s:
            fired = await states.mark_payment_failed(s, payment.id, reason)
            if fired and payment.order_id:
                await states.mark_order_payment_failed(s, payment.order_id)
        log.warning("webhook.capture_rejected", payment_id=payment.id,
                    status=error.status, error=error.message, changed=fired)
        return {"ok": True, "status": PAYMENT_FAILED, "idempotent": not fired}

    async def on_capture_completed(self, event_id, resource: dict) -> dict:
        payment = await self._load(_related_order_id(resource), event_id,
                                   "COMPLETED")
        if payment is None:
            return {"ok": True, "handled": False}

        async with self.db.tx() as s:
            fired = await states.mark_payment_succeeded(
                s, payment.id, event_id=event_id,
                capture_id=resource.get("id"),
                payer=resource.get("payer"),
            )
            payment = await states.get_payment(s, payment.id)
        if payment.status not in (PAYMENT_SUCCEEDED, PAYMENT_REFUNDED):
            log.warning("webhook.capture_for_closed_payment",
                        payment_id=payment.id, status=payment.status)
            return {"ok": True, "handled": False, "status": payment.status}

        amount = (resource.get("amount") or {}).get("value")
        if fired:
            audit.info("payment.confirmed", payment_id=payment.id,
                       event_id=event_id, amount=amount,
                       capture_id=resource.get("id"))

        # each step below is idempotent; re-deliveries resume where a
        # previous attempt stopped
        order = await materialize(self.db, payment.id)
        outcome = await self.emails.ensure_sent(order.id, via="webhook")
        return {"ok": True, "orderId": order.id,
                "orderNumber": order.order_number, "email": outcome,
                "idempotent": not fired}

    async def on_capture_denied(self, event_id, resource: dict) -> dict:
        payment = await self._load(_related_order_id(resource), event_id,
                                   "DENIED")
        if payment is None:
            return {"ok": True, "handled": False}
        reason = (resource.get("status_details") or {}).get("reason") \
            or "DENIED"
        async with self.db.tx() as s:
            fired = await states.mark_payment_failed(s, payment.id, reason)
            if fired and payment.order_id:
                await states.mark_order_payment_failed(s, payment.order_id)
        log.info("webhook.capture_denied", payment_id=payment.id,
                 reason=reason, changed=fired)
        return {"ok": True, "idempotent": not fired}

    async def on_order_processing(self, event_id, resource: dict) -> dict:
        payment = await self._load(resource.get("id"), event_id, "PROCESSING")
        return {"ok": True, "handled": payment is not None}


async def handle_webhook(verifier: WebhookVerifier,
                         dispatcher: WebhookDispatcher,
                         body: bytes, headers) -> dict:
    """Verify then dispatch; raises VerificationFailure on bad signatures."""
    try:
        event = await verifier.verify(body, headers)
    except VerificationFailure as e:
        audit.warning("webhook.rejected", reason=e.message, **e.context)
        raise
    structlog.contextvars.bind_contextvars(
        event_id=event.get("id"), event_type=event.get("event_type")
    )
    try:
        result = await dispatcher.dispatch(event)
    except TransientProviderError:
        log.warning("webhook.provider_unavailable")
        raise
    finally:
        structlog.contextvars.unbind_contextvars("event_id", "event_type")
    log.info("webhook.processed", **{k: v for k, v in result.items()
                                     if k != "ok"})
    return result
