"""Client facing verification.

`verify_payment` is what the success page polls after the provider
redirects the customer back. It only reads the state the webhook
dispatcher wrote and never marks anything paid: a payment counts as
complete only when it is succeeded and webhook-confirmed, whatever the
provider says when asked directly.

The checkout email codes prove a guest controls the address the
confirmation will be sent to before a payment session may be created.
"""
from typing import Optional

import structlog
from sqlalchemy import select, update

from . import config
from .emails import EmailGuarantee
from .errors import (
    EmailNotVerified,
    InvalidRequest,
    NotFound,
    ProviderRejected,
    RateLimited,
    TransientProviderError,
)
from .helpers import (
    ct_equal,
    is_valid_email,
    new_email_code,
    new_id,
    norm_email,
    now_ts,
)
from .infra.sql import Database
from .mailer import Mailer
from .model import states
from .model.db import (
    PAYMENT_SUCCEEDED,
    CheckoutEmailVerification,
    Order,
)
from .provider import PaymentGateway

log = structlog.get_logger(__name__)

COMPLETE = "complete"
PENDING = "pending_webhook_verification"


# ----------------------------
# Payment polling
# ----------------------------
async def verify_payment(db: Database, gateway: PaymentGateway,
                         emails: EmailGuarantee, session_id: str) -> dict:
    now = now_ts()
    async with db.tx() as s:
        payment = await states.find_payment(s, session_id)
        if payment is None:
            raise NotFound("payment not found")
        await states.mark_user_returned(s, payment.id, now)
        order = None
        if payment.order_id:
            order = await states.get_order(s, payment.order_id)

    confirmed = payment.webhook_confirmed and \
        payment.status == PAYMENT_SUCCEEDED
    if confirmed and order is not None and order.order_number:
        if not order.delivery_email_sent:
            await emails.schedule_fallback(payment.id)
        return {
            "status": COMPLETE,
            "order": order.public(),
            "payment": payment.public(),
        }

    # provider view is informational only
    provider_status = None
    try:
        remote = await gateway.get_order(payment.provider_payment_id)
        provider_status = remote.get("status")
    except (TransientProviderError, ProviderRejected) as e:
        log.warning("verify.provider_unavailable", payment_id=payment.id,
                    error=str(e))

    await emails.schedule_fallback(payment.id)
    log.info("verify.pending", payment_id=payment.id,
             provider_status=provider_status,
             webhook_confirmed=bool(payment.webhook_confirmed))
    return {
        "status": PENDING,
        "payment": payment.public(),
        "providerStatus": provider_status,
    }


# ----------------------------
# Checkout email codes
# ----------------------------
def _is_temp(ref: str) -> bool:
    return ref.startswith(config.TEMP_ORDER_PREFIX)


async def send_email_code(db: Database, gate, mailer: Mailer, *,
                          order_ref: str, email: str, name: str = "",
                          phone: str = "") -> dict:
    email = norm_email(email)
    if not order_ref:
        raise InvalidRequest("orderId is required")
    if not is_valid_email(email):
        raise InvalidRequest("a valid email address is required")

    busy_key = f"otp:{order_ref}:{email}"
    if not await gate.check_and_set(busy_key, 10):
        raise RateLimited("a code is already being sent", retry_after=10)
    try:
        now = now_ts()
        async with db.tx() as s:
            if not _is_temp(order_ref):
                if await states.get_order(s, order_ref) is None:
                    raise NotFound("order not found")
            last = (await s.execute(
                select(CheckoutEmailVerification)
                .where(CheckoutEmailVerification.order_ref == order_ref,
                       CheckoutEmailVerification.email == email)
                .order_by(CheckoutEmailVerification.created_at.desc())
                .limit(1)
            )).scalars().first()
            if last is not None and not last.is_used and \
                    now - last.created_at < config.EMAIL_CODE_RESEND_SECONDS:
                wait = int(config.EMAIL_CODE_RESEND_SECONDS
                           - (now - last.created_at)) + 1
                raise RateLimited("wait before requesting a new code",
                                  retry_after=wait)
            # only the newest code is valid
            await s.execute(
                update(CheckoutEmailVerification)
                .where(CheckoutEmailVerification.order_ref == order_ref,
                       CheckoutEmailVerification.email == email,
                       CheckoutEmailVerification.is_used.is_(False),
                       CheckoutEmailVerification.expires_at > now)
                .values(expires_at=now)
                .execution_options(synchronize_session=False)
            )
            code = new_email_code()
            s.add(CheckoutEmailVerification(
                id=new_id(), order_ref=order_ref, email=email, code=code,
                name=name or None, phone=phone or None, attempts=0,
                is_used=False, expires_at=now + config.EMAIL_CODE_TTL_SECONDS,
                created_at=now,
            ))

        await mailer.send(email, "email-verification", {
            "code": code,
            "name": name,
            "expiresMinutes": config.EMAIL_CODE_TTL_SECONDS // 60,
        })
    finally:
        await gate.release(busy_key)

    log.info("otp.sent", order_ref=order_ref, email=email)
    return {"sent": True, "expiresIn": config.EMAIL_CODE_TTL_SECONDS}


async def verify_email_code(db: Database, *, order_ref: str, email: str,
                            code: str) -> dict:
    email = norm_email(email)
    code = (code or "").strip()
    if not order_ref or not email or not code:
        raise InvalidRequest("orderId, email and code are required")

    now = now_ts()
    outcome = None
    remaining = 0
    async with db.tx() as s:
        rec = (await s.execute(
            select(CheckoutEmailVerification)
            .where(CheckoutEmailVerification.order_ref == order_ref,
                   CheckoutEmailVerification.email == email,
                   CheckoutEmailVerification.is_used.is_(False),
                   CheckoutEmailVerification.expires_at > now)
            .order_by(CheckoutEmailVerification.created_at.desc())
            .limit(1)
        )).scalars().first()
        if rec is None:
            outcome = "expired"
        elif rec.attempts >= config.EMAIL_CODE_MAX_ATTEMPTS:
            outcome = "locked"
        elif not ct_equal(rec.code, code):
            # keep the attempt even though the request fails
            rec.attempts += 1
            remaining = config.EMAIL_CODE_MAX_ATTEMPTS - rec.attempts
            outcome = "mismatch"
        else:
            rec.is_used = True
            rec.used_at = now
            if not _is_temp(order_ref):
                await s.execute(
                    update(Order)
                    .where(Order.id == order_ref)
                    .values(email_verified=True, email_verified_at=now,
                            guest_email=email, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            outcome = "verified"

    if outcome == "expired":
        raise InvalidRequest("code expired or not found")
    if outcome == "locked":
        raise InvalidRequest("too many attempts, request a new code")
    if outcome == "mismatch":
        raise InvalidRequest("invalid code", remaining=remaining)
    log.info("otp.verified", order_ref=order_ref, email=email)
    return {"verified": True, "email": email}


async def require_verified_email(s, *, order_ref: str, email: str,
                                 order: Optional[Order] = None) -> None:
    """Raise EmailNotVerified unless the checkout email was proven."""
    email = norm_email(email)
    if order is not None and order.email_verified and \
            norm_email(order.guest_email) == email:
        return
    since = now_ts() - config.EMAIL_VERIFIED_VALID_SECONDS
    if await states.email_proven_at(s, order_ref, email, since) is None:
        raise EmailNotVerified("verify your email address before paying")
