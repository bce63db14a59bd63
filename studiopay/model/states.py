"""Order and payment transitions.

Every status change on `orders` and `payments` goes through this module.
Each transition is one conditional UPDATE ("set X only if currently Y")
and reports through its return value whether it fired, so concurrent
webhooks, sweeps and polling requests cannot overwrite each other.
Callers run these inside their own transaction.
"""
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import IllegalTransition, InvalidRequest, NotFound
from ..helpers import new_order_number, now_ts
from .db import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_CONFIRMED,
    ORDER_DELIVERED,
    ORDER_IN_PROGRESS,
    ORDER_PENDING,
    PAY_FAILED,
    PAY_PAID,
    PAY_PENDING,
    PAY_REFUNDED,
    PAY_VOID,
    PAYMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    CheckoutEmailVerification,
    Order,
    Payment,
)

log = structlog.get_logger(__name__)

_NOSYNC = {"synchronize_session": False}

# admin driven progression once an order is paid
ORDER_EDGES = {
    ORDER_PENDING: {ORDER_CONFIRMED},
    ORDER_CONFIRMED: {ORDER_IN_PROGRESS},
    ORDER_IN_PROGRESS: {ORDER_COMPLETED, ORDER_DELIVERED},
    ORDER_COMPLETED: {ORDER_DELIVERED},
}
# statuses the delivery email moves to delivered
_DELIVERABLE = (ORDER_CONFIRMED, ORDER_IN_PROGRESS, ORDER_COMPLETED)


async def _update(db: AsyncSession, stmt) -> int:
    result = await db.execute(stmt.execution_options(**_NOSYNC))
    return result.rowcount


async def get_order(db: AsyncSession, order_id: str) -> Optional[Order]:
    return await db.get(Order, order_id, populate_existing=True)


async def get_payment(db: AsyncSession, payment_id: str) -> Optional[Payment]:
    return await db.get(Payment, payment_id, populate_existing=True)


async def find_payment(db: AsyncSession, ref: str) -> Optional[Payment]:
    """Look a payment up by provider payment id, then by our own id."""
    result = await db.execute(
        select(Payment)
        .where(or_(Payment.provider_payment_id == ref, Payment.id == ref))
        .execution_options(populate_existing=True)
    )
    rows = result.scalars().all()
    for p in rows:
        if p.provider_payment_id == ref:
            return p
    return rows[0] if rows else None


async def email_proven_at(db: AsyncSession, order_ref: str, email: str,
                          since: float = 0.0) -> Optional[float]:
    """When a checkout code for this reference and address was last used."""
    return (await db.execute(
        select(func.max(CheckoutEmailVerification.used_at))
        .where(CheckoutEmailVerification.order_ref == order_ref,
               CheckoutEmailVerification.email == email,
               CheckoutEmailVerification.is_used.is_(True),
               CheckoutEmailVerification.used_at >= since)
    )).scalar()


# ----------------------------
# Order transitions
# ----------------------------
async def mark_order_paid(db: AsyncSession, order_id: str,
                          payment_id: Optional[str] = None,
                          now: Optional[float] = None) -> bool:
    """pending|failed -> paid, assigning the order number.

    A second call on a paid order matches no row: the order number is not
    regenerated and the caller sees False.
    """
    now = now or now_ts()
    number = new_order_number(datetime.fromtimestamp(now, tz=timezone.utc))
    stmt = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status.in_((PAY_PENDING, PAY_FAILED)),
            Order.status.in_((ORDER_PENDING, ORDER_CONFIRMED)),
        )
        .values(
            payment_status=PAY_PAID,
            status=ORDER_IN_PROGRESS,
            order_number=func.coalesce(Order.order_number, number),
            payment_id=func.coalesce(payment_id, Order.payment_id),
            paid_at=now,
            updated_at=now,
        )
    )
    fired = await _update(db, stmt) == 1
    if fired:
        log.info("order.paid", order_id=order_id, payment_id=payment_id)
    return fired


async def mark_order_payment_failed(db: AsyncSession, order_id: str,
                                    now: Optional[float] = None) -> bool:
    """Back to pending so the customer can retry the payment."""
    now = now or now_ts()
    stmt = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status.in_((PAY_PENDING, PAY_FAILED)),
            Order.status.in_((ORDER_PENDING, ORDER_CONFIRMED)),
        )
        .values(payment_status=PAY_FAILED, status=ORDER_PENDING,
                updated_at=now)
    )
    return await _update(db, stmt) == 1


async def cancel_order(db: AsyncSession, order_id: str, reason: str = "",
                       now: Optional[float] = None) -> str:
    """Cancel an order; returns the resulting payment status.

    Paid orders become refunded. Orders that never collected money become
    void instead of pretending a refund happened.
    """
    now = now or now_ts()
    common = dict(status=ORDER_CANCELLED, cancelled_at=now, updated_at=now,
                  cancel_reason=reason or None)
    paid = (
        update(Order)
        .where(Order.id == order_id, Order.payment_status == PAY_PAID,
               Order.status != ORDER_CANCELLED)
        .values(payment_status=PAY_REFUNDED, **common)
    )
    if await _update(db, paid) == 1:
        return PAY_REFUNDED
    unpaid = (
        update(Order)
        .where(Order.id == order_id,
               Order.payment_status.in_((PAY_PENDING, PAY_FAILED)),
               Order.status != ORDER_CANCELLED)
        .values(payment_status=PAY_VOID, **common)
    )
    if await _update(db, unpaid) == 1:
        return PAY_VOID

    order = await get_order(db, order_id)
    if order is None:
        raise NotFound("order not found")
    raise IllegalTransition(
        f"cannot cancel order in {order.status}/{order.payment_status}"
    )


async def advance_order_status(db: AsyncSession, order_id: str, to: str,
                               now: Optional[float] = None) -> None:
    now = now or now_ts()
    sources = [s for s, targets in ORDER_EDGES.items() if to in targets]
    if not sources:
        raise InvalidRequest(f"unknown target status {to!r}")
    conds = [Order.id == order_id, Order.status.in_(sources)]
    if to != ORDER_CONFIRMED:
        conds.append(Order.payment_status == PAY_PAID)
    values = dict(status=to, updated_at=now)
    if to == ORDER_DELIVERED:
        values["delivered_at"] = func.coalesce(Order.delivered_at, now)
    stmt = update(Order).where(*conds).values(**values)
    if await _update(db, stmt) == 1:
        return
    order = await get_order(db, order_id)
    if order is None:
        raise NotFound("order not found")
    raise IllegalTransition(
        f"cannot move order from {order.status} to {to}"
    )


async def claim_delivery_email(db: AsyncSession, order_id: str, lease: float,
                               now: Optional[float] = None) -> Optional[float]:
    """Take the send lease on a paid, numbered, not yet emailed order.

    Returns the claim timestamp, or None when someone else holds the lease
    or the order is not eligible.
    """
    now = now or now_ts()
    stmt = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.delivery_email_sent.is_(False),
            Order.payment_status == PAY_PAID,
            Order.order_number.is_not(None),
            or_(Order.email_claimed_at.is_(None),
                Order.email_claimed_at < now - lease),
        )
        .values(email_claimed_at=now)
    )
    return now if await _update(db, stmt) == 1 else None


async def release_delivery_email(db: AsyncSession, order_id: str,
                                 claimed_at: float) -> None:
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.email_claimed_at == claimed_at,
               Order.delivery_email_sent.is_(False))
        .values(email_claimed_at=None)
    )
    await _update(db, stmt)


async def mark_delivered(db: AsyncSession, order_id: str, via: str,
                         now: Optional[float] = None) -> bool:
    """Record the confirmed send. Only the first call flips the flag."""
    now = now or now_ts()
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.delivery_email_sent.is_(False))
        .values(
            delivery_email_sent=True,
            email_sent_via=via,
            delivered_at=now,
            status=case(
                (Order.status.in_(_DELIVERABLE), ORDER_DELIVERED),
                else_=Order.status,
            ),
            updated_at=now,
        )
    )
    return await _update(db, stmt) == 1


# ----------------------------
# Payment transitions
# ----------------------------
async def mark_payment_processing(db: AsyncSession, payment_id: str,
                                  provider_status: str = "APPROVED",
                                  now: Optional[float] = None) -> bool:
    now = now or now_ts()
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
        .values(status=PAYMENT_PROCESSING, provider_status=provider_status,
                updated_at=now)
    )
    return await _update(db, stmt) == 1


async def mark_payment_succeeded(db: AsyncSession, payment_id: str, *,
                                 event_id: Optional[str] = None,
                                 capture_id: Optional[str] = None,
                                 payer: Optional[dict] = None,
                                 now: Optional[float] = None) -> bool:
    """Set succeeded plus the webhook-confirmed marker.

    Only the verified webhook dispatcher may call this. A capture that
    completes after an earlier denial still wins: the money moved.
    """
    now = now or now_ts()
    stmt = (
        update(Payment)
        .where(
            Payment.id == payment_id,
            Payment.status.in_(
                (PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_FAILED)
            ),
        )
        .values(
            status=PAYMENT_SUCCEEDED,
            provider_status="COMPLETED",
            webhook_received=True,
            webhook_received_at=func.coalesce(
                Payment.webhook_received_at, now
            ),
            webhook_confirmed=True,
            webhook_confirmed_at=now,
            last_event_id=event_id,
            capture_id=capture_id,
            payer=payer,
            failure_reason=None,
            updated_at=now,
        )
    )
    fired = await _update(db, stmt) == 1
    if fired:
        log.info("payment.succeeded", payment_id=payment_id,
                 event_id=event_id)
    return fired


async def mark_payment_failed(db: AsyncSession, payment_id: str,
                              reason: str = "",
                              now: Optional[float] = None) -> bool:
    now = now or now_ts()
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id,
               Payment.status.in_((PAYMENT_PENDING, PAYMENT_PROCESSING)))
        .values(status=PAYMENT_FAILED, failure_reason=reason or None,
                provider_status="DENIED", updated_at=now)
    )
    return await _update(db, stmt) == 1


async def mark_payment_cancelled(db: AsyncSession, payment_id: str,
                                 now: Optional[float] = None) -> bool:
    now = now or now_ts()
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id,
               Payment.status.in_((PAYMENT_PENDING, PAYMENT_PROCESSING)))
        .values(status=PAYMENT_CANCELLED, updated_at=now)
    )
    return await _update(db, stmt) == 1


async def refund_payment(db: AsyncSession, payment_id: str,
                         amount: Optional[int] = None,
                         now: Optional[float] = None) -> Payment:
    """Record a (partial) refund of a succeeded payment.

    A full refund moves the payment to refunded, after which it is
    immutable.
    """
    now = now or now_ts()
    payment = await get_payment(db, payment_id)
    if payment is None:
        raise NotFound("payment not found")
    if payment.status != PAYMENT_SUCCEEDED:
        raise IllegalTransition(
            f"cannot refund a payment in status {payment.status}"
        )
    already = payment.refund_amount or 0
    remaining = payment.amount - already
    amount = remaining if amount is None else int(amount)
    if amount <= 0 or amount > remaining:
        raise InvalidRequest("refund amount exceeds the refundable balance",
                             remaining=remaining)
    full = already + amount == payment.amount
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id,
               Payment.status == PAYMENT_SUCCEEDED,
               Payment.refund_amount == already)
        .values(
            refund_amount=already + amount,
            refunded_at=now,
            status=PAYMENT_REFUNDED if full else PAYMENT_SUCCEEDED,
            updated_at=now,
        )
    )
    if await _update(db, stmt) != 1:
        raise IllegalTransition("payment changed while refunding")
    log.info("payment.refunded", payment_id=payment_id, amount=amount,
             full=full)
    return await get_payment(db, payment_id)


async def mark_webhook_received(db: AsyncSession, payment_id: str,
                                event_id: Optional[str] = None,
                                provider_status: Optional[str] = None,
                                now: Optional[float] = None) -> None:
    now = now or now_ts()
    values = dict(
        webhook_received=True,
        webhook_received_at=func.coalesce(Payment.webhook_received_at, now),
        last_event_id=func.coalesce(event_id, Payment.last_event_id),
        updated_at=now,
    )
    if provider_status:
        values["provider_status"] = provider_status
    await _update(db, update(Payment).where(Payment.id == payment_id)
                  .values(**values))


async def mark_user_returned(db: AsyncSession, payment_id: str,
                             now: Optional[float] = None) -> None:
    now = now or now_ts()
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id)
        .values(user_returned_at=func.coalesce(Payment.user_returned_at, now))
    )
    await _update(db, stmt)


async def attach_order(db: AsyncSession, payment_id: str, order_id: str,
                       context: dict, now: Optional[float] = None) -> bool:
    """Point a payment at its order; only the first writer wins."""
    now = now or now_ts()
    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.order_id.is_(None))
        .values(order_id=order_id, context=context, updated_at=now)
    )
    return await _update(db, stmt) == 1


def order_payment_is_live(order_id_col):
    """SQL predicate: some payment for this order succeeded or is in flight."""
    return (
        select(Payment.id)
        .where(
            Payment.order_id == order_id_col,
            or_(
                Payment.status.in_((PAYMENT_SUCCEEDED, PAYMENT_PROCESSING,
                                    PAYMENT_REFUNDED)),
                Payment.webhook_confirmed.is_(True),
            ),
        )
        .correlate(Order)
        .exists()
    )


def payment_ref_is_live(payment_id_col):
    return (
        select(Payment.id)
        .where(
            and_(
                Payment.id == payment_id_col,
                Payment.status.in_((PAYMENT_SUCCEEDED, PAYMENT_PROCESSING,
                                    PAYMENT_REFUNDED)),
            )
        )
        .correlate(Order)
        .exists()
    )


async def link_payment(db: AsyncSession, order_id: str, payment_id: str,
                       now: Optional[float] = None) -> bool:
    """Point an unpaid order at its latest payment attempt."""
    now = now or now_ts()
    stmt = (
        update(Order)
        .where(Order.id == order_id,
               Order.payment_status.in_((PAY_PENDING, PAY_FAILED)))
        .values(payment_id=payment_id, updated_at=now)
    )
    return await _update(db, stmt) == 1
