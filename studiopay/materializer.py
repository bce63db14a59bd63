"""Turn a confirmed payment into exactly one permanent order.

The payment carries either a pointer to a persisted order or the snapshot
of a temporary checkout. The snapshot is re-priced against the catalog,
written as an order, marked paid and linked back to the payment in one
transaction. The link is a conditional update on `payments.order_id IS
NULL`, so a concurrent duplicate loses, rolls back its order and returns
the winner's order instead.
"""
import structlog

from . import config
from .errors import InvalidRequest, NotFound
from .helpers import new_id, now_ts
from .infra.sql import Database
from .model import catalog, states
from .model.context import (
    PermanentOrderContext,
    TemporaryOrderContext,
    dump_context,
)
from .model.db import (
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    Order,
    Payment,
)
from .pricing import price_items, requested_items

log = structlog.get_logger(__name__)

FALLBACK_TITLE = {"en": "Design service order", "ar": "طلب خدمة تصميم"}


class _LostRace(Exception):
    def __init__(self, order_id: str) -> None:
        super().__init__(order_id)
        self.order_id = order_id


def fallback_items(payment: Payment) -> list:
    return [{
        "service_id": None,
        "title": dict(FALLBACK_TITLE),
        "quantity": 1,
        "price": payment.amount,
        "currency": payment.currency,
    }]


async def _build_order(db, payment: Payment,
                       ctx: TemporaryOrderContext, now: float) -> Order:
    services = await catalog.services_by_id(
        db, [it.service_id for it in ctx.items]
    )
    items, skipped = price_items(
        [(it.service_id, it.quantity) for it in ctx.items],
        services, ctx.currency,
    )
    needs_review = False
    if not items:
        log.warning("materializer.fallback_item", payment_id=payment.id,
                    temp_order_id=ctx.temp_order_id, skipped=skipped,
                    amount=payment.amount)
        items = fallback_items(payment)
        needs_review = True

    # payer email reported by the provider first, then checkout contact
    user = await catalog.find_user_by_email(db, payment.payer_email)
    if user is None:
        user = await catalog.find_user_by_email(db, ctx.guest.email)
    proven_at = None
    if ctx.guest.email:
        proven_at = await states.email_proven_at(
            db, ctx.temp_order_id, ctx.guest.email
        )

    order = Order(
        id=new_id(),
        user_id=user.id if user is not None else None,
        guest_name=ctx.guest.name or (user.name if user else None),
        guest_email=ctx.guest.email or (user.email if user else None),
        guest_phone=ctx.guest.phone or None,
        currency=items[0]["currency"],
        notes=ctx.notes,
        description=ctx.description,
        payer_email=payment.payer_email or None,
        needs_review=needs_review,
        email_verified=proven_at is not None,
        email_verified_at=proven_at,
        created_at=now,
        updated_at=now,
    )
    order.set_items(items)
    return order


async def materialize(database: Database, payment_id: str) -> Order:
    """Return the permanent order for a confirmed payment, creating it once."""
    try:
        async with database.tx() as db:
            payment = await states.get_payment(db, payment_id)
            if payment is None:
                raise NotFound("payment not found")
            if not payment.webhook_confirmed or payment.status not in (
                PAYMENT_SUCCEEDED, PAYMENT_REFUNDED
            ):
                raise InvalidRequest("payment is not webhook-confirmed")

            now = now_ts()
            if payment.order_id:
                # persisted order or already materialized
                await states.mark_order_paid(db, payment.order_id,
                                             payment.id, now)
                order = await states.get_order(db, payment.order_id)
                if order is None:
                    raise NotFound("order referenced by payment is gone")
                return order

            ctx = payment.ctx
            if isinstance(ctx, PermanentOrderContext):
                order_id = ctx.order_id
                await states.attach_order(db, payment.id, order_id,
                                          dump_context(ctx), now)
                await states.mark_order_paid(db, order_id, payment.id, now)
                order = await states.get_order(db, order_id)
                if order is None:
                    raise NotFound("order referenced by payment is gone")
                return order
            if not isinstance(ctx, TemporaryOrderContext):
                raise InvalidRequest("payment carries no order context")

            order = await _build_order(db, payment, ctx, now)
            order.payment_id = payment.id
            db.add(order)
            await db.flush()
            await states.mark_order_paid(db, order.id, payment.id, now)

            linked = await states.attach_order(
                db, payment.id, order.id,
                dump_context(PermanentOrderContext(
                    order_id=order.id, temp_order_id=ctx.temp_order_id,
                )),
                now,
            )
            if not linked:
                # a concurrent delivery materialized first; roll ours back
                winner = await states.get_payment(db, payment.id)
                raise _LostRace(winner.order_id)
            await catalog.bump_order_counts(db, order.items)
            order = await states.get_order(db, order.id)
    except _LostRace as lost:
        log.info("materializer.lost_race", payment_id=payment_id,
                 order_id=lost.order_id)
        async with database.tx() as db:
            order = await states.get_order(db, lost.order_id)
        if order is None:
            raise NotFound("materialized order vanished")
        return order

    log.info("materializer.created", payment_id=payment_id,
             order_id=order.id, order_number=order.order_number,
             total=order.total, currency=order.currency)
    return order


def temporary_context(temp_order_id: str,
                      order_data: dict) -> TemporaryOrderContext:
    """Snapshot of a temporary checkout as it is stored on the payment."""
    if not temp_order_id.startswith(config.TEMP_ORDER_PREFIX):
        raise InvalidRequest("temporary order ids start with "
                             f"{config.TEMP_ORDER_PREFIX!r}")
    if not isinstance(order_data, dict):
        raise InvalidRequest("orderData must be an object")
    requested = requested_items(order_data.get("items") or [])
    try:
        guest = order_data.get("customerInfo") or order_data.get("guest") or {}
        return TemporaryOrderContext(
            temp_order_id=temp_order_id,
            items=[{"service_id": sid, "quantity": quantity}
                   for sid, quantity in requested],
            currency=(order_data.get("currency") or "SAR").upper(),
            guest={
                "name": guest.get("name") or "",
                "email": (guest.get("email") or "").strip().lower(),
                "phone": guest.get("phone") or "",
            },
            notes=order_data.get("notes") or "",
            description=order_data.get("description") or "",
        )
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidRequest(f"invalid order data: {e}")
