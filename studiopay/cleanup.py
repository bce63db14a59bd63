"""Stale record cleanup.

Two sweeps reclaim abandoned checkouts: unpaid orders older than a
threshold and failed, cancelled or stale pending payments. Candidates are
listed first, then every delete repeats the full eligibility predicate in
its own WHERE clause, in its own transaction. A webhook that lands between
listing and deleting makes the predicate false and the row survives.

References are cleaned in the same transaction as the delete: removing an
order removes its remaining payments, removing a payment clears the
`orders.payment_id` that pointed at it. An order delete that would leave
a live payment behind rolls back as a whole.
"""
import asyncio
import time
from typing import Optional

import structlog
from sqlalchemy import delete, func, not_, select, update

from . import config
from .emails import purge_jobs_for
from .helpers import now_ts, to_iso
from .infra.sql import Database
from .logs import audit
from .mailer import Mailer
from .model.db import (
    ORDER_PENDING,
    PAY_FAILED,
    PAY_PENDING,
    PAYMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    PAYMENT_SUCCEEDED,
    Order,
    Payment,
)
from .model.states import order_payment_is_live, payment_ref_is_live

log = structlog.get_logger(__name__)

_NOSYNC = {"synchronize_session": False}


def _cutoff(hours: float, now: float) -> float:
    return now - hours * 3600


def stale_order_predicate(cutoff: float):
    return (
        Order.status == ORDER_PENDING,
        Order.payment_status.in_((PAY_PENDING, PAY_FAILED)),
        Order.created_at < cutoff,
        not_(order_payment_is_live(Order.id)),
        not_(payment_ref_is_live(Order.payment_id)),
    )


def stale_payment_predicate(cutoff: float):
    return (
        Payment.status.in_(
            (PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_PENDING)
        ),
        Payment.created_at < cutoff,
        Payment.webhook_confirmed.is_(False),
    )


def dead_payment_predicate():
    return (
        Payment.status.notin_(
            (PAYMENT_SUCCEEDED, PAYMENT_PROCESSING, PAYMENT_REFUNDED)
        ),
        Payment.webhook_confirmed.is_(False),
    )


class _PaymentLive(Exception):
    """Rolls back an order delete that would orphan a live payment."""


class CleanupService:

    def __init__(self, db: Database, mailer: Mailer, *,
                 admin_email: str = config.ADMIN_EMAIL) -> None:
        self.db = db
        self.mailer = mailer
        self.admin_email = admin_email

    # ----------------------------
    # sweeps
    # ----------------------------
    async def cleanup_pending_orders(
        self, hours: float = config.ORDER_CLEANUP_HOURS,
        now: Optional[float] = None,
    ) -> dict:
        now = now or now_ts()
        cutoff = _cutoff(hours, now)
        async with self.db.tx() as db:
            result = await db.execute(
                select(Order.id).where(*stale_order_predicate(cutoff))
            )
            candidates = list(result.scalars().all())

        deleted, errors = [], []
        for order_id in candidates:
            try:
                async with self.db.tx() as db:
                    # lock the payments first so a capture cannot commit
                    # between the order delete and the payment delete
                    orphaned = await db.execute(
                        select(Payment.id)
                        .where(Payment.order_id == order_id)
                        .with_for_update()
                    )
                    payment_ids = list(orphaned.scalars().all())
                    gone = await db.execute(
                        delete(Order)
                        .where(Order.id == order_id,
                               *stale_order_predicate(cutoff))
                        .execution_options(**_NOSYNC)
                    )
                    if gone.rowcount != 1:
                        log.info("cleanup.order_skipped", order_id=order_id)
                        continue
                    for payment_id in payment_ids:
                        await purge_jobs_for(db, payment_id)
                    await db.execute(
                        delete(Payment)
                        .where(Payment.order_id == order_id,
                               *dead_payment_predicate())
                        .execution_options(**_NOSYNC)
                    )
                    kept = (await db.execute(
                        select(func.count()).select_from(Payment)
                        .where(Payment.order_id == order_id)
                    )).scalar_one()
                    if kept:
                        raise _PaymentLive(order_id)
                deleted.append(order_id)
            except _PaymentLive:
                log.warning("cleanup.order_kept_live_payment",
                            order_id=order_id)
            except Exception as e:
                log.exception("cleanup.order_failed", order_id=order_id)
                errors.append(f"order {order_id}: {e}")

        if deleted:
            log.info("cleanup.orders.deleted", count=len(deleted),
                     hours=hours)
        return {"deleted": len(deleted), "ids": deleted, "errors": errors}

    async def cleanup_failed_payments(
        self, hours: float = config.PAYMENT_CLEANUP_HOURS,
        now: Optional[float] = None,
    ) -> dict:
        now = now or now_ts()
        cutoff = _cutoff(hours, now)
        async with self.db.tx() as db:
            result = await db.execute(
                select(Payment.id).where(*stale_payment_predicate(cutoff))
            )
            candidates = list(result.scalars().all())

        deleted, errors = [], []
        for payment_id in candidates:
            try:
                async with self.db.tx() as db:
                    gone = await db.execute(
                        delete(Payment)
                        .where(Payment.id == payment_id,
                               *stale_payment_predicate(cutoff))
                        .execution_options(**_NOSYNC)
                    )
                    if gone.rowcount != 1:
                        log.info("cleanup.payment_skipped",
                                 payment_id=payment_id)
                        continue
                    await db.execute(
                        update(Order)
                        .where(Order.payment_id == payment_id)
                        .values(payment_id=None, updated_at=now)
                        .execution_options(**_NOSYNC)
                    )
                    await purge_jobs_for(db, payment_id)
                deleted.append(payment_id)
            except Exception as e:
                log.exception("cleanup.payment_failed", payment_id=payment_id)
                errors.append(f"payment {payment_id}: {e}")

        if deleted:
            log.info("cleanup.payments.deleted", count=len(deleted),
                     hours=hours)
        return {"deleted": len(deleted), "ids": deleted, "errors": errors}

    async def full_cleanup(
        self, order_hours: float = config.ORDER_CLEANUP_HOURS,
        payment_hours: float = config.PAYMENT_CLEANUP_HOURS,
        now: Optional[float] = None,
    ) -> dict:
        started = time.monotonic()
        now = now or now_ts()
        # payments first: a deleted payment frees its order for the next pass
        payments = await self.cleanup_failed_payments(payment_hours, now)
        orders = await self.cleanup_pending_orders(order_hours, now)
        report = {
            "startedAt": to_iso(now),
            "ordersCleaned": orders["deleted"],
            "paymentsCleaned": payments["deleted"],
            "errors": payments["errors"] + orders["errors"],
            "durationMs": int((time.monotonic() - started) * 1000),
        }
        audit.info("cleanup.full", **report)
        if report["ordersCleaned"] or report["paymentsCleaned"]:
            await self._send_report(report)
        return report

    async def _send_report(self, report: dict) -> None:
        if not self.admin_email:
            return
        try:
            await self.mailer.send(self.admin_email, "admin-cleanup-report",
                                   report)
        except Exception:
            log.exception("cleanup.report_failed")

    # ----------------------------
    # read-only views
    # ----------------------------
    async def preview(self, hours: Optional[float] = None,
                      now: Optional[float] = None) -> dict:
        now = now or now_ts()
        order_hours = hours if hours is not None else config.ORDER_CLEANUP_HOURS
        payment_hours = (hours if hours is not None
                         else config.PAYMENT_CLEANUP_HOURS)
        async with self.db.tx() as db:
            orders = (await db.execute(
                select(Order.id, Order.status, Order.payment_status,
                       Order.total, Order.currency, Order.created_at)
                .where(*stale_order_predicate(_cutoff(order_hours, now)))
                .order_by(Order.created_at)
            )).mappings().all()
            payments = (await db.execute(
                select(Payment.id, Payment.status, Payment.order_id,
                       Payment.amount, Payment.currency, Payment.created_at)
                .where(*stale_payment_predicate(_cutoff(payment_hours, now)))
                .order_by(Payment.created_at)
            )).mappings().all()
        return {
            "orderHoursThreshold": order_hours,
            "paymentHoursThreshold": payment_hours,
            "orders": [
                {"id": r["id"], "status": r["status"],
                 "paymentStatus": r["payment_status"],
                 "total": r["total"], "currency": r["currency"],
                 "createdAt": to_iso(r["created_at"])}
                for r in orders
            ],
            "payments": [
                {"id": r["id"], "status": r["status"],
                 "orderId": r["order_id"], "amount": r["amount"],
                 "currency": r["currency"],
                 "createdAt": to_iso(r["created_at"])}
                for r in payments
            ],
            "counts": {"orders": len(orders), "payments": len(payments)},
        }

    async def stats(self, now: Optional[float] = None) -> dict:
        now = now or now_ts()
        order_cut = _cutoff(config.ORDER_CLEANUP_HOURS, now)
        payment_cut = _cutoff(config.PAYMENT_CLEANUP_HOURS, now)
        async with self.db.tx() as db:
            async def count(stmt):
                return (await db.execute(stmt)).scalar_one()

            pending_orders = await count(
                select(func.count()).select_from(Order)
                .where(Order.status == ORDER_PENDING)
            )
            stale_orders = await count(
                select(func.count()).select_from(Order)
                .where(*stale_order_predicate(order_cut))
            )
            failed_payments = await count(
                select(func.count()).select_from(Payment)
                .where(Payment.status.in_((PAYMENT_FAILED,
                                           PAYMENT_CANCELLED)))
            )
            pending_payments = await count(
                select(func.count()).select_from(Payment)
                .where(Payment.status == PAYMENT_PENDING)
            )
            stale_payments = await count(
                select(func.count()).select_from(Payment)
                .where(*stale_payment_predicate(payment_cut))
            )

        recommendations = []
        if stale_orders:
            recommendations.append(
                f"{stale_orders} pending orders are older than "
                f"{config.ORDER_CLEANUP_HOURS:g}h and can be cleaned"
            )
        if stale_payments:
            recommendations.append(
                f"{stale_payments} failed or stale payments are older than "
                f"{config.PAYMENT_CLEANUP_HOURS:g}h and can be cleaned"
            )
        return {
            "orders": {"pending": pending_orders, "stale": stale_orders},
            "payments": {"failedOrCancelled": failed_payments,
                         "pending": pending_payments,
                         "stale": stale_payments},
            "recommendations": recommendations,
        }


class CleanupScheduler:
    """Background loops: payments every 30 min, orders every 2 h, full daily."""

    def __init__(self, service: CleanupService, gate=None) -> None:
        self.service = service
        self.gate = gate
        self._tasks: list[asyncio.Task] = []

    async def _every(self, name: str, interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                log.exception("cleanup.job_failed", job=name)

    async def _daily(self) -> None:
        await self.service.full_cleanup()
        if self.gate is not None:
            await self.gate.purge_expired()

    def start(self) -> None:
        s = self.service
        self._tasks = [
            asyncio.create_task(self._every(
                "payments", 30 * 60,
                lambda: s.cleanup_failed_payments(hours=0.5))),
            asyncio.create_task(self._every(
                "orders", 2 * 3600,
                lambda: s.cleanup_pending_orders(
                    hours=config.ORDER_CLEANUP_HOURS))),
            asyncio.create_task(self._every("full", 24 * 3600, self._daily)),
        ]
        log.info("cleanup.scheduler_started")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
