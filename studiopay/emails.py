"""Confirmation email delivery guarantee.

Three paths try to deliver the order confirmation: the webhook right after
the capture is confirmed, a delayed fallback after the customer returns
from the provider, and a periodic sweep. All of them go through
`EmailGuarantee.ensure_sent`, the only place that sends the confirmation.
It takes a lease on the order with a conditional update, sends, and only
then sets `delivery_email_sent`. A failed send releases the lease so the
next path can retry.

Fallback timers are stored as `email_jobs` rows. The in-process asyncio
timer only runs them early; the sweep picks up whatever a restart lost.
"""
import asyncio
from typing import Optional

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from . import config
from .delivery import resolve_delivery_links
from .errors import StudioPayError
from .helpers import now_ts, to_iso, to_major
from .infra.sql import Database
from .mailer import Mailer
from .materializer import materialize
from .model import catalog, states
from .model.db import (
    PAY_PAID,
    PAYMENT_SUCCEEDED,
    EmailJob,
    Order,
    Payment,
)

log = structlog.get_logger(__name__)

SENT = "sent"
ALREADY_SENT = "already_sent"
IN_FLIGHT = "in_flight"
NOT_READY = "not_ready"
FAILED = "failed"


def confirmation_data(order: Order, links: list, is_placeholder: bool,
                      customer_name: str = "") -> dict:
    return {
        "orderNumber": order.order_number,
        "customerName": customer_name or order.guest_name or "",
        "items": [
            {
                "title": (it.get("title") or {}).get("en", ""),
                "titleAr": (it.get("title") or {}).get("ar", ""),
                "quantity": it.get("quantity"),
                "price": to_major(it.get("price")),
            }
            for it in order.items or []
        ],
        "subtotal": to_major(order.subtotal),
        "tax": to_major(order.tax),
        "total": to_major(order.total),
        "currency": order.currency,
        "orderDate": to_iso(order.paid_at or order.created_at),
        "notes": order.notes or "",
        "description": order.description or "",
        "deliveryLinks": links,
        "isPlaceholder": is_placeholder,
    }


class EmailGuarantee:

    def __init__(self, db: Database, mailer: Mailer, *,
                 lease: float = config.EMAIL_CLAIM_LEASE_SECONDS,
                 fallback_delay: float = config.FALLBACK_EMAIL_DELAY_SECONDS,
                 sweep_window: float = config.EMAIL_SWEEP_WINDOW_SECONDS,
                 sweep_interval: float = config.EMAIL_SWEEP_INTERVAL_SECONDS
                 ) -> None:
        self.db = db
        self.mailer = mailer
        self.lease = lease
        self.fallback_delay = fallback_delay
        self.sweep_window = sweep_window
        self.sweep_interval = sweep_interval
        self._timers: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None

    # ----------------------------
    # the single send funnel
    # ----------------------------
    async def ensure_sent(self, order_id: str, via: str) -> str:
        now = now_ts()
        async with self.db.tx() as db:
            claimed_at = await states.claim_delivery_email(
                db, order_id, self.lease, now
            )
            if claimed_at is None:
                order = await states.get_order(db, order_id)
                outcome = self._why_not(order)
                log.debug("email.skipped", order_id=order_id, via=via,
                          outcome=outcome)
                return outcome
            order = await states.get_order(db, order_id)
            services = await catalog.services_by_id(
                db, [it.get("service_id") for it in order.items or []]
            )
            user = await catalog.get_user(db, order.user_id)

        to = order.guest_email or (user.email if user else "") \
            or order.payer_email
        try:
            if not to:
                raise StudioPayError("order has no recipient address")
            links, placeholder = resolve_delivery_links(order, services)
            data = confirmation_data(order, links, placeholder,
                                     user.name if user else "")
            sent = await self.mailer.send(to, "order-confirmation", data)
        except Exception:
            log.exception("email.send_failed", order_id=order_id, via=via)
            async with self.db.tx() as db:
                await states.release_delivery_email(db, order_id, claimed_at)
            return FAILED

        async with self.db.tx() as db:
            await states.mark_delivered(db, order_id, via)
        log.info("email.sent", order_id=order_id, via=via, to=to,
                 order_number=order.order_number,
                 message_id=sent.get("message_id"))
        return SENT

    @staticmethod
    def _why_not(order: Optional[Order]) -> str:
        if order is None:
            return NOT_READY
        if order.delivery_email_sent:
            return ALREADY_SENT
        if order.payment_status != PAY_PAID or not order.order_number:
            return NOT_READY
        return IN_FLIGHT

    # ----------------------------
    # delayed fallback
    # ----------------------------
    async def schedule_fallback(self, payment_id: str,
                                delay: Optional[float] = None) -> bool:
        """Queue the delayed send once; later calls keep the first job."""
        delay = self.fallback_delay if delay is None else delay
        now = now_ts()
        values = dict(payment_id=payment_id, due_at=now + delay, attempts=0,
                      created_at=now)
        async with self.db.tx() as db:
            insert = pg_insert if self.db.is_postgres else sqlite_insert
            # an existing job keeps its due time
            created = (await db.execute(
                insert(EmailJob).values(**values)
                .on_conflict_do_nothing(index_elements=["payment_id"])
                .returning(EmailJob.payment_id)
            )).first() is not None
        if not created:
            return False
        task = asyncio.create_task(self._fire_later(payment_id, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        return True

    async def _fire_later(self, payment_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.run_job(payment_id)
        except Exception:
            log.exception("email.fallback_failed", payment_id=payment_id)

    async def run_job(self, payment_id: str) -> str:
        now = now_ts()
        async with self.db.tx() as db:
            job = await db.get(EmailJob, payment_id, populate_existing=True)
            if job is None:
                return ALREADY_SENT
            payment = await states.get_payment(db, payment_id)
            confirmed = (
                payment is not None and payment.webhook_confirmed
                and payment.status == PAYMENT_SUCCEEDED
            )
            if not confirmed:
                if payment is None or now - job.created_at > \
                        config.EMAIL_JOB_EXPIRY_SECONDS:
                    await db.delete(job)
                    log.info("email.job_expired", payment_id=payment_id)
                    return NOT_READY
                job.attempts += 1
                job.due_at = now + self.sweep_interval
                job.last_outcome = NOT_READY
                return NOT_READY

        order = await materialize(self.db, payment_id)
        outcome = await self.ensure_sent(order.id, via="fallback")
        async with self.db.tx() as db:
            job = await db.get(EmailJob, payment_id, populate_existing=True)
            if job is not None:
                if outcome == FAILED:
                    job.attempts += 1
                    job.due_at = now_ts() + self.sweep_interval
                    job.last_outcome = outcome
                else:
                    await db.delete(job)
        return outcome

    async def run_due_jobs(self, now: Optional[float] = None) -> dict:
        now = now or now_ts()
        async with self.db.tx() as db:
            result = await db.execute(
                select(EmailJob.payment_id).where(EmailJob.due_at <= now)
            )
            due = list(result.scalars().all())
        outcomes = {}
        for payment_id in due:
            try:
                outcomes[payment_id] = await self.run_job(payment_id)
            except Exception:
                log.exception("email.job_failed", payment_id=payment_id)
                outcomes[payment_id] = FAILED
        return outcomes

    # ----------------------------
    # periodic sweep
    # ----------------------------
    async def repair_unmaterialized(self) -> int:
        """Materialize confirmed payments a crash left without an order."""
        async with self.db.tx() as db:
            result = await db.execute(
                select(Payment.id).where(
                    Payment.webhook_confirmed.is_(True),
                    Payment.status == PAYMENT_SUCCEEDED,
                    Payment.order_id.is_(None),
                )
            )
            orphans = list(result.scalars().all())
        repaired = 0
        for payment_id in orphans:
            try:
                await materialize(self.db, payment_id)
                repaired += 1
            except Exception:
                log.exception("email.repair_failed", payment_id=payment_id)
        if orphans:
            log.warning("email.repaired_orphans", count=repaired,
                        found=len(orphans))
        return repaired

    async def sweep_unsent(self, now: Optional[float] = None) -> dict:
        now = now or now_ts()
        async with self.db.tx() as db:
            result = await db.execute(
                select(Order.id).where(
                    Order.payment_status == PAY_PAID,
                    Order.delivery_email_sent.is_(False),
                    Order.paid_at >= now - self.sweep_window,
                ).order_by(Order.paid_at)
            )
            pending = list(result.scalars().all())
        outcomes = {}
        for order_id in pending:
            outcomes[order_id] = await self.ensure_sent(order_id, via="sweep")
        return outcomes

    async def sweep(self) -> dict:
        repaired = await self.repair_unmaterialized()
        jobs = await self.run_due_jobs()
        unsent = await self.sweep_unsent()
        summary = {
            "repaired": repaired,
            "jobs": len(jobs),
            "checked": len(unsent),
            "sent": sum(1 for o in unsent.values() if o == SENT),
            "failed": sum(1 for o in unsent.values() if o == FAILED),
        }
        if summary["checked"] or summary["jobs"] or repaired:
            log.info("email.sweep", **summary)
        return summary

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                log.exception("email.sweep_failed")

    async def start(self) -> None:
        # one sweep on boot covers timers lost by the previous process
        try:
            await self.sweep()
        except Exception:
            log.exception("email.sweep_failed")
        self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        tasks = list(self._timers)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def purge_jobs_for(db, payment_id: str) -> None:
    await db.execute(delete(EmailJob).where(EmailJob.payment_id == payment_id))
