import asyncio

from sqlalchemy import select

from studiopay import emails as email_mod
from studiopay.emails import EmailGuarantee
from studiopay.errors import EmailTransportFailure
from studiopay.helpers import new_order_number, now_ts
from studiopay.mailer import LogMailer
from studiopay.model import states
from studiopay.model.db import EmailJob, Order

from factories import make_order, make_payment, temp_context


class FlakyMailer(LogMailer):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    async def send(self, to, template, data):
        if self.failures > 0:
            self.failures -= 1
            raise EmailTransportFailure("smtp relay refused")
        return await super().send(to, template, data)


async def paid_order(db, paid_at=None, **kw):
    paid_at = paid_at or now_ts()
    order = make_order(payment_status="paid", status="in_progress",
                       order_number=new_order_number(), paid_at=paid_at, **kw)
    async with db.tx() as s:
        s.add(order)
    return order


async def load(db, model, key):
    async with db.tx() as s:
        return await s.get(model, key, populate_existing=True)


async def test_sends_exactly_once(db, catalog, emails, mailer):
    order = await paid_order(db)

    assert await emails.ensure_sent(order.id, via="webhook") == \
        email_mod.SENT
    assert await emails.ensure_sent(order.id, via="sweep") == \
        email_mod.ALREADY_SENT

    assert len(mailer.outbox) == 1
    mail = mailer.outbox[0]
    assert mail["to"] == "guest@example.com"
    assert mail["data"]["orderNumber"] == order.order_number
    assert mail["subject"] == f"Your order {order.order_number} is confirmed"
    stored = await load(db, Order, order.id)
    assert stored.delivery_email_sent is True
    assert stored.email_sent_via == "webhook"
    assert stored.status == "delivered"


async def test_concurrent_paths_send_once(db, catalog, emails, mailer):
    order = await paid_order(db)

    outcomes = await asyncio.gather(
        emails.ensure_sent(order.id, via="webhook"),
        emails.ensure_sent(order.id, via="fallback"),
        emails.ensure_sent(order.id, via="sweep"),
        emails.ensure_sent(order.id, via="sweep"),
    )

    assert outcomes.count(email_mod.SENT) == 1
    assert set(outcomes) <= {email_mod.SENT, email_mod.IN_FLIGHT,
                             email_mod.ALREADY_SENT}
    assert len(mailer.outbox) == 1


async def test_unpaid_order_is_not_ready(db, catalog, emails, mailer):
    order = make_order()
    async with db.tx() as s:
        s.add(order)
    assert await emails.ensure_sent(order.id, via="sweep") == \
        email_mod.NOT_READY
    assert await emails.ensure_sent("missing", via="sweep") == \
        email_mod.NOT_READY
    assert not mailer.outbox


async def test_failed_send_releases_lease(db, catalog):
    mailer = FlakyMailer(failures=1)
    guarantee = EmailGuarantee(db, mailer)
    order = await paid_order(db)

    assert await guarantee.ensure_sent(order.id, via="webhook") == \
        email_mod.FAILED
    stored = await load(db, Order, order.id)
    assert stored.delivery_email_sent is False
    assert stored.email_claimed_at is None

    assert await guarantee.ensure_sent(order.id, via="sweep") == \
        email_mod.SENT
    assert len(mailer.outbox) == 1
    assert (await load(db, Order, order.id)).email_sent_via == "sweep"


async def test_expired_lease_can_be_reclaimed(db, catalog, mailer):
    guarantee = EmailGuarantee(db, mailer, lease=60)
    order = await paid_order(db)
    async with db.tx() as s:
        assert await states.claim_delivery_email(s, order.id, 60,
                                                 now_ts() - 120)

    assert await guarantee.ensure_sent(order.id, via="sweep") == \
        email_mod.SENT


async def test_held_lease_blocks_other_senders(db, catalog, emails, mailer):
    order = await paid_order(db)
    async with db.tx() as s:
        assert await states.claim_delivery_email(s, order.id, 300)

    assert await emails.ensure_sent(order.id, via="sweep") == \
        email_mod.IN_FLIGHT
    assert not mailer.outbox


async def test_placeholder_link_when_service_has_none(db, catalog, emails,
                                                      mailer):
    order = await paid_order(db, items=[{
        "service_id": "svc-retired", "title": {"en": "Retired"},
        "quantity": 1, "price": 7000, "currency": "SAR",
    }])
    await emails.ensure_sent(order.id, via="webhook")
    data = mailer.outbox[0]["data"]
    assert data["isPlaceholder"] is True
    assert data["deliveryLinks"][0]["tags"] == ["placeholder"]


async def test_account_email_used_without_guest_email(db, catalog, emails,
                                                      mailer):
    order = await paid_order(db, email=None, user_id="user-1")
    await emails.ensure_sent(order.id, via="webhook")
    assert mailer.outbox[0]["to"] == "member@example.com"
    assert mailer.outbox[0]["data"]["customerName"] == "Member"


# ----------------------------
# fallback jobs
# ----------------------------
async def test_fallback_waits_for_webhook(db, catalog, emails, mailer):
    payment = make_payment(context=temp_context(), amount=17250)
    async with db.tx() as s:
        s.add(payment)

    await emails.schedule_fallback(payment.id, delay=3600)
    assert await emails.run_job(payment.id) == email_mod.NOT_READY
    job = await load(db, EmailJob, payment.id)
    assert job.attempts == 1
    assert job.last_outcome == email_mod.NOT_READY
    assert not mailer.outbox

    async with db.tx() as s:
        await states.mark_payment_succeeded(s, payment.id, event_id="WH-1")
    assert await emails.run_job(payment.id) == email_mod.SENT
    assert await load(db, EmailJob, payment.id) is None
    assert len(mailer.outbox) == 1
    assert await emails.run_job(payment.id) == email_mod.ALREADY_SENT


async def test_fallback_keeps_earliest_job(db, catalog, emails):
    payment = make_payment(context=temp_context())
    async with db.tx() as s:
        s.add(payment)

    assert await emails.schedule_fallback(payment.id, delay=10) is True
    first = (await load(db, EmailJob, payment.id)).due_at
    assert await emails.schedule_fallback(payment.id, delay=3600) is False
    assert await emails.schedule_fallback(payment.id, delay=3600) is False
    async with db.tx() as s:
        jobs = (await s.execute(select(EmailJob))).scalars().all()
    assert len(jobs) == 1
    assert jobs[0].due_at == first
    # one in-process timer per job, not one per call
    assert len(emails._timers) == 1


async def test_fallback_timer_fires(db, catalog, emails, mailer):
    payment = make_payment(context=temp_context(), status="succeeded",
                           webhook_confirmed=True, amount=17250)
    async with db.tx() as s:
        s.add(payment)

    await emails.schedule_fallback(payment.id, delay=0)
    await asyncio.gather(*list(emails._timers))

    assert len(mailer.outbox) == 1
    assert await load(db, EmailJob, payment.id) is None


async def test_stale_job_expires(db, catalog, emails):
    payment = make_payment(context=temp_context())
    async with db.tx() as s:
        s.add(payment)
    await emails.schedule_fallback(payment.id, delay=3600)
    async with db.tx() as s:
        job = await s.get(EmailJob, payment.id)
        job.created_at -= 2 * 86400

    assert await emails.run_job(payment.id) == email_mod.NOT_READY
    assert await load(db, EmailJob, payment.id) is None


async def test_due_jobs_run_on_sweep(db, catalog, emails, mailer):
    payment = make_payment(context=temp_context(), status="succeeded",
                           webhook_confirmed=True, amount=17250)
    async with db.tx() as s:
        s.add(payment)
    await emails.schedule_fallback(payment.id, delay=3600)

    assert await emails.run_due_jobs(now=now_ts()) == {}
    outcomes = await emails.run_due_jobs(now=now_ts() + 7200)
    assert outcomes == {payment.id: email_mod.SENT}
    assert len(mailer.outbox) == 1


# ----------------------------
# sweep
# ----------------------------
async def test_sweep_sends_recent_unsent(db, catalog, emails, mailer):
    recent = await paid_order(db)
    ancient = await paid_order(db, paid_at=now_ts() - 30 * 86400)

    outcomes = await emails.sweep_unsent()

    assert outcomes == {recent.id: email_mod.SENT}
    assert (await load(db, Order, ancient.id)).delivery_email_sent is False
    assert len(mailer.outbox) == 1


async def test_sweep_repairs_unmaterialized_payment(db, catalog, emails,
                                                    mailer):
    payment = make_payment(context=temp_context(), status="succeeded",
                           webhook_confirmed=True, amount=17250)
    async with db.tx() as s:
        s.add(payment)

    summary = await emails.sweep()

    assert summary["repaired"] == 1
    assert summary["sent"] == 1
    stored = await load(db, type(payment), payment.id)
    assert stored.order_id is not None
    assert mailer.outbox[0]["to"] == "guest@example.com"

    again = await emails.sweep()
    assert again["repaired"] == 0
    assert len(mailer.outbox) == 1
