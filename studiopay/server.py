from __future__ import annotations

import uuid
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import config
from .cleanup import CleanupScheduler, CleanupService
from .emails import EmailGuarantee
from .errors import (
    AlreadyProcessed,
    InvalidRequest,
    NotFound,
    RateLimited,
    StudioPayError,
    VerificationFailure,
)
from .helpers import ct_equal, is_valid_email, new_id, norm_email, now_ts
from .infra.sql import Database
from .logs import audit, configure_logging
from .mailer import Mailer, new_mailer
from .materializer import temporary_context
from .model import catalog, states
from .model.context import PermanentOrderContext, dump_context
from .model.db import (
    PAY_FAILED,
    PAY_PAID,
    PAY_PENDING,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    Base,
    Order,
    Payment,
)
from .model.gate import BACKEND as GATE_BACKEND, new_gate
from .pricing import (
    check_client_total,
    compute_totals,
    parse_amount,
    price_items,
    requested_items,
)
from .provider import PaymentGateway, new_gateway
from .verification import (
    require_verified_email,
    send_email_code,
    verify_email_code,
    verify_payment,
)
from .webhook import WebhookDispatcher, WebhookVerifier, handle_webhook

log = structlog.get_logger(__name__)

app = FastAPI(
    title="StudioPay",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)


def install_services(state, *, db: Database, gate, gateway: PaymentGateway,
                     mailer: Mailer, verifier: WebhookVerifier) -> None:
    """Wire the services onto app.state; used by startup and by tests."""
    state.db = db
    state.gate = gate
    state.gateway = gateway
    state.mailer = mailer
    state.verifier = verifier
    state.emails = EmailGuarantee(db, mailer)
    state.dispatcher = WebhookDispatcher(db, gateway, state.emails)
    state.cleanup = CleanupService(db, mailer)
    state.scheduler = CleanupScheduler(state.cleanup, gate)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _startup():
    configure_logging()
    config.validate()
    db = Database(config.DATABASE_URL)
    await db.create_all(Base.metadata)

    app.state.http = httpx.AsyncClient(
        timeout=config.PROVIDER_TIMEOUT_SECONDS,
        limits=httpx.Limits(max_connections=100,
                            max_keepalive_connections=20),
    )
    if GATE_BACKEND == "pg":
        from .model.gate._postgres import create_schema
        async with db.engine.begin() as conn:
            await create_schema(conn)
        gate = new_gate(db=db)
    else:
        app.state.redis = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
        gate = new_gate(r=app.state.redis)

    install_services(
        app.state, db=db, gate=gate,
        gateway=new_gateway(app.state.http),
        mailer=new_mailer(app.state.http),
        verifier=WebhookVerifier(app.state.http),
    )
    if config.EMAIL_GUARD_ENABLED:
        await app.state.emails.start()
    if config.CLEANUP_ENABLED:
        app.state.scheduler.start()
    log.info("studiopay.started", provider=config.PAYMENT_PROVIDER,
             paypal_mode=config.PAYPAL_MODE,
             webhook_mode=config.WEBHOOK_VERIFY_MODE, gate=GATE_BACKEND)


@app.on_event("shutdown")
async def _shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    emails = getattr(app.state, "emails", None)
    if emails is not None:
        await emails.stop()
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None
    db = getattr(app.state, "db", None)
    if db is not None:
        await db.dispose()


# ----------------------------
# Errors
# ----------------------------
@app.exception_handler(StudioPayError)
async def _studiopay_error(request: Request, exc: StudioPayError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return ORJSONResponse(exc.payload(), status_code=exc.http_status,
                          headers=headers)


# ----------------------------
# Dependencies
# ----------------------------
def get_db(request: Request) -> Database:
    return request.app.state.db


def get_gate(request: Request):
    return request.app.state.gate


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_emails(request: Request) -> EmailGuarantee:
    return request.app.state.emails


def get_cleanup(request: Request) -> CleanupService:
    return request.app.state.cleanup


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise HTTPException(status_code=403, detail="admin login required")


def client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def verify_rate_limit(request: Request, gate=Depends(get_gate)) -> None:
    allowed, retry_after = await gate.hit(
        f"verify:{client_ip(request)}",
        config.VERIFY_RATE_LIMIT,
        config.VERIFY_RATE_WINDOW_SECONDS,
        now=now_ts(),
    )
    if not allowed:
        log.warning("verify.rate_limited", ip=client_ip(request))
        raise RateLimited("too many verification attempts",
                          retry_after=retry_after)


async def _json(request: Request, required: bool = True) -> dict:
    if not required and not await request.body():
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidRequest("body must be JSON")
    if not isinstance(payload, dict):
        raise InvalidRequest("body must be a JSON object")
    return payload


# ----------------------------
# Health
# ----------------------------
@app.get("/health")
async def health():
    return {"ok": True, "provider": config.PAYMENT_PROVIDER,
            "gate": GATE_BACKEND}


# ----------------------------
# API: Orders
# ----------------------------
@app.post("/api/orders")
async def create_order(request: Request, db: Database = Depends(get_db)):
    payload = await _json(request)
    currency = str(payload.get("currency") or "SAR").upper()
    if currency not in config.SUPPORTED_CURRENCIES:
        raise InvalidRequest(f"unsupported currency {currency}")
    guest = payload.get("customerInfo") or {}
    if not isinstance(guest, dict):
        raise InvalidRequest("customerInfo must be an object")
    email = norm_email(str(guest.get("email") or ""))
    if not is_valid_email(email):
        raise InvalidRequest("customerInfo.email must be a valid email")
    requested = requested_items(payload.get("items") or [])
    discount = parse_amount(payload.get("discount") or 0, "discount")
    if not requested:
        raise InvalidRequest("order has no items")

    now = now_ts()
    async with db.tx() as s:
        services = await catalog.services_by_id(s, [r[0] for r in requested])
        items, skipped = price_items(requested, services, currency)
        if not items:
            raise InvalidRequest("none of the ordered services are available",
                                 skipped=skipped)
        order = Order(
            id=new_id(),
            guest_name=guest.get("name") or None,
            guest_email=email or None,
            guest_phone=guest.get("phone") or None,
            currency=currency,
            notes=payload.get("notes") or "",
            description=payload.get("description") or "",
            created_at=now,
            updated_at=now,
        )
        order.set_items(items, discount=discount)
        check_client_total(payload.get("total"), order.total)
        s.add(order)

    log.info("order.created", order_id=order.id, total=order.total,
             currency=currency, skipped=skipped)
    return {"success": True, "order": order.public()}


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, db: Database = Depends(get_db)):
    async with db.tx() as s:
        order = await states.get_order(s, order_id)
    if order is None:
        raise NotFound("order not found")
    return {"success": True, "order": order.public()}


@app.post("/api/orders/{order_id}/cancel",
          dependencies=[Depends(require_admin)])
async def cancel_order(order_id: str, request: Request,
                       db: Database = Depends(get_db)):
    payload = await _json(request, required=False)
    reason = payload.get("reason") or ""
    refunded = None
    async with db.tx() as s:
        order = await states.get_order(s, order_id)
        if order is None:
            raise NotFound("order not found")
        payment_status = await states.cancel_order(s, order_id, reason)
        if order.payment_status == PAY_PAID and order.payment_id:
            payment = await states.get_payment(s, order.payment_id)
            if payment is not None and payment.status == PAYMENT_SUCCEEDED:
                refunded = await states.refund_payment(s, payment.id)
        order = await states.get_order(s, order_id)
    audit.info("order.cancelled", order_id=order_id, reason=reason,
               payment_status=payment_status,
               admin=request.session.get("admin_user"))
    return {
        "success": True,
        "order": order.public(),
        "payment": refunded.public() if refunded is not None else None,
    }


@app.post("/api/orders/{order_id}/status",
          dependencies=[Depends(require_admin)])
async def update_order_status(order_id: str, request: Request,
                              db: Database = Depends(get_db)):
    payload = await _json(request)
    target = payload.get("status") or ""
    async with db.tx() as s:
        await states.advance_order_status(s, order_id, target)
        order = await states.get_order(s, order_id)
    audit.info("order.status_changed", order_id=order_id, status=target,
               admin=request.session.get("admin_user"))
    return {"success": True, "order": order.public()}


# ----------------------------
# API: Checkout email verification
# ----------------------------
@app.post("/api/checkout/email/send-code")
async def checkout_send_code(request: Request,
                             db: Database = Depends(get_db),
                             gate=Depends(get_gate)):
    payload = await _json(request)
    result = await send_email_code(
        db, gate, request.app.state.mailer,
        order_ref=payload.get("orderId") or payload.get("tempOrderId") or "",
        email=payload.get("email") or "",
        name=payload.get("name") or "",
        phone=payload.get("phone") or "",
    )
    return {"success": True, **result}


@app.post("/api/checkout/email/verify")
async def checkout_verify_code(request: Request,
                               db: Database = Depends(get_db)):
    payload = await _json(request)
    result = await verify_email_code(
        db,
        order_ref=payload.get("orderId") or payload.get("tempOrderId") or "",
        email=payload.get("email") or "",
        code=str(payload.get("code") or ""),
    )
    return {"success": True, **result}


# ----------------------------
# API: Payments
# ----------------------------
@app.post("/api/payments/create-session")
async def create_payment_session(
    request: Request,
    db: Database = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payload = await _json(request)
    order_id = payload.get("orderId")
    temp_id = payload.get("temporaryOrderId")

    if order_id:
        async with db.tx() as s:
            order = await states.get_order(s, order_id)
            if order is None:
                raise NotFound("order not found")
            if order.payment_status == PAY_PAID:
                raise AlreadyProcessed("order is already paid")
            if order.payment_status not in (PAY_PENDING, PAY_FAILED):
                raise InvalidRequest(
                    f"order cannot be paid in state {order.payment_status}"
                )
            await require_verified_email(
                s, order_ref=order.id, email=order.guest_email or "",
                order=order,
            )
        reference = order.id
        amount, currency = order.total, order.currency
        context = dump_context(PermanentOrderContext(order_id=order.id))
        description = f"Order {order.id[:8]}"
    elif temp_id:
        ctx = temporary_context(str(temp_id), payload.get("orderData") or {})
        if ctx.currency not in config.SUPPORTED_CURRENCIES:
            raise InvalidRequest(f"unsupported currency {ctx.currency}")
        async with db.tx() as s:
            services = await catalog.services_by_id(
                s, [it.service_id for it in ctx.items]
            )
            items, _ = price_items(
                [(it.service_id, it.quantity) for it in ctx.items],
                services, ctx.currency,
            )
            if not items:
                raise InvalidRequest("none of the ordered services are "
                                     "available")
            if not is_valid_email(ctx.guest.email):
                raise InvalidRequest("customerInfo.email is required")
            await require_verified_email(
                s, order_ref=temp_id, email=ctx.guest.email,
            )
        totals = compute_totals(items)
        check_client_total((payload.get("orderData") or {}).get("total"),
                           totals["total"])
        reference = temp_id
        amount, currency = totals["total"], ctx.currency
        context = dump_context(ctx)
        description = "Design services"
    else:
        raise InvalidRequest("orderId or temporaryOrderId is required")

    # provider first: a failed create leaves no payment row behind
    remote = await gateway.create_order(
        reference=reference, amount=amount, currency=currency,
        description=description, request_id=f"{reference}-{uuid.uuid4().hex}",
    )
    now = now_ts()
    payment = Payment(
        id=new_id(),
        order_id=order_id or None,
        provider=gateway.name,
        provider_payment_id=remote["provider_payment_id"],
        amount=amount,
        currency=currency,
        status=PAYMENT_PENDING,
        context=context,
        provider_status=remote["status"],
        refund_amount=0,
        created_at=now,
        updated_at=now,
    )
    async with db.tx() as s:
        s.add(payment)
        if order_id:
            await states.link_payment(s, order_id, payment.id, now)
    log.info("payment.session_created", payment_id=payment.id,
             provider_payment_id=payment.provider_payment_id,
             reference=reference, amount=amount, currency=currency)
    return {
        "success": True,
        "sessionId": payment.provider_payment_id,
        "approvalUrl": remote["approval_url"],
        "paymentId": payment.id,
    }


@app.post("/api/payments/verify",
          dependencies=[Depends(verify_rate_limit)])
async def verify_payment_endpoint(
    request: Request,
    db: Database = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    emails: EmailGuarantee = Depends(get_emails),
):
    payload = await _json(request)
    session_id = payload.get("sessionId") or payload.get("token")
    if not session_id:
        raise InvalidRequest("sessionId is required")
    result = await verify_payment(db, gateway, emails, session_id)
    return {"success": True, **result}


@app.post("/api/admin/payments/{payment_id}/refund",
          dependencies=[Depends(require_admin)])
async def refund_payment(payment_id: str, request: Request,
                         db: Database = Depends(get_db)):
    payload = await _json(request, required=False)
    amount = payload.get("amount")
    cents = parse_amount(amount, "amount") if amount is not None else None
    async with db.tx() as s:
        payment = await states.refund_payment(s, payment_id, cents)
    audit.info("payment.refund_recorded", payment_id=payment_id,
               amount=amount, admin=request.session.get("admin_user"))
    return {"success": True, "payment": payment.public()}


# ----------------------------
# Webhook endpoint
# ----------------------------
@app.post("/api/payments/webhook/paypal")
async def paypal_webhook(request: Request):
    body = await request.body()
    state = request.app.state
    try:
        result = await handle_webhook(state.verifier, state.dispatcher,
                                      body, request.headers)
    except VerificationFailure:
        raise
    except Exception:
        # the provider re-delivers on 5xx
        log.exception("webhook.failed")
        return ORJSONResponse({"success": False}, status_code=500)
    return {"success": True, **result}


# ----------------------------
# Admin: cleanup
# ----------------------------
@app.get("/api/admin/cleanup/stats", dependencies=[Depends(require_admin)])
async def cleanup_stats(cleanup: CleanupService = Depends(get_cleanup)):
    return {"success": True, "stats": await cleanup.stats()}


@app.get("/api/admin/cleanup/preview", dependencies=[Depends(require_admin)])
async def cleanup_preview(hoursThreshold: Optional[float] = None,
                          cleanup: CleanupService = Depends(get_cleanup)):
    return {"success": True, "preview": await cleanup.preview(hoursThreshold)}


@app.post("/api/admin/cleanup/run", dependencies=[Depends(require_admin)])
async def cleanup_run(request: Request,
                      cleanup: CleanupService = Depends(get_cleanup)):
    payload = await _json(request, required=False)
    kind = payload.get("type") or "full"
    hours = payload.get("hoursThreshold")
    if hours is not None:
        try:
            hours = float(hours)
        except (TypeError, ValueError):
            raise InvalidRequest("hoursThreshold must be a number")
        if hours <= 0:
            raise InvalidRequest("hoursThreshold must be positive")

    if kind == "full":
        if hours is None:
            result = await cleanup.full_cleanup()
        else:
            result = await cleanup.full_cleanup(hours, hours)
    elif kind == "orders":
        result = await cleanup.cleanup_pending_orders(
            hours if hours is not None else config.ORDER_CLEANUP_HOURS
        )
    elif kind == "payments":
        result = await cleanup.cleanup_failed_payments(
            hours if hours is not None else config.PAYMENT_CLEANUP_HOURS
        )
    else:
        raise InvalidRequest("type must be full, orders or payments")
    audit.info("cleanup.manual_run", type=kind, hours=hours,
               admin=request.session.get("admin_user"))
    return {"success": True, "type": kind, "result": result}


# ----------------------------
# Admin session
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form(""),
):
    ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
    ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        audit.info("admin.login", user=username.strip())
        if next:
            return RedirectResponse(url=next, status_code=HTTP_303_SEE_OTHER)
        return {"success": True}
    audit.warning("admin.login_failed", user=username.strip())
    return ORJSONResponse({"success": False, "error": "Invalid credentials."},
                          status_code=401)


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}
