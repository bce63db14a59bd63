from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Index,
    Integer,
    String,
    Text,
)

from ..helpers import to_iso, to_major
from ..pricing import compute_totals
from .context import parse_context


Base = declarative_base()


# Order.status
ORDER_PENDING = "pending"
ORDER_CONFIRMED = "confirmed"
ORDER_IN_PROGRESS = "in_progress"
ORDER_COMPLETED = "completed"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

# Order.payment_status
PAY_PENDING = "pending"
PAY_PAID = "paid"
PAY_FAILED = "failed"
PAY_REFUNDED = "refunded"
# cancelled before any money moved
PAY_VOID = "void"

# Payment.status
PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_SUCCEEDED = "succeeded"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_REFUNDED = "refunded"


# ----------------------------
# ORM models
# ----------------------------
class Service(Base):
    __tablename__ = "services"
    id = Column(String, primary_key=True)
    slug = Column(String, nullable=False, unique=True)
    title_en = Column(String, nullable=False)
    title_ar = Column(String, nullable=False, default="")
    # {"SAR": 10000, "USD": 2700} in minor units
    prices = Column(JSON, nullable=False, default=dict)
    # [{"title", "url", "imageUrl", "locale", "tags"}]
    delivery_links = Column(JSON, nullable=False, default=list)
    # older records: plain url strings or {"title", "url"}
    legacy_links = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    order_count = Column(Integer, nullable=False, default=0)
    created_at = Column(Float, nullable=False)

    def price_for(self, currency: str):
        return (self.prices or {}).get(currency)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False, default="")
    phone = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    # assigned exactly once, when payment is confirmed
    order_number = Column(String, nullable=True, unique=True)
    user_id = Column(String, nullable=True)
    guest_name = Column(String, nullable=True)
    guest_email = Column(String, nullable=True)
    guest_phone = Column(String, nullable=True)

    # [{"service_id", "title": {"en", "ar"}, "quantity", "price", "currency"}]
    items = Column(JSON, nullable=False, default=list)
    subtotal = Column(Integer, nullable=False, default=0)  # cents
    tax = Column(Integer, nullable=False, default=0)
    discount = Column(Integer, nullable=False, default=0)
    total = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False, default="SAR")

    status = Column(String, nullable=False, default=ORDER_PENDING)
    payment_status = Column(String, nullable=False, default=PAY_PENDING)
    payment_id = Column(String, nullable=True)

    delivery_email_sent = Column(Boolean, nullable=False, default=False)
    email_claimed_at = Column(Float, nullable=True)
    email_sent_via = Column(String, nullable=True)
    delivered_at = Column(Float, nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    email_verified_at = Column(Float, nullable=True)

    notes = Column(Text, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    payer_email = Column(String, nullable=True)
    # created from a fallback line item, needs an operator look
    needs_review = Column(Boolean, nullable=False, default=False)
    cancel_reason = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    cancelled_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_paid_unsent", "payment_status",
              "delivery_email_sent", "paid_at"),
    )

    def set_items(self, items: list, discount: int | None = None) -> None:
        """Replace line items and recompute every derived amount."""
        self.items = list(items)
        if discount is not None:
            self.discount = discount
        totals = compute_totals(self.items, self.discount or 0)
        self.subtotal = totals["subtotal"]
        self.tax = totals["tax"]
        self.discount = totals["discount"]
        self.total = totals["total"]

    @property
    def contact_email(self) -> str:
        return self.guest_email or self.payer_email or ""

    def public(self) -> dict:
        shown = self.payment_status in (PAY_PAID, PAY_REFUNDED)
        return {
            "id": self.id,
            "orderNumber": self.order_number if shown else None,
            "status": self.status,
            "paymentStatus": self.payment_status,
            "items": [
                {
                    "serviceId": it.get("service_id"),
                    "title": it.get("title"),
                    "quantity": it.get("quantity"),
                    "price": to_major(it.get("price")),
                    "currency": it.get("currency"),
                }
                for it in (self.items or [])
            ],
            "subtotal": to_major(self.subtotal),
            "tax": to_major(self.tax),
            "discount": to_major(self.discount),
            "total": to_major(self.total),
            "currency": self.currency,
            "deliveryEmailSent": bool(self.delivery_email_sent),
            "emailVerified": bool(self.email_verified),
            "createdAt": to_iso(self.created_at),
            "paidAt": to_iso(self.paid_at),
            "deliveredAt": to_iso(self.delivered_at),
        }


class Payment(Base):
    __tablename__ = "payments"
    id = Column(String, primary_key=True)
    # null until a temporary checkout is materialized
    order_id = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    provider = Column(String, nullable=False)
    provider_payment_id = Column(String, nullable=False, unique=True)
    amount = Column(Integer, nullable=False)  # cents
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PAYMENT_PENDING)
    context = Column(JSON, nullable=True)

    webhook_received = Column(Boolean, nullable=False, default=False)
    webhook_received_at = Column(Float, nullable=True)
    # only the verified webhook dispatcher sets this
    webhook_confirmed = Column(Boolean, nullable=False, default=False)
    webhook_confirmed_at = Column(Float, nullable=True)
    last_event_id = Column(String, nullable=True)
    user_returned_at = Column(Float, nullable=True)

    provider_status = Column(String, nullable=True)
    capture_id = Column(String, nullable=True)
    payer = Column(JSON, nullable=True)
    failure_reason = Column(String, nullable=True)
    refund_amount = Column(Integer, nullable=False, default=0)
    refunded_at = Column(Float, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_payments_status_created", "status", "created_at"),
        Index("ix_payments_order", "order_id"),
    )

    @property
    def ctx(self):
        return parse_context(self.context)

    @property
    def payer_email(self) -> str:
        return ((self.payer or {}).get("email_address") or "").strip()

    def public(self) -> dict:
        return {
            "id": self.id,
            "orderId": self.order_id,
            "provider": self.provider,
            "providerPaymentId": self.provider_payment_id,
            "amount": to_major(self.amount),
            "currency": self.currency,
            "status": self.status,
            "webhookConfirmed": bool(self.webhook_confirmed),
            "refundAmount": to_major(self.refund_amount),
            "createdAt": to_iso(self.created_at),
        }


class CheckoutEmailVerification(Base):
    __tablename__ = "checkout_email_verifications"
    id = Column(String, primary_key=True)
    # order id or temp_ id
    order_ref = Column(String, nullable=False)
    email = Column(String, nullable=False)
    code = Column(String, nullable=False)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(Float, nullable=True)
    expires_at = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_email_verif_ref_email", "order_ref", "email"),
    )


class EmailJob(Base):
    """Durable delayed fallback for the confirmation email."""
    __tablename__ = "email_jobs"
    payment_id = Column(String, primary_key=True)
    due_at = Column(Float, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_outcome = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
