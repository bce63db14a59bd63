"""Server-side pricing.

All amounts are integer minor units. Client supplied prices are never
used; line items are re-priced from the catalog every time.
"""
from typing import Iterable, Mapping

import structlog

from . import config
from .errors import InvalidRequest, PricingMismatch
from .helpers import to_cents

log = structlog.get_logger(__name__)

# one minor unit, i.e. 0.01
TOTAL_TOLERANCE = 1


def compute_tax(subtotal: int, rate_percent: int | None = None) -> int:
    rate = config.VAT_RATE_PERCENT if rate_percent is None else rate_percent
    if subtotal <= 0:
        return 0
    # round half up to the minor unit
    return (subtotal * rate + 50) // 100


def compute_totals(items: Iterable[Mapping], discount: int = 0) -> dict:
    subtotal = sum(int(it["price"]) * int(it["quantity"]) for it in items)
    tax = compute_tax(subtotal)
    discount = max(0, min(int(discount or 0), subtotal + tax))
    return {
        "subtotal": subtotal,
        "tax": tax,
        "discount": discount,
        "total": subtotal + tax - discount,
    }


def parse_quantity(value) -> int:
    try:
        quantity = int(value or 1)
    except (TypeError, ValueError, OverflowError):
        raise InvalidRequest("quantity must be a whole number")
    if quantity < 1:
        raise InvalidRequest("quantity must be at least 1")
    return quantity


def parse_amount(value, field: str) -> int:
    """Major units from a request body as integer minor units."""
    try:
        return to_cents(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidRequest(f"{field} must be a number")


def requested_items(raw) -> list:
    """(service_id, quantity) pairs from the `items` of a request body."""
    if not isinstance(raw, list) or \
            not all(isinstance(it, dict) for it in raw):
        raise InvalidRequest("items must be a list of objects")
    requested = []
    for it in raw:
        service_id = it.get("serviceId") or it.get("service_id")
        if not isinstance(service_id, str):
            raise InvalidRequest("every item needs a serviceId")
        requested.append((service_id, parse_quantity(it.get("quantity"))))
    return requested


def price_items(requested, services: Mapping, currency: str):
    """Build order line items from (service_id, quantity) pairs.

    Returns (items, skipped) where skipped lists the service ids that are
    missing, inactive or have no positive price in `currency`.
    """
    items, skipped = [], []
    for service_id, quantity in requested:
        svc = services.get(service_id)
        price = svc.price_for(currency) if svc is not None else None
        if svc is None or not svc.is_active or not price or price <= 0:
            skipped.append(service_id)
            continue
        items.append({
            "service_id": svc.id,
            "title": {"en": svc.title_en, "ar": svc.title_ar or svc.title_en},
            "quantity": max(1, int(quantity)),
            "price": int(price),
            "currency": currency,
        })
    if skipped:
        log.warning("pricing.items_skipped", skipped=skipped,
                    currency=currency)
    return items, skipped


def check_client_total(client_total, server_total: int) -> None:
    if client_total is None:
        return
    try:
        declared = to_cents(client_total)
    except (TypeError, ValueError, OverflowError):
        raise PricingMismatch("total is not a number")
    if abs(declared - server_total) > TOTAL_TOLERANCE:
        log.warning("pricing.mismatch", declared=declared,
                    computed=server_total)
        raise PricingMismatch(
            "order total does not match server calculation",
            declared=declared, computed=server_total,
        )
