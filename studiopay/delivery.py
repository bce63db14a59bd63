from typing import List, Mapping, Tuple

import structlog

from . import config
from .errors import DeliveryContentMissing

log = structlog.get_logger(__name__)


def _normalize(link, service) -> dict | None:
    if isinstance(link, str):
        url = link.strip()
        link = {}
    elif isinstance(link, Mapping):
        url = (link.get("url") or "").strip()
    else:
        return None
    if not url:
        return None
    return {
        "title": link.get("title") or service.title_en,
        "url": url,
        "imageUrl": link.get("imageUrl") or "",
        "locale": link.get("locale") or "",
        "tags": list(link.get("tags") or []),
        "serviceId": service.id,
    }


def placeholder_link() -> dict:
    return {
        "title": "Our team will send your files shortly",
        "url": config.DELIVERY_PLACEHOLDER_URL,
        "imageUrl": "",
        "locale": "",
        "tags": ["placeholder"],
        "serviceId": None,
    }


def collect_links(order, services: Mapping) -> List[dict]:
    """Delivery links of an order's items, in item order, urls deduplicated.

    Raises DeliveryContentMissing when no service yields a usable link.
    """
    links, seen = [], set()
    for it in order.items or []:
        svc = services.get(it.get("service_id"))
        if svc is None:
            continue
        raw = list(svc.delivery_links or []) + list(svc.legacy_links or [])
        for link in raw:
            norm = _normalize(link, svc)
            if norm is None or norm["url"] in seen:
                continue
            seen.add(norm["url"])
            links.append(norm)
    if not links:
        raise DeliveryContentMissing(
            "no delivery links for order",
            order_id=order.id,
            services=[it.get("service_id") for it in order.items or []],
        )
    return links


def resolve_delivery_links(order, services: Mapping) -> Tuple[List[dict], bool]:
    """Returns (links, is_placeholder); never fails the order."""
    try:
        return collect_links(order, services), False
    except DeliveryContentMissing as e:
        log.warning("delivery.placeholder", **e.context)
        return [placeholder_link()], True
