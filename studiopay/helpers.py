import time
import re
import secrets
import string
import uuid
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def norm_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Money: amounts are stored as integer minor units (cents / halalas)
# ----------------------------
def to_cents(amount) -> int:
    return int(round(float(amount) * 100))


def to_major(cents: int | None) -> float:
    return round((cents or 0) / 100.0, 2)


# ----------------------------
# Order numbers: BD<YY><MM><DD><HH><mm>-<4 upper alnum>
# ----------------------------
_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def new_order_number(at: datetime | None = None) -> str:
    at = at or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(4))
    return f"BD{at:%y%m%d%H%M}-{suffix}"


ORDER_NUMBER_RE = re.compile(r"^BD\d{10}-[A-Z0-9]{4}$")


def new_email_code() -> str:
    return f"{secrets.randbelow(900000) + 100000}"
