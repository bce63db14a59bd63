import os


# ----------------------------
# Config & Constants
# ----------------------------
def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./studiopay.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
GATE_BACKEND = os.environ.get("GATE_BACKEND", "redis").lower()  # redis | pg

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "paypal").lower()
PAYPAL_MODE = os.environ.get("PAYPAL_MODE", "sandbox").lower()  # sandbox | live
PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET", "")
PAYPAL_BASE_URL = os.environ.get(
    "PAYPAL_BASE_URL",
    "https://api-m.paypal.com" if PAYPAL_MODE == "live"
    else "https://api-m.sandbox.paypal.com",
)
PAYPAL_WEBHOOK_ID = os.environ.get("PAYPAL_WEBHOOK_ID", "")
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("PROVIDER_TIMEOUT_SECONDS", "10"))
PROVIDER_CREATE_ATTEMPTS = int(os.environ.get("PROVIDER_CREATE_ATTEMPTS", "2"))

# strict: certificate signature check | sandbox: header shape only
WEBHOOK_VERIFY_MODE = os.environ.get("WEBHOOK_VERIFY_MODE", "strict").lower()
WEBHOOK_MAX_AGE_SECONDS = 5 * 60

FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")
DELIVERY_PLACEHOLDER_URL = os.environ.get(
    "DELIVERY_PLACEHOLDER_URL", f"{FRONTEND_URL}/contact"
)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@example.com")

MAIL_BACKEND = os.environ.get("MAIL_BACKEND", "log").lower()  # log | http
MAIL_API_URL = os.environ.get("MAIL_API_URL", "")
MAIL_API_KEY = os.environ.get("MAIL_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "orders@example.com")

FALLBACK_EMAIL_DELAY_SECONDS = float(
    os.environ.get("FALLBACK_EMAIL_DELAY_SECONDS", "15")
)
EMAIL_SWEEP_INTERVAL_SECONDS = float(
    os.environ.get("EMAIL_SWEEP_INTERVAL_SECONDS", "300")
)
EMAIL_SWEEP_WINDOW_SECONDS = float(
    os.environ.get("EMAIL_SWEEP_WINDOW_SECONDS", "3600")
)
EMAIL_CLAIM_LEASE_SECONDS = float(
    os.environ.get("EMAIL_CLAIM_LEASE_SECONDS", "120")
)
# give up on a fallback job whose payment never got confirmed
EMAIL_JOB_EXPIRY_SECONDS = 24 * 3600

ORDER_CLEANUP_HOURS = float(os.environ.get("ORDER_CLEANUP_HOURS", "2"))
PAYMENT_CLEANUP_HOURS = float(os.environ.get("PAYMENT_CLEANUP_HOURS", "1"))
CLEANUP_ENABLED = _flag("CLEANUP_ENABLED", "1")
EMAIL_GUARD_ENABLED = _flag("EMAIL_GUARD_ENABLED", "1")

VERIFY_RATE_LIMIT = int(os.environ.get("VERIFY_RATE_LIMIT", "15"))
VERIFY_RATE_WINDOW_SECONDS = int(
    os.environ.get("VERIFY_RATE_WINDOW_SECONDS", "300")
)

EMAIL_CODE_TTL_SECONDS = int(os.environ.get("EMAIL_CODE_TTL_SECONDS", "600"))
EMAIL_CODE_MAX_ATTEMPTS = 5
EMAIL_CODE_RESEND_SECONDS = 60
EMAIL_VERIFIED_VALID_SECONDS = 24 * 3600

VAT_RATE_PERCENT = int(os.environ.get("VAT_RATE_PERCENT", "15"))
SUPPORTED_CURRENCIES = ("SAR", "USD")
SAR_PER_USD = 3.75
TEMP_ORDER_PREFIX = "temp_"

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_JSON = _flag("LOG_JSON", "1")


def validate() -> None:
    if PAYPAL_MODE == "live" and WEBHOOK_VERIFY_MODE != "strict":
        raise RuntimeError(
            "WEBHOOK_VERIFY_MODE=sandbox is not allowed with PAYPAL_MODE=live"
        )
    if PAYMENT_PROVIDER == "mock" and PAYPAL_MODE == "live":
        raise RuntimeError("mock provider cannot run with PAYPAL_MODE=live")
    if GATE_BACKEND not in ("redis", "pg"):
        raise RuntimeError(f"unknown GATE_BACKEND {GATE_BACKEND!r}")
