from typing import Optional


class StudioPayError(Exception):
    http_status = 500
    code = "internal_error"

    def __init__(self, message: str = "", **context) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def payload(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class VerificationFailure(StudioPayError):
    """Webhook signature, certificate or timestamp check failed."""
    http_status = 401
    code = "verification_failed"


class NotFound(StudioPayError):
    http_status = 404
    code = "not_found"


class AlreadyProcessed(StudioPayError):
    """Idempotent no-op: the target state is already reached."""
    http_status = 200
    code = "already_processed"

    def payload(self) -> dict:
        return {"success": True, "idempotent": True, "message": self.message}


class InvalidRequest(StudioPayError):
    http_status = 400
    code = "invalid_request"


class PricingMismatch(InvalidRequest):
    code = "pricing_mismatch"


class IllegalTransition(StudioPayError):
    http_status = 409
    code = "illegal_transition"


class EmailNotVerified(StudioPayError):
    http_status = 403
    code = "email_not_verified"


class RateLimited(StudioPayError):
    http_status = 429
    code = "rate_limited"

    def __init__(self, message: str = "", retry_after: int = 0) -> None:
        super().__init__(message or "too many requests")
        self.retry_after = retry_after

    def payload(self) -> dict:
        body = super().payload()
        body["retryAfter"] = self.retry_after
        return body


class TransientProviderError(StudioPayError):
    """Network error, timeout or 5xx while talking to the provider."""
    http_status = 502
    code = "provider_unavailable"

    def __init__(self, message: str = "",
                 status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ProviderRejected(StudioPayError):
    """The provider answered with a definitive 4xx."""
    http_status = 502
    code = "provider_rejected"

    def __init__(self, message: str = "",
                 status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class DeliveryContentMissing(StudioPayError):
    code = "delivery_content_missing"


class EmailTransportFailure(StudioPayError):
    code = "email_transport_failure"
