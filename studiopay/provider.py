from abc import ABC, abstractmethod
import time
import uuid
from typing import Optional, TypedDict

import httpx
import structlog

from . import config
from .errors import ProviderRejected, TransientProviderError

log = structlog.get_logger(__name__)


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class CreatedOrder(TypedDict):
    provider_payment_id: str
    approval_url: str
    status: str


class PaymentGateway(ABC):
    name: str = ""

    @abstractmethod
    async def create_order(
        self, *, reference: str, amount: int, currency: str,
        description: str, request_id: str,
    ) -> CreatedOrder: ...

    # remote order as reported by the provider; never trusted for state
    @abstractmethod
    async def get_order(self, provider_payment_id: str) -> dict: ...

    @abstractmethod
    async def capture_order(
        self, provider_payment_id: str, request_id: str
    ) -> dict: ...


def charge_amount(amount: int, currency: str):
    """Amount and currency actually sent to the provider.

    SAR is not settled by the provider account, so it is charged in USD at
    the pegged rate.
    """
    if currency == "SAR":
        return int(round(amount / config.SAR_PER_USD)), "USD"
    return amount, currency


# ----------------------------
# PayPal (Orders v2)
# ----------------------------
class PayPalGateway(PaymentGateway):
    name = "paypal"

    def __init__(self, http: httpx.AsyncClient, *,
                 base_url: str = config.PAYPAL_BASE_URL,
                 client_id: str = config.PAYPAL_CLIENT_ID,
                 client_secret: str = config.PAYPAL_CLIENT_SECRET,
                 attempts: int = config.PROVIDER_CREATE_ATTEMPTS) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.attempts = max(1, attempts)
        self._token: Optional[str] = None
        self._token_expires = 0.0

    async def _access_token(self, force: bool = False) -> str:
        if not force and self._token and time.time() < self._token_expires:
            return self._token
        try:
            resp = await self.http.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TransientProviderError(f"token request failed: {e}")
        if resp.status_code >= 500:
            raise TransientProviderError("token request failed",
                                         status=resp.status_code)
        if resp.status_code != 200:
            raise ProviderRejected("provider refused our credentials",
                                   status=resp.status_code)
        body = resp.json()
        self._token = body["access_token"]
        # refresh a minute early
        self._token_expires = time.time() + int(body.get("expires_in", 300)) - 60
        return self._token

    async def _call(self, method: str, path: str, *,
                    json: Optional[dict] = None,
                    headers: Optional[dict] = None) -> dict:
        for retry_auth in (False, True):
            token = await self._access_token(force=retry_auth)
            hdrs = {"Authorization": f"Bearer {token}",
                    "Content-Type": "application/json"}
            hdrs.update(headers or {})
            try:
                resp = await self.http.request(
                    method, f"{self.base_url}{path}", json=json, headers=hdrs
                )
            except httpx.HTTPError as e:
                raise TransientProviderError(f"{method} {path}: {e}")
            if resp.status_code == 401 and not retry_auth:
                continue
            break
        if resp.status_code >= 500:
            raise TransientProviderError(f"{method} {path}",
                                         status=resp.status_code)
        if resp.status_code >= 400:
            raise ProviderRejected(f"{method} {path}: {resp.text[:300]}",
                                   status=resp.status_code)
        return resp.json() if resp.content else {}

    async def create_order(
        self, *, reference: str, amount: int, currency: str,
        description: str, request_id: str,
    ) -> CreatedOrder:
        value, code = charge_amount(amount, currency)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": reference,
                "description": description[:127],
                "amount": {"currency_code": code,
                           "value": f"{value / 100:.2f}"},
            }],
            "application_context": {
                "return_url": f"{config.FRONTEND_URL}/order/success"
                              "?provider=paypal",
                "cancel_url": f"{config.FRONTEND_URL}/order/cancel"
                              "?provider=paypal",
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
            },
        }
        last_error: Optional[TransientProviderError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                # same request id: the provider returns the original order
                remote = await self._call(
                    "POST", "/v2/checkout/orders", json=body,
                    headers={"PayPal-Request-Id": request_id},
                )
                break
            except TransientProviderError as e:
                last_error = e
                log.warning("provider.create_retry", attempt=attempt,
                            reference=reference, error=str(e))
        else:
            raise last_error

        approve = next(
            (ln["href"] for ln in remote.get("links", [])
             if ln.get("rel") in ("approve", "payer-action")),
            "",
        )
        return {
            "provider_payment_id": remote["id"],
            "approval_url": approve,
            "status": remote.get("status", "CREATED"),
        }

    async def get_order(self, provider_payment_id: str) -> dict:
        return await self._call(
            "GET", f"/v2/checkout/orders/{provider_payment_id}"
        )

    async def capture_order(
        self, provider_payment_id: str, request_id: str
    ) -> dict:
        try:
            return await self._call(
                "POST", f"/v2/checkout/orders/{provider_payment_id}/capture",
                headers={"PayPal-Request-Id": request_id},
            )
        except ProviderRejected as e:
            if e.status == 422 and "ORDER_ALREADY_CAPTURED" in e.message:
                return {"id": provider_payment_id,
                        "status": "ALREADY_CAPTURED"}
            raise


# ----------------------------
# Mock provider (development and tests)
# ----------------------------
class MockGateway(PaymentGateway):
    name = "mock"

    def __init__(self, remote_status: str = "APPROVED") -> None:
        self.remote_status = remote_status
        self.created: list[dict] = []
        self.captures: list[str] = []
        self.fail_next: int = 0

    async def create_order(
        self, *, reference: str, amount: int, currency: str,
        description: str, request_id: str,
    ) -> CreatedOrder:
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransientProviderError("mock provider timeout")
        ppid = f"mock_{uuid.uuid4().hex}"
        self.created.append({"id": ppid, "reference": reference,
                             "amount": amount, "currency": currency})
        return {
            "provider_payment_id": ppid,
            "approval_url": f"{config.FRONTEND_URL}/mockpay/{ppid}",
            "status": "CREATED",
        }

    async def get_order(self, provider_payment_id: str) -> dict:
        return {"id": provider_payment_id, "status": self.remote_status}

    async def capture_order(
        self, provider_payment_id: str, request_id: str
    ) -> dict:
        self.captures.append(provider_payment_id)
        return {"id": provider_payment_id, "status": "COMPLETED"}


def new_gateway(http: httpx.AsyncClient) -> PaymentGateway:
    if config.PAYMENT_PROVIDER == "mock":
        return MockGateway()
    return PayPalGateway(http)
