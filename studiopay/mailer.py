from abc import ABC, abstractmethod
from collections import deque
import uuid

import httpx
import structlog
from jinja2 import Environment, PackageLoader, select_autoescape

from . import config
from .errors import EmailTransportFailure

log = structlog.get_logger(__name__)

SUBJECTS = {
    "order-confirmation": "Your order {orderNumber} is confirmed",
    "email-verification": "Your verification code",
    "admin-cleanup-report": "Cleanup report: {ordersCleaned} orders, "
                            "{paymentsCleaned} payments",
}

_env = Environment(
    loader=PackageLoader("studiopay", "templates/email"),
    autoescape=select_autoescape(["html"]),
)


def render(template: str, data: dict):
    if template not in SUBJECTS:
        raise ValueError(f"unknown email template {template!r}")
    subject = SUBJECTS[template].format_map(_Defaulting(data))
    html = _env.get_template(f"{template}.html").render(**data)
    return subject, html


class _Defaulting(dict):
    def __missing__(self, key):
        return ""


# ----------------------------
# Mailer interface
# ----------------------------
class Mailer(ABC):
    @abstractmethod
    async def send(self, to: str, template: str, data: dict) -> dict:
        """Send one templated email; returns {"message_id": ...}.

        Raises EmailTransportFailure when the transport did not accept it.
        """


class LogMailer(Mailer):
    """Renders and logs instead of sending. Keeps the last messages."""

    def __init__(self, keep: int = 100) -> None:
        self.outbox = deque(maxlen=keep)

    async def send(self, to: str, template: str, data: dict) -> dict:
        subject, html = render(template, data)
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        self.outbox.append({"to": to, "template": template, "data": data,
                            "subject": subject, "message_id": message_id})
        log.info("mail.logged", to=to, template=template, subject=subject,
                 message_id=message_id)
        return {"message_id": message_id}


class HttpMailer(Mailer):
    """Transactional mail provider reached over a JSON HTTP API."""

    def __init__(self, http: httpx.AsyncClient, *,
                 api_url: str = config.MAIL_API_URL,
                 api_key: str = config.MAIL_API_KEY,
                 sender: str = config.MAIL_FROM) -> None:
        self.http = http
        self.api_url = api_url
        self.api_key = api_key
        self.sender = sender

    async def send(self, to: str, template: str, data: dict) -> dict:
        subject, html = render(template, data)
        try:
            resp = await self.http.post(
                self.api_url,
                json={"from": self.sender, "to": [to], "subject": subject,
                      "html": html},
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as e:
            raise EmailTransportFailure(f"mail api unreachable: {e}")
        if resp.status_code >= 300:
            raise EmailTransportFailure(
                f"mail api answered {resp.status_code}"
            )
        body = resp.json() if resp.content else {}
        return {"message_id": body.get("id") or body.get("message_id") or ""}


def new_mailer(http: httpx.AsyncClient) -> Mailer:
    if config.MAIL_BACKEND == "http":
        return HttpMailer(http)
    return LogMailer()
