import pytest
from fakeredis import aioredis
from httpx import ASGITransport, AsyncClient

from studiopay import config, server
from studiopay.emails import EmailGuarantee
from studiopay.helpers import now_ts
from studiopay.infra.sql import Database
from studiopay.mailer import LogMailer
from studiopay.model.db import Base, Service, User
from studiopay.model.gate._redis import Gate as RedisGate
from studiopay.provider import MockGateway
from studiopay.webhook import WebhookVerifier


@pytest.fixture
async def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path}/studiopay-test.db")
    await database.create_all(Base.metadata)
    yield database
    await database.dispose()


@pytest.fixture
async def redis():
    r = aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.flushall()


@pytest.fixture
def gate(redis):
    return RedisGate(redis)


@pytest.fixture
def gateway():
    return MockGateway()


@pytest.fixture
def mailer():
    return LogMailer()


@pytest.fixture
async def emails(db, mailer):
    guarantee = EmailGuarantee(db, mailer, fallback_delay=3600)
    yield guarantee
    await guarantee.stop()


@pytest.fixture
async def catalog(db):
    """Two active services, one with links, one with a legacy url only."""
    now = now_ts()
    async with db.tx() as s:
        s.add_all([
            Service(
                id="svc-logo", slug="logo", title_en="Logo Design",
                title_ar="تصميم شعار", prices={"SAR": 10000, "USD": 2700},
                delivery_links=[
                    {"title": "Logo brief", "url": "https://files.test/logo",
                     "locale": "en", "tags": ["brief"]},
                ],
                legacy_links=[], is_active=True, order_count=0,
                created_at=now,
            ),
            Service(
                id="svc-social", slug="social", title_en="Social Kit",
                title_ar="حزمة", prices={"SAR": 5000, "USD": 1350},
                delivery_links=[],
                legacy_links=["https://files.test/social"],
                is_active=True, order_count=0, created_at=now,
            ),
            Service(
                id="svc-retired", slug="retired", title_en="Retired",
                title_ar="", prices={"SAR": 7000}, delivery_links=[],
                legacy_links=[], is_active=False, order_count=0,
                created_at=now,
            ),
            User(id="user-1", email="member@example.com", name="Member",
                 created_at=now),
        ])


@pytest.fixture
async def client(db, gate, gateway, mailer, monkeypatch):
    monkeypatch.setattr(config, "FRONTEND_URL", "http://frontend.test")
    server.install_services(
        server.app.state, db=db, gate=gate, gateway=gateway, mailer=mailer,
        verifier=WebhookVerifier(mode="sandbox"),
    )
    transport = ASGITransport(app=server.app)
    async with AsyncClient(transport=transport,
                           base_url="http://test") as c:
        yield c
    await server.app.state.emails.stop()


@pytest.fixture
async def admin_client(client):
    resp = await client.post("/admin/login", data={
        "username": config.ADMIN_USERNAME,
        "password": config.ADMIN_PASSWORD,
    })
    assert resp.status_code == 200
    return client
