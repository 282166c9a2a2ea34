"""
Pytest configuration and fixtures.

Every test gets fresh tables in a shared in-memory SQLite database, a fresh
in-process stand-in for Redis, and a config gateway whose HTTP calls are
answered by an httpx.MockTransport.
"""
import json
import os
import time
from typing import Any, Dict, List, Optional

# Settings are read at import time; pin them before hikeclub is imported.
os.environ.update(
    {
        "APP_ENV": "test",
        "DATABASE_URL": "sqlite://",
        "AUTH_JWT_SECRET": "test-jwt-secret",
        "TURNSTILE_SECRET_KEY": "test-turnstile-secret",
        "RESEND_API_KEY": "test-resend-key",
        "EDGE_CONFIG_ID": "ecfg_test",
        "EDGE_CONFIG_READ_TOKEN": "test-read-token",
        "VERCEL_API_TOKEN": "test-vercel-token",
        "VERCEL_TEAM_ID": "",
        "IP_HASH_SALT": "test-salt",
        "WHATSAPP_GROUP_LINK": "https://chat.whatsapp.com/FALLBACK",
        "PUBLIC_BASE_URL": "https://hikeclub.test",
        "RATE_LIMIT_ENABLED": "true",
    }
)

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlmodel import SQLModel

from hikeclub import database
from hikeclub.config import settings
from hikeclub.database import drop_db, init_db
from hikeclub.main import app
from hikeclub.services import mailer, rate_limit, turnstile
from hikeclub.services.gateway import ConfigGateway, get_config_gateway

LIVE_LINK = "https://chat.whatsapp.com/LIVEGROUP"


class FakeRedis:
    """The three commands the rate limiter uses, with real expiry."""

    def __init__(self) -> None:
        self.store: Dict[str, int] = {}
        self.expiry: Dict[str, float] = {}

    def _purge(self, key: str) -> None:
        exp = self.expiry.get(key)
        if exp is not None and exp <= time.monotonic():
            self.store.pop(key, None)
            self.expiry.pop(key, None)

    def incr(self, key: str) -> int:
        self._purge(key)
        self.store[key] = self.store.get(key, 0) + 1
        return self.store[key]

    def expire(self, key: str, seconds: int) -> bool:
        self.expiry[key] = time.monotonic() + seconds
        return True

    def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self.store:
            return -2
        exp = self.expiry.get(key)
        if exp is None:
            return -1
        return max(0, int(exp - time.monotonic()))


class EdgeConfigStub:
    """
    Plays both the edge config read endpoint and the Vercel management API.
    """

    def __init__(self, items: Optional[Dict[str, Any]] = None) -> None:
        self.items: Dict[str, Any] = dict(items or {"whatsapp_link": LIVE_LINK, "qr_redirect_enabled": True})
        self.reads = 0
        self.writes: List[Dict[str, Any]] = []
        self.fail_reads = False
        self.write_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            self.reads += 1
            if self.fail_reads:
                return httpx.Response(503, json={"error": "unavailable"})
            return httpx.Response(200, json=self.items)

        if request.method == "PATCH":
            body = json.loads(request.content)
            self.writes.append({"url": str(request.url), "body": body, "auth": request.headers.get("authorization")})
            if self.write_status >= 400:
                return httpx.Response(self.write_status, json={"error": "nope"})
            for item in body["items"]:
                self.items[item["key"]] = item["value"]
            return httpx.Response(200, json={"status": "ok"})

        return httpx.Response(405)


@pytest.fixture(autouse=True)
def fresh_db():
    drop_db()
    init_db()
    yield
    drop_db()


@pytest.fixture
def file_db(tmp_path, monkeypatch):
    """
    A real file database: one connection per thread, writers serialised by SQLite.
    """
    engine = database.get_engine(f"sqlite:///{tmp_path / 'race.sqlite'}")
    database.register_models()
    SQLModel.metadata.create_all(engine)
    monkeypatch.setattr(database, "engine", engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def fake_redis():
    r = FakeRedis()
    rate_limit.set_redis_client(r)
    yield r
    rate_limit.set_redis_client(None)


@pytest.fixture
def edge_config():
    return EdgeConfigStub()


@pytest.fixture
def gateway(edge_config):
    client = httpx.Client(transport=httpx.MockTransport(edge_config.handler))
    gw = ConfigGateway(settings, client=client)
    yield gw
    client.close()


@pytest.fixture
def outbox(monkeypatch):
    sent: List[mailer.Email] = []

    def _send(email, **kwargs):
        sent.append(email)
        return "msg_test"

    monkeypatch.setattr(mailer, "send", _send)
    return sent


@pytest.fixture
def human(monkeypatch):
    """Turnstile always passes."""
    monkeypatch.setattr(turnstile, "verify_turnstile", lambda token, **kwargs: bool(token))


@pytest.fixture
def client(gateway):
    app.dependency_overrides[get_config_gateway] = lambda: gateway
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_jwt(sub: str = "kp_123", email: str = "chair@hikeclub.test", roles: Any = None, **claims: Any) -> str:
    payload: Dict[str, Any] = {"sub": sub, "email": email, "exp": int(time.time()) + 3600}
    if roles is not None:
        payload["roles"] = roles
    payload.update(claims)
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm="HS256")


@pytest.fixture
def committee_headers():
    return {"Authorization": f"Bearer {make_jwt(roles=['committee'])}"}


@pytest.fixture
def member_headers():
    return {"Authorization": f"Bearer {make_jwt(sub='kp_456', email='member@hikeclub.test', roles=['member'])}"}
