from typing import List, Union

import httpx
import pytest
from fastapi.testclient import TestClient

from keygate.config import Settings
from keygate.server import create_app

ADMIN_USER = "admin"
ADMIN_PASS = "admin123"
PROVIDER_URL = "https://provider.test/api/v2"


class Upstream:
    """Scripted provider panel: answers queued responses in order and
    records every request it receives."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.script: List[Union[httpx.Response, type]] = []

    def queue(self, *responses) -> None:
        self.script.extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.script:
            return httpx.Response(200, json={"ok": True})
        nxt = self.script.pop(0)
        if isinstance(nxt, type) and issubclass(nxt, Exception):
            raise nxt("scripted failure", request=request)
        return nxt


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'keygate-test.db'}",
        secret_key="test-secret",
        admin_username=ADMIN_USER,
        admin_password=ADMIN_PASS,
        provider_max_attempts=3,
        provider_backoff=0.0,
        import_chunk_size=2,
    )


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(settings, upstream):
    app = create_app(settings, transport=httpx.MockTransport(upstream.handler))
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post("/api/admin/login",
                    json={"username": ADMIN_USER, "password": ADMIN_PASS})
    assert r.status_code == 200, r.text
    return client


def make_service(client, **overrides) -> dict:
    body = {
        "name": "Instagram Followers",
        "platform": "Instagram",
        "type": "followers",
        "apiEndpoint": PROVIDER_URL,
        "apiMethod": "POST",
        "requestTemplate": {"key": "pk-123", "action": "add", "service": 7},
    }
    body.update(overrides)
    r = client.post("/api/services", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def make_key(client, **overrides) -> dict:
    r = client.post("/api/keys", json=overrides)
    assert r.status_code == 200, r.text
    return r.json()


def find_key(client, value: str) -> dict:
    keys = client.get("/api/keys").json()
    return next(k for k in keys if k["value"] == value)


def log_types(client) -> List[str]:
    return [e["type"] for e in client.get("/api/logs").json()]


@pytest.fixture
def service(admin_client):
    return make_service(admin_client)
