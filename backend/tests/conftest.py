from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from eddez import config
from eddez.schemas import KnowledgeItem

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-secret"


@pytest.fixture()
def app_db_path(tmp_path, monkeypatch):
    path = tmp_path / "app.sqlite"
    monkeypatch.setattr(config, "APP_DB_PATH", path)
    return path


@pytest.fixture()
def admin_env(monkeypatch):
    monkeypatch.setenv("EDDEZ_ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("EDDEZ_ADMIN_PASSWORD", ADMIN_PASSWORD)


@pytest.fixture()
def make_client(app_db_path, admin_env) -> Iterator:
    from eddez.main import app

    clients: list[TestClient] = []

    def _make() -> TestClient:
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.fixture()
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture()
def admin_client(make_client) -> TestClient:
    c = make_client()
    resp = c.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert resp.status_code == 200, resp.text
    return c


def signed_up(client: TestClient, email: str, name: str = "Test User", password: str = "hunter22") -> TestClient:
    resp = client.post("/api/auth/signup", json={"email": email, "password": password, "name": name})
    assert resp.status_code == 200, resp.text
    return client


@pytest.fixture()
def return_policy_kb() -> list[KnowledgeItem]:
    return [
        KnowledgeItem(
            id="r1",
            topic="Return Policy",
            content="Items can be returned within 30 days.",
            button_name="Start a return",
            button_url="https://a.com/return",
        ),
        KnowledgeItem(id="s1", topic="Shipping Policy", content="Standard shipping takes 3-5 business days."),
    ]
