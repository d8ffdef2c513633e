# tests/conftest.py

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

from .fakes import FakeUserStore


@pytest.fixture()
def settings() -> Settings:
    # Lowest bcrypt cost keeps the suite fast
    return Settings(jwt_secret="test-secret", bcrypt_rounds=4)


@pytest.fixture()
def store() -> FakeUserStore:
    return FakeUserStore()


@pytest.fixture()
def app(settings: Settings, store: FakeUserStore):
    return create_app(settings, store=store)


@pytest.fixture()
def client(app) -> TestClient:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def signup(client: TestClient):
    """Sign up a user and return the bearer headers for it."""

    def _signup(username: str = "al", password: str = "pw1") -> dict:
        resp = client.post("/signup", json={"username": username, "password": password})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['jwtToken']}"}

    return _signup
