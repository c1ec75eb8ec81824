from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from deptcrud.config import settings
from deptcrud.main import app, limiters

ADMIN = ("admin", "admin-pass-1")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@contextmanager
def _client(tmp_path: Path, rate_limit: bool = False):
    previous = (
        settings.DB_PATH,
        settings.RATE_LIMIT_ENABLED,
        settings.ADMIN_USERNAME,
        settings.ADMIN_PASSWORD,
    )
    settings.DB_PATH = str(tmp_path / "deptcrud.db")
    settings.RATE_LIMIT_ENABLED = rate_limit
    settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD = ADMIN
    for limiter in limiters.values():
        limiter.reset()
    try:
        with TestClient(app) as client:
            yield client
    finally:
        (
            settings.DB_PATH,
            settings.RATE_LIMIT_ENABLED,
            settings.ADMIN_USERNAME,
            settings.ADMIN_PASSWORD,
        ) = previous
        for limiter in limiters.values():
            limiter.reset()


@pytest.fixture
def app_client(tmp_path: Path):
    """Factory yielding a TestClient against a fresh database."""

    def _make(rate_limit: bool = False):
        return _client(tmp_path, rate_limit=rate_limit)

    return _make


def login(client: TestClient, username: str = ADMIN[0], password: str = ADMIN[1]) -> dict:
    response = client.post("/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
