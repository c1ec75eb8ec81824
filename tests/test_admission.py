from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, FastAPI
from fastapi.testclient import TestClient

from deptcrud import responses
from deptcrud.admission import Allowed, Denied, RateLimiter, RequestDescriptor
from deptcrud.config import settings
from deptcrud.ratelimit import LimiterConfig

LOGIN = RequestDescriptor("203.0.113.7", "POST", "/auth/login")
DEPARTMENTS = RequestDescriptor("203.0.113.7", "GET", "/api/v1/departments")


def _assert_rate_limit_body(body: dict, path: str) -> None:
    timestamp = body.pop("timestamp")
    assert body == {
        "message": "Rate limit exceeded",
        "error": "You have exceeded the rate limit. Please try again later.",
        "path": path,
        "status": 429,
        "data": None,
    }
    assert datetime.fromisoformat(timestamp).tzinfo is not None


def test_login_scenario(clock):
    limiter = RateLimiter("auth", LimiterConfig.every(30, 1, 300), clock)

    assert isinstance(limiter.check(LOGIN), Allowed)

    clock.advance(10)
    denied = limiter.check(LOGIN)
    assert isinstance(denied, Denied)
    _assert_rate_limit_body(dict(denied.body), "/auth/login")

    clock.advance(21)
    assert limiter.check(LOGIN).allowed


def test_department_read_scenario(clock):
    limiter = RateLimiter("departments", LimiterConfig.every(5, 2, 600), clock)

    assert limiter.check(DEPARTMENTS).allowed
    assert limiter.check(DEPARTMENTS).allowed
    assert not limiter.check(DEPARTMENTS).allowed

    clock.advance(5)
    assert limiter.check(DEPARTMENTS).allowed
    assert not limiter.check(DEPARTMENTS).allowed


def test_denied_checks_still_refresh_last_seen(clock):
    limiter = RateLimiter("auth", LimiterConfig.every(30, 1, 300), clock)
    limiter.check(LOGIN)
    clock.advance(7)
    assert not limiter.check(LOGIN).allowed
    assert limiter.registry.last_seen(LOGIN.key) == clock()


def test_keys_are_per_method_and_path(clock):
    limiter = RateLimiter("departments", LimiterConfig.every(5, 1, 600), clock)
    assert limiter.check(DEPARTMENTS).allowed
    assert not limiter.check(DEPARTMENTS).allowed
    assert limiter.check(RequestDescriptor("203.0.113.7", "POST", "/api/v1/departments")).allowed
    assert limiter.check(RequestDescriptor("203.0.113.7", "GET", "/api/v1/departments/d001")).allowed
    assert limiter.check(RequestDescriptor("198.51.100.1", "GET", "/api/v1/departments")).allowed


def test_route_groups_are_independent(clock):
    auth = RateLimiter("auth", LimiterConfig.every(30, 1, 300), clock)
    users = RateLimiter("users", LimiterConfig.every(1, 10, 900), clock)
    same = RequestDescriptor("203.0.113.7", "GET", "/shared")
    assert auth.check(same).allowed
    assert not auth.check(same).allowed
    assert all(users.check(same).allowed for _ in range(10))
    assert auth.registry is not users.registry


def _app(limiter: RateLimiter) -> FastAPI:
    app = FastAPI()
    responses.install(app)
    group = APIRouter(prefix="/auth", dependencies=[Depends(limiter)])
    calls: list[int] = []

    @group.post("/login")
    def _login():
        calls.append(1)
        return {"ok": True}

    app.include_router(group)
    app.state.calls = calls
    return app


def test_dependency_short_circuits_with_429(clock):
    limiter = RateLimiter("auth", LimiterConfig.every(30, 1, 300), clock)
    app = _app(limiter)
    previous = settings.RATE_LIMIT_ENABLED
    settings.RATE_LIMIT_ENABLED = True
    try:
        with TestClient(app) as client:
            first = client.post("/auth/login")
            second = client.post("/auth/login")
            clock.advance(30)
            third = client.post("/auth/login")
    finally:
        settings.RATE_LIMIT_ENABLED = previous

    assert first.status_code == 200
    assert second.status_code == 429
    _assert_rate_limit_body(second.json(), "/auth/login")
    assert third.status_code == 200
    assert len(app.state.calls) == 2


def test_dependency_honours_disabled_flag(clock):
    limiter = RateLimiter("auth", LimiterConfig.every(30, 1, 300), clock)
    app = _app(limiter)
    previous = settings.RATE_LIMIT_ENABLED
    settings.RATE_LIMIT_ENABLED = False
    try:
        with TestClient(app) as client:
            codes = [client.post("/auth/login").status_code for _ in range(3)]
    finally:
        settings.RATE_LIMIT_ENABLED = previous
    assert codes == [200, 200, 200]
    assert len(limiter.registry) == 0


def test_forwarded_for_is_used_when_trusted(clock):
    limiter = RateLimiter("auth", LimiterConfig.every(30, 1, 300), clock)
    app = _app(limiter)
    previous = (settings.RATE_LIMIT_ENABLED, settings.TRUST_FORWARDED_FOR)
    settings.RATE_LIMIT_ENABLED = True
    settings.TRUST_FORWARDED_FOR = True
    try:
        with TestClient(app) as client:
            a = client.post("/auth/login", headers={"X-Forwarded-For": "192.0.2.1, 10.0.0.1"})
            b = client.post("/auth/login", headers={"X-Forwarded-For": "192.0.2.2"})
            again = client.post("/auth/login", headers={"X-Forwarded-For": "192.0.2.1"})
    finally:
        settings.RATE_LIMIT_ENABLED, settings.TRUST_FORWARDED_FOR = previous
    assert [a.status_code, b.status_code, again.status_code] == [200, 200, 429]
    assert {key.address for key in limiter.registry.keys()} == {"192.0.2.1", "192.0.2.2"}
