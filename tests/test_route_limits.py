from __future__ import annotations

from datetime import datetime

from conftest import ADMIN, bearer, login
from deptcrud.config import settings
from deptcrud.headers import SECURITY_HEADERS
from deptcrud.main import limiters


def test_login_is_limited_per_client_and_path(app_client):
    credentials = {"username": ADMIN[0], "password": ADMIN[1]}
    with app_client(rate_limit=True) as client:
        first = client.post("/auth/login", json=credentials)
        second = client.post("/auth/login", json=credentials)
        refresh = client.post(
            "/auth/refresh-token", json={"refreshToken": first.json()["data"]["refreshToken"]}
        )

    assert first.status_code == 200
    assert second.status_code == 429
    body = second.json()
    timestamp = body.pop("timestamp")
    assert body == {
        "message": "Rate limit exceeded",
        "error": "You have exceeded the rate limit. Please try again later.",
        "path": "/auth/login",
        "status": 429,
        "data": None,
    }
    datetime.fromisoformat(timestamp)
    # a different path in the same group has its own bucket
    assert refresh.status_code == 200


def test_department_group_allows_burst_of_two(app_client):
    with app_client(rate_limit=True) as client:
        headers = bearer(login(client)["accessToken"])
        codes = [
            client.get("/api/v1/departments", headers=headers).status_code
            for _ in range(3)
        ]
        users = client.get("/api/v1/users", headers=headers)

    assert codes == [200, 200, 429]
    assert users.status_code == 200


def test_unauthenticated_requests_are_rejected_before_limiting(app_client):
    with app_client(rate_limit=True) as client:
        codes = [client.get("/api/v1/departments").status_code for _ in range(4)]
    assert codes == [401, 401, 401, 401]


def test_sweepers_run_for_app_lifetime(app_client):
    with app_client() as client:
        client.get("/health")
        assert all(limiter.sweeper.started for limiter in limiters.values())
    assert not any(limiter.sweeper.started for limiter in limiters.values())


def test_rejections_carry_security_headers(app_client):
    credentials = {"username": ADMIN[0], "password": ADMIN[1]}
    with app_client(rate_limit=True) as client:
        client.post("/auth/login", json=credentials)
        rejected = client.post("/auth/login", json=credentials)

    assert rejected.status_code == 429
    for name, value in SECURITY_HEADERS.items():
        assert rejected.headers[name] == value


def test_limits_follow_settings_at_startup(app_client):
    previous = settings.DEPARTMENT_RATE_LIMIT_BURST
    settings.DEPARTMENT_RATE_LIMIT_BURST = 3
    try:
        with app_client(rate_limit=True) as client:
            headers = bearer(login(client)["accessToken"])
            codes = [
                client.get("/api/v1/departments", headers=headers).status_code
                for _ in range(4)
            ]
            burst = limiters["departments"].config.burst
    finally:
        settings.DEPARTMENT_RATE_LIMIT_BURST = previous

    assert burst == 3
    assert codes == [200, 200, 200, 429]
