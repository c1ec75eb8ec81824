from __future__ import annotations


def test_metrics_endpoint(app_client) -> None:
    with app_client() as client:
        client.get("/health")
        response = client.get("/metrics")
    assert response.status_code == 200
    assert b"deptcrud_requests_total" in response.content
    assert b"deptcrud_rate_limited_total" in response.content


def test_rate_limited_requests_are_counted(app_client) -> None:
    with app_client(rate_limit=True) as client:
        client.post("/auth/login", json={"username": "nobody", "password": "whatever1"})
        client.post("/auth/login", json={"username": "nobody", "password": "whatever1"})
        response = client.get("/metrics")
    assert b'deptcrud_rate_limited_total{limiter="auth"}' in response.content
