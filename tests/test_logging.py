from __future__ import annotations

import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from deptcrud.logging import AccessLogMiddleware


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(AccessLogMiddleware)

    @app.get("/boom")
    def _boom() -> None:
        raise RuntimeError("boom")

    @app.get("/ok")
    def _ok() -> dict:
        return {"ok": True}

    return app


def test_request_id_header_on_error() -> None:
    with TestClient(_app(), raise_server_exceptions=False) as client:
        response = client.get("/boom")

    assert response.status_code == 500
    assert response.headers["X-Request-ID"]
    body = response.json()
    assert body["status"] == 500
    assert body["path"] == "/boom"


def test_inbound_request_id_is_echoed() -> None:
    with TestClient(_app()) as client:
        response = client.get("/ok", headers={"X-Request-ID": "abc-123"})
    assert response.headers["X-Request-ID"] == "abc-123"


def test_access_record_redacts_authorization(caplog) -> None:
    caplog.set_level(logging.INFO, logger="deptcrud.access")
    with TestClient(_app()) as client:
        client.get("/ok", headers={"Authorization": "Bearer secret"})

    records = [json.loads(r.getMessage()) for r in caplog.records if r.name == "deptcrud.access"]
    assert records
    assert records[-1]["headers"]["authorization"] == "<redacted>"
    assert records[-1]["status"] == 200
