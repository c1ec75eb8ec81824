"""Access logging middleware emitting JSON records with request IDs."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from .responses import json_error

SENSITIVE_HEADERS = {"authorization"}

access_log = logging.getLogger("deptcrud.access")


def _req_id(req: Request) -> str:
    """Return the inbound request ID or generate a UUID4."""

    return req.headers.get("x-request-id") or str(uuid.uuid4())


def _redact_headers(headers: dict[str, str]) -> dict[str, str]:
    return {
        key: ("<redacted>" if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Log one JSON record per request and always answer with `X-Request-ID`.

    Unhandled exceptions are logged and turned into a 500 envelope here, so
    the client still gets the request ID it can quote back to operators.
    """

    async def dispatch(self, request: Request, call_next: Callable):  # type: ignore[override]
        request_id = _req_id(request)
        request.state.request_id = request_id
        start = time.time()
        error: str | None = None
        try:
            response: Response = await call_next(request)
        except Exception as exc:  # noqa: BLE001
            error = repr(exc)
            access_log.exception("unhandled error on %s %s", request.method, request.url.path)
            response = json_error(
                request.url.path, 500, "Internal Server Error", "An unexpected error occurred"
            )
        response.headers["X-Request-ID"] = request_id

        record = {
            "ts": int(time.time()),
            "msg": "access",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "query": str(request.url.query),
            "status": response.status_code,
            "duration_ms": int((time.time() - start) * 1000),
            "client_ip": request.client.host if request.client else None,
            "headers": _redact_headers(
                {
                    key: value
                    for key, value in request.headers.items()
                    if key.lower() in {"authorization", "user-agent"}
                }
            ),
        }
        if error:
            record["error"] = error
        access_log.log(logging.ERROR if error else logging.INFO, json.dumps(record))
        return response
