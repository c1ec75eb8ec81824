"""Uniform JSON envelope for every response the service emits."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

RATE_LIMIT_MESSAGE = "Rate limit exceeded"
RATE_LIMIT_ERROR = "You have exceeded the rate limit. Please try again later."


class HttpResponse(BaseModel):
    message: str
    error: Any = None
    path: str
    status: int
    data: Any = None
    timestamp: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def envelope(
    status: int,
    message: str,
    path: str,
    error: Any = None,
    data: Any = None,
) -> dict[str, Any]:
    body = HttpResponse(
        message=message,
        error=error,
        path=path,
        status=status,
        data=data,
        timestamp=_now(),
    )
    return jsonable_encoder(body)


def json_success(request: Request, status: int, message: str, data: Any = None) -> JSONResponse:
    return JSONResponse(
        envelope(status, message, request.url.path, data=data), status_code=status
    )


def json_error(
    path: str, status: int, message: str, error: Any, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(
        envelope(status, message, path, error=error),
        status_code=status,
        headers=headers,
    )


class ApiError(Exception):
    """An error that maps one-to-one onto an enveloped HTTP response."""

    def __init__(self, status: int, message: str, error: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.error = error

    def body(self, path: str) -> dict[str, Any]:
        return envelope(self.status, self.message, path, error=self.error)


def rate_limit_error() -> ApiError:
    return ApiError(429, RATE_LIMIT_MESSAGE, RATE_LIMIT_ERROR)


_STATUS_TEXT = {
    404: ("Not Found", "The requested resource was not found"),
    405: ("Method Not Allowed", "The requested method is not allowed for this resource"),
}


def format_validation_errors(exc: RequestValidationError) -> list[dict[str, str]]:
    out: list[dict[str, str]] = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        out.append({"field": ".".join(loc) or "body", "message": err.get("msg", "invalid")})
    return out


async def _api_error(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(exc.body(request.url.path), status_code=exc.status)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message, error = _STATUS_TEXT.get(exc.status_code, (str(exc.detail), str(exc.detail)))
    return json_error(
        request.url.path,
        exc.status_code,
        message,
        error,
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return json_error(
        request.url.path, 400, "Invalid request body", format_validation_errors(exc)
    )


def install(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _api_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
