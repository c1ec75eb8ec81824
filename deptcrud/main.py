from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import BaseModel

from . import auth, departments, responses, users
from .admission import RateLimiter
from .config import reload_settings, settings
from .headers import SecurityHeadersMiddleware
from .logging import AccessLogMiddleware
from .logging_setup import init_logging
from .metrics import LAT, REQS, router as metrics_router
from .ratelimit import LimiterConfig
from .store import init_db, refresh_engine


class Health(BaseModel):
    status: str
    time: str


# route group -> settings prefix of its *_RATE_LIMIT_* fields
LIMIT_PREFIXES = {"auth": "AUTH", "departments": "DEPARTMENT", "users": "USER"}


def limiter_config(prefix: str) -> LimiterConfig:
    return LimiterConfig.every(
        float(getattr(settings, f"{prefix}_RATE_LIMIT_INTERVAL_SECONDS")),
        int(getattr(settings, f"{prefix}_RATE_LIMIT_BURST")),
        float(getattr(settings, f"{prefix}_RATE_LIMIT_TTL_SECONDS")),
        sweep_interval=float(settings.RATE_LIMIT_SWEEP_SECONDS),
        shards=int(settings.RATE_LIMIT_SHARDS),
    )


limiters: dict[str, RateLimiter] = {
    name: RateLimiter(name, limiter_config(prefix)) for name, prefix in LIMIT_PREFIXES.items()
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    reload_settings()
    refresh_engine()
    init_db()
    if settings.ADMIN_USERNAME and settings.ADMIN_PASSWORD:
        auth.ensure_admin(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD, settings.ADMIN_EMAIL)
    for name, limiter in limiters.items():
        limiter.configure(limiter_config(LIMIT_PREFIXES[name]))
        limiter.start()
    try:
        yield
    finally:
        for limiter in limiters.values():
            await limiter.stop()


init_logging(settings.LOG_LEVEL)

app = FastAPI(title="Department CRUD", version="0.1.0", lifespan=lifespan)
responses.install(app)
app.add_middleware(GZipMiddleware, minimum_size=1000)

origins = [o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(AccessLogMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.include_router(metrics_router())


@app.middleware("http")
async def _metrics(request: Request, call_next):
    method = request.method
    path = request.url.path
    start = time.time()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        REQS.labels(method, path, str(status_code)).inc()
        LAT.labels(method, path).observe(time.time() - start)


@app.get("/health", response_model=Health)
def health():
    return Health(status="ok", time=datetime.now(timezone.utc).isoformat())


app.include_router(auth.router(Depends(limiters["auth"])))
app.include_router(
    departments.router(Depends(limiters["departments"])),
    prefix="/api/v1",
    dependencies=[Depends(auth.require_auth)],
)
app.include_router(
    users.router(Depends(limiters["users"])),
    prefix="/api/v1",
    dependencies=[Depends(auth.require_auth)],
)
