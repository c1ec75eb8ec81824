from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

REQS = Counter(
    "deptcrud_requests_total",
    "Requests",
    ["method", "path", "status"],
)
LAT = Histogram(
    "deptcrud_latency_seconds",
    "Latency",
    ["method", "path"],
)
RATE_LIMITED = Counter(
    "deptcrud_rate_limited_total",
    "Requests rejected by a route group limiter",
    ["limiter"],
)
LIMITER_CLIENTS = Gauge(
    "deptcrud_rate_limit_clients",
    "Tracked client buckets per limiter",
    ["limiter"],
)
LIMITER_EVICTIONS = Counter(
    "deptcrud_rate_limit_evictions_total",
    "Idle client buckets evicted",
    ["limiter"],
)


def router() -> APIRouter:
    r = APIRouter()

    @r.get("/metrics", include_in_schema=False)
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return r
