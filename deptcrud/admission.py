"""Request admission gate built on a per-route-group client registry."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

from fastapi import Request

from .config import settings
from .metrics import RATE_LIMITED
from .ratelimit import ClientKey, ClientRegistry, Clock, LimiterConfig, client_key, monotonic
from .responses import rate_limit_error
from .scheduler import Sweeper

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestDescriptor:
    address: str | None
    method: str
    path: str

    @classmethod
    def from_request(cls, request: Request) -> "RequestDescriptor":
        address = request.client.host if request.client else None
        if getattr(settings, "TRUST_FORWARDED_FOR", False):
            forwarded = request.headers.get("x-forwarded-for", "")
            first = forwarded.split(",", 1)[0].strip()
            if first:
                address = first
        return cls(address, request.method, request.url.path)

    @property
    def key(self) -> ClientKey:
        return client_key(self.address, self.method, self.path)


@dataclass(frozen=True)
class Allowed:
    key: ClientKey
    allowed: bool = True


@dataclass(frozen=True)
class Denied:
    key: ClientKey
    body: dict[str, Any]
    allowed: bool = False


Decision = Union[Allowed, Denied]


class RateLimiter:
    """Admission gate for one route group.

    Used directly through :meth:`check`, or as a FastAPI dependency, in which
    case a denial raises the 429 ``ApiError`` before the handler runs.
    """

    def __init__(self, name: str, config: LimiterConfig, clock: Clock = monotonic) -> None:
        self.name = name
        self.clock = clock
        self.configure(config)

    def configure(self, config: LimiterConfig) -> None:
        """Swap in a new config with an empty registry; the sweeper must be stopped."""

        if getattr(self, "sweeper", None) is not None and self.sweeper.started:
            raise RuntimeError(f"limiter {self.name} is running")
        self.config = config
        self.registry = ClientRegistry(config, self.clock)
        self.sweeper = Sweeper(self.name, self.registry, config.sweep_interval)

    def check(self, descriptor: RequestDescriptor) -> Decision:
        key = descriptor.key
        bucket = self.registry.get_or_create(key)
        admitted = bucket.allow()
        self.registry.touch(key)
        if admitted:
            return Allowed(key)
        RATE_LIMITED.labels(self.name).inc()
        log.debug("limiter %s denied %s", self.name, key)
        return Denied(key, rate_limit_error().body(descriptor.path))

    async def __call__(self, request: Request) -> None:
        if not getattr(settings, "RATE_LIMIT_ENABLED", True):
            return
        decision = self.check(RequestDescriptor.from_request(request))
        if not decision.allowed:
            raise rate_limit_error()

    def start(self) -> None:
        self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()

    def reset(self) -> None:
        self.registry.clear()
