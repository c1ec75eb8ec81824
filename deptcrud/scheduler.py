from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from .metrics import LIMITER_CLIENTS, LIMITER_EVICTIONS
from .ratelimit import ClientRegistry

log = logging.getLogger(__name__)


class SweepState:
    def __init__(self) -> None:
        self.running = False
        self.last_started: Optional[float] = None
        self.last_finished: Optional[float] = None
        self.last_error: Optional[str] = None
        self.total_runs = 0
        self.total_errors = 0
        self.total_evicted = 0


async def run_periodic(
    task: Callable[[], Awaitable[None]],
    interval: float,
    state: SweepState,
    jitter: float = 0,
    backoff_max: float = 60,
) -> None:
    backoff = 1.0
    while True:
        delay = interval + random.uniform(0, max(0.0, jitter))
        await asyncio.sleep(delay)
        if state.running:
            continue
        state.running = True
        state.last_started = time.time()
        try:
            await task()
            state.last_error = None
            state.total_runs += 1
            backoff = 1.0
        except Exception as exc:  # noqa: BLE001
            log.exception("periodic task failed")
            state.last_error = str(exc)
            state.total_errors += 1
            await asyncio.sleep(min(backoff, backoff_max))
            backoff = min(backoff * 2, backoff_max)
        finally:
            state.last_finished = time.time()
            state.running = False


class Sweeper:
    """Periodically evicts idle clients from one registry."""

    def __init__(self, name: str, registry: ClientRegistry, interval: float) -> None:
        self.name = name
        self.registry = registry
        self.interval = interval
        self.state = SweepState()
        self._task: asyncio.Task[None] | None = None

    @property
    def started(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep_once(self) -> int:
        removed = self.registry.sweep()
        self.state.total_evicted += removed
        LIMITER_EVICTIONS.labels(self.name).inc(removed)
        LIMITER_CLIENTS.labels(self.name).set(len(self.registry))
        if removed:
            log.debug("limiter %s evicted %d idle clients", self.name, removed)
        return removed

    async def _tick(self) -> None:
        self.sweep_once()

    def start(self) -> asyncio.Task[None]:
        if self.started:
            assert self._task is not None
            return self._task
        self._task = asyncio.create_task(
            run_periodic(self._tick, self.interval, self.state),
            name=f"sweeper:{self.name}",
        )
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self.state.running = False
