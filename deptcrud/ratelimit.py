"""In-memory token bucket rate limiting keyed by client.

Each protected route group owns one :class:`ClientRegistry`. The registry maps
a :class:`ClientKey` to a :class:`TokenBucket`, creating buckets lazily and
forgetting them once they have been idle longer than the configured TTL.

The map is striped across several shards, each guarded by its own lock, and
every bucket carries a private lock for its numeric state. A request therefore
holds at most one shard lock (briefly, for the dictionary lookup) and then the
lock of its own bucket, so unrelated clients never queue behind each other.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterator, NamedTuple

Clock = Callable[[], float]


def monotonic() -> float:
    return time.monotonic()


class ClientKey(NamedTuple):
    address: str
    method: str
    path: str

    def __str__(self) -> str:
        return f"{self.address}:{self.method}:{self.path}"


def normalize_path(path: str) -> str:
    if not path:
        return "/"
    if len(path) > 1 and path.endswith("/"):
        return path.rstrip("/") or "/"
    return path


def client_key(address: str | None, method: str, path: str) -> ClientKey:
    """Build the limiter key for one (address, method, path) triple."""

    return ClientKey(address or "unknown", method.upper(), normalize_path(path))


@dataclass(frozen=True)
class LimiterConfig:
    rate: float
    burst: int
    idle_ttl: float
    sweep_interval: float = 60.0
    shards: int = 16

    def __post_init__(self) -> None:
        if self.rate < 0:
            raise ValueError("rate must be >= 0")
        if self.burst < 1:
            raise ValueError("burst must be >= 1")
        if self.idle_ttl <= 0:
            raise ValueError("idle_ttl must be > 0")
        if self.sweep_interval <= 0:
            raise ValueError("sweep_interval must be > 0")
        if self.shards < 1:
            raise ValueError("shards must be >= 1")

    @classmethod
    def every(
        cls,
        interval: float,
        burst: int,
        idle_ttl: float,
        sweep_interval: float = 60.0,
        shards: int = 16,
    ) -> "LimiterConfig":
        """One token every ``interval`` seconds."""

        if interval <= 0:
            raise ValueError("interval must be > 0")
        return cls(1.0 / interval, burst, idle_ttl, sweep_interval, shards)


class TokenBucket:
    """Token bucket starting full; one token per admitted request."""

    __slots__ = ("rate", "capacity", "_tokens", "_updated", "_clock", "_lock")

    def __init__(self, rate: float, capacity: int, clock: Clock = monotonic) -> None:
        self.rate = max(float(rate), 0.0)
        self.capacity = float(capacity)
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self, now: float) -> None:
        # a clock that steps backwards adds nothing and keeps the newer mark
        elapsed = now - self._updated
        if elapsed > 0:
            self._updated = now
        else:
            elapsed = 0.0
        tokens = max(self._tokens, 0.0) + elapsed * self.rate
        self._tokens = min(self.capacity, tokens)

    def allow(self) -> bool:
        with self._lock:
            self._refill(self._clock())
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    @property
    def tokens(self) -> float:
        with self._lock:
            self._refill(self._clock())
            return self._tokens


@dataclass
class RegistryEntry:
    bucket: TokenBucket
    last_seen: float


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: dict[ClientKey, RegistryEntry] = {}


class ClientRegistry:
    def __init__(self, config: LimiterConfig, clock: Clock = monotonic) -> None:
        self.config = config
        self.clock = clock
        self._shards = [_Shard() for _ in range(config.shards)]

    def _shard(self, key: ClientKey) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get_or_create(
        self, key: ClientKey, config: LimiterConfig | None = None
    ) -> TokenBucket:
        """Return the bucket for ``key``, creating a full one on first sight."""

        cfg = config or self.config
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is None:
                now = self.clock()
                entry = RegistryEntry(TokenBucket(cfg.rate, cfg.burst, self.clock), now)
                shard.entries[key] = entry
            return entry.bucket

    def touch(self, key: ClientKey) -> None:
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
            if entry is not None:
                entry.last_seen = self.clock()

    def last_seen(self, key: ClientKey) -> float | None:
        shard = self._shard(key)
        with shard.lock:
            entry = shard.entries.get(key)
            return entry.last_seen if entry is not None else None

    def sweep(self, idle_ttl: float | None = None, now: float | None = None) -> int:
        """Drop entries idle for longer than ``idle_ttl``; return how many."""

        ttl = self.config.idle_ttl if idle_ttl is None else idle_ttl
        cutoff = (self.clock() if now is None else now) - ttl
        removed = 0
        for shard in self._shards:
            with shard.lock:
                stale = [k for k, e in shard.entries.items() if e.last_seen < cutoff]
                for key in stale:
                    del shard.entries[key]
                removed += len(stale)
        return removed

    def clear(self) -> None:
        for shard in self._shards:
            with shard.lock:
                shard.entries.clear()

    def keys(self) -> Iterator[ClientKey]:
        for shard in self._shards:
            with shard.lock:
                snapshot = list(shard.entries)
            yield from snapshot

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, ClientKey):
            return False
        shard = self._shard(key)
        with shard.lock:
            return key in shard.entries

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.entries)
        return total
