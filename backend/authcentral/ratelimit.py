"""
AuthCentral Rate Limiting
Fixed-window request counters per client key, backed by an injectable store
"""
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import redis.asyncio as redis
from fastapi import Request

from .errors import RateLimitExceeded
from .utils import get_client_ip, log_security_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowState:
    """Counter value after an increment, and time left in its window"""

    count: int
    reset_in: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int


class RateLimitStore(ABC):
    """Atomic increment-with-expiry over fixed windows"""

    @abstractmethod
    async def increment(self, key: str, window_seconds: float, ceiling: Optional[int] = None) -> WindowState:
        """Reset the window if it has elapsed, then add one (up to `ceiling`) and return the new state"""

    async def close(self) -> None:
        return None


class InMemoryRateLimitStore(RateLimitStore):
    """Process-local counters guarded by a lock"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_every: int = 1000):
        self._clock = clock
        self._windows: Dict[str, List[float]] = {}
        self._lock = threading.Lock()
        self._sweep_every = sweep_every
        self._calls = 0

    async def increment(self, key: str, window_seconds: float, ceiling: Optional[int] = None) -> WindowState:
        with self._lock:
            now = self._clock()
            window = self._windows.get(key)
            if window is None or now - window[0] >= window_seconds:
                window = [now, 0]
                self._windows[key] = window
            if ceiling is None or window[1] < ceiling:
                window[1] += 1

            self._calls += 1
            if self._calls % self._sweep_every == 0:
                self._sweep(now, window_seconds)

            return WindowState(count=int(window[1]), reset_in=window[0] + window_seconds - now)

    def _sweep(self, now: float, window_seconds: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= window_seconds]
        for k in expired:
            del self._windows[k]

    def __len__(self) -> int:
        return len(self._windows)


class RedisRateLimitStore(RateLimitStore):
    """Counters shared across instances through Redis INCR"""

    def __init__(self, client: redis.Redis, prefix: str = "rate_limit:"):
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimitStore":
        return cls(redis.from_url(url, decode_responses=True, health_check_interval=30))

    async def increment(self, key: str, window_seconds: float, ceiling: Optional[int] = None) -> WindowState:
        redis_key = f"{self.prefix}{key}"
        window_ms = int(window_seconds * 1000)

        # MULTI/EXEC: INCR and first-hit expiry apply together
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.pexpire(redis_key, window_ms, nx=True)
            pipe.pttl(redis_key)
            count, _, ttl_ms = await pipe.execute()

        count = int(count)
        if ceiling is not None:
            # INCR cannot stop at the ceiling; the key expires with its window
            count = min(count, ceiling)
        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return WindowState(count=count, reset_in=ttl_ms / 1000.0)

    async def close(self) -> None:
        await self.client.aclose()


class RateLimiter:
    """Fixed-window limiter: the request that crosses the limit is counted and rejected"""

    def __init__(self, store: RateLimitStore, limit: int = 10, window_seconds: float = 300):
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds

    @staticmethod
    def make_key(client_address: str, route_class: str) -> str:
        return f"{route_class}:{client_address}"

    async def check(self, key: str) -> RateLimitDecision:
        # Counts stop at limit + 1
        state = await self.store.increment(key, self.window_seconds, ceiling=self.limit + 1)
        allowed = state.count <= self.limit
        return RateLimitDecision(
            allowed=allowed,
            count=state.count,
            limit=self.limit,
            retry_after=0 if allowed else max(math.ceil(state.reset_in), 1),
        )

    async def allow(self, key: str) -> bool:
        decision = await self.check(key)
        return decision.allowed


def build_rate_limit_store(redis_url: Optional[str]) -> RateLimitStore:
    if redis_url:
        logger.info("Using Redis rate limit store")
        return RedisRateLimitStore.from_url(redis_url)
    return InMemoryRateLimitStore()


def rate_limited(route_class: str):
    """Dependency factory: reject fast once a client uses up its allowance for a route class"""

    async def dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        client_ip = get_client_ip(request, request.app.state.trusted_proxies)
        decision = await limiter.check(RateLimiter.make_key(client_ip, route_class))
        if not decision.allowed:
            log_security_event(
                "rate_limited",
                {"ip": client_ip, "route": route_class, "count": decision.count},
                level=logging.WARNING,
            )
            raise RateLimitExceeded(decision.retry_after)

    return dependency


__all__ = [
    "WindowState",
    "RateLimitDecision",
    "RateLimitStore",
    "InMemoryRateLimitStore",
    "RedisRateLimitStore",
    "RateLimiter",
    "build_rate_limit_store",
    "rate_limited",
]
