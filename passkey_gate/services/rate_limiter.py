"""
Fixed-window rate limiter for the passkey API.

Counters are keyed by ``prefix:identifier``. Each key holds a count and the
epoch time its window ends; once the window has elapsed the count starts over.
The counter map sits behind a small store interface so a single instance can
keep it in memory while a multi-instance deployment points it at Redis.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
import asyncio
import math
import time

import structlog

logger = structlog.get_logger()


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass
class RateLimitDecision:
    key: str
    limit: int
    count: int
    reset_at: float
    now: float

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)

    @property
    def retry_after(self) -> int:
        return max(math.ceil(self.reset_at - self.now), 1)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(math.floor(self.reset_at))),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimitStore(ABC):
    """Atomic increment of a counter that lives for one window."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def now(self) -> float:
        return self.clock()

    @abstractmethod
    async def increment(self, key: str, window_seconds: float) -> Tuple[int, float]:
        """Count one hit against ``key`` and return ``(count, reset_at)``."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Forget the counter for ``key``."""

    def size(self) -> int:
        return 0


class InMemoryRateLimitStore(RateLimitStore):
    """
    Process-local counter map.

    Expired entries are swept only when the map grows past
    ``sweep_threshold`` keys; there is no background timer. Every instance of
    the service keeps its own map, so limits are per process.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        sweep_threshold: int = 2000,
    ):
        super().__init__(clock)
        self.sweep_threshold = sweep_threshold
        self.entries: Dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()

    def _sweep(self, now: float):
        expired = [key for key, entry in self.entries.items() if entry.reset_at <= now]
        for key in expired:
            del self.entries[key]
        if expired:
            logger.debug("Rate limiter sweep", removed_entries=len(expired), remaining_entries=len(self.entries))

    async def increment(self, key: str, window_seconds: float) -> Tuple[int, float]:
        async with self._lock:
            now = self.now()
            if len(self.entries) >= self.sweep_threshold:
                self._sweep(now)

            entry = self.entries.get(key)
            if entry is None or now >= entry.reset_at:
                entry = RateLimitEntry(count=0, reset_at=now + window_seconds)
                self.entries[key] = entry

            entry.count += 1
            return entry.count, entry.reset_at

    async def reset(self, key: str) -> None:
        async with self._lock:
            self.entries.pop(key, None)

    def size(self) -> int:
        return len(self.entries)


class RedisRateLimitStore(RateLimitStore):
    """
    Counter shared by every instance through Redis.

    INCR, PEXPIRE NX and PTTL run in one MULTI pipeline so the first hit of a
    window starts its expiry and later hits only read it.
    """

    def __init__(self, redis_client, key_prefix: str = "ratelimit:", clock: Callable[[], float] = time.time):
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        super().__init__(clock)

    async def increment(self, key: str, window_seconds: float) -> Tuple[int, float]:
        r = self.redis_client.get_client()
        redis_key = f"{self.key_prefix}{key}"
        window_ms = int(window_seconds * 1000)

        async with r.pipeline(transaction=True) as pipe:
            pipe.incr(redis_key)
            pipe.pexpire(redis_key, window_ms, nx=True)
            pipe.pttl(redis_key)
            count, _, ttl_ms = await pipe.execute()

        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return int(count), self.now() + ttl_ms / 1000.0

    async def reset(self, key: str) -> None:
        r = self.redis_client.get_client()
        await r.delete(f"{self.key_prefix}{key}")


class RateLimiter:
    """
    Applies per-prefix limits on top of a store and keeps request statistics.
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        default_limit: int = 30,
        window_seconds: float = 60.0,
        limits: Optional[Dict[str, int]] = None,
    ):
        self.store = store or InMemoryRateLimitStore()
        self.default_limit = default_limit
        self.window_seconds = window_seconds
        self.limits = dict(limits or {})

        # Statistics
        self.total_requests = 0
        self.blocked_requests = 0

        logger.info(
            "Rate limiter initialized",
            store=type(self.store).__name__,
            default_limit=default_limit,
            window_seconds=window_seconds,
        )

    @classmethod
    def from_settings(cls, settings, store: Optional[RateLimitStore] = None) -> "RateLimiter":
        if store is None:
            store = InMemoryRateLimitStore(sweep_threshold=settings.RATE_LIMIT_SWEEP_THRESHOLD)
        return cls(
            store=store,
            default_limit=settings.RATE_LIMIT_DEFAULT,
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            limits=settings.RATE_LIMITS,
        )

    def limit_for(self, prefix: str) -> int:
        return self.limits.get(prefix, self.default_limit)

    async def hit(
        self,
        prefix: str,
        identifier: str,
        limit: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> RateLimitDecision:
        """
        Count one request for ``prefix:identifier``.

        Args:
            prefix: Purpose of the limited route (e.g. ``passkey-auth``)
            identifier: Client address or account id
            limit: Overrides the per-prefix limit
            window_seconds: Overrides the configured window

        Returns:
            The decision, including the headers to emit
        """
        key = f"{prefix}:{identifier}"
        limit = self.limit_for(prefix) if limit is None else limit
        window = self.window_seconds if window_seconds is None else window_seconds

        count, reset_at = await self.store.increment(key, window)
        decision = RateLimitDecision(
            key=key,
            limit=limit,
            count=count,
            reset_at=reset_at,
            now=self.store.now(),
        )

        self.total_requests += 1
        if not decision.allowed:
            self.blocked_requests += 1
            logger.warning(
                "Rate limit exceeded",
                key=key,
                count=count,
                limit=limit,
                retry_after=decision.retry_after,
            )
        return decision

    def get_stats(self) -> Dict:
        """Get rate limiter statistics"""
        return {
            "total_requests": self.total_requests,
            "blocked_requests": self.blocked_requests,
            "block_rate": self.blocked_requests / max(1, self.total_requests),
            "active_identifiers": self.store.size(),
        }

    async def reset_identifier(self, prefix: str, identifier: str):
        """Reset rate limit for specific identifier (admin use)"""
        await self.store.reset(f"{prefix}:{identifier}")
        logger.info("Rate limit reset", prefix=prefix, identifier=identifier)
