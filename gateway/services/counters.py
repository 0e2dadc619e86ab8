"""
Window Counters - Atomic fixed-window hit counting.

The rate limiter only sees the WindowCounter protocol. The in-process
implementation serializes hits with an asyncio lock; the Redis one runs
the same check-and-increment as a Lua script so several gateway processes
share windows.

A window starts at its first hit and lasts window_seconds. Rejected hits
do not count toward the window.
"""

import asyncio
import math
import time
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

from redis.asyncio import Redis

from gateway.models.domain import WindowState
from gateway.observability.logging import get_logger

logger = get_logger(__name__)


class WindowCounter(Protocol):
    """Atomic fixed-window counter capability."""

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowState:
        """Count one hit against `key` unless the window is already full."""
        ...

    async def reset(self) -> None:
        """Forget every window."""
        ...


@dataclass
class _Window:
    count: int
    reset_at: float


def _seconds_until(reset_at: float, now: float) -> int:
    return max(1, math.ceil(reset_at - now))


class InMemoryWindowCounter:
    """
    Process-local window counter.

    Windows are lost on restart; the credit ledger is the durable backstop.
    """

    CLEANUP_INTERVAL = 300  # 5 minutes

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = asyncio.Lock()
        self._last_cleanup = clock()

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowState:
        async with self._lock:
            now = self._clock()
            self._cleanup(now)

            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window

            if window.count >= limit:
                return WindowState(
                    allowed=False,
                    count=window.count,
                    limit=limit,
                    retry_after=_seconds_until(window.reset_at, now),
                )

            window.count += 1
            return WindowState(
                allowed=True,
                count=window.count,
                limit=limit,
                retry_after=_seconds_until(window.reset_at, now),
            )

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()

    def _cleanup(self, now: float) -> None:
        """Drop expired windows every CLEANUP_INTERVAL seconds."""
        if now - self._last_cleanup < self.CLEANUP_INTERVAL:
            return
        self._last_cleanup = now
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]


# KEYS[1] = window key, ARGV[1] = limit, ARGV[2] = window length in ms
# Returns {allowed (0/1), count, ttl_ms}
_HIT_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
local ttl = redis.call('PTTL', KEYS[1])
if count >= tonumber(ARGV[1]) and ttl > 0 then
    return {0, count, ttl}
end
count = redis.call('INCR', KEYS[1])
if count == 1 or ttl < 0 then
    redis.call('PEXPIRE', KEYS[1], ARGV[2])
    ttl = tonumber(ARGV[2])
end
return {1, count, ttl}
"""


class RedisWindowCounter:
    """Window counter shared across processes through Redis."""

    def __init__(self, redis: Redis, prefix: str = "gateway:window:") -> None:
        self._redis = redis
        self._prefix = prefix
        self._script = redis.register_script(_HIT_SCRIPT)

    async def hit(self, key: str, limit: int, window_seconds: int) -> WindowState:
        allowed, count, ttl_ms = await self._script(
            keys=[self._prefix + key], args=[limit, window_seconds * 1000]
        )
        return WindowState(
            allowed=bool(int(allowed)),
            count=int(count),
            limit=limit,
            retry_after=max(1, math.ceil(int(ttl_ms) / 1000)),
        )

    async def reset(self) -> None:
        async for key in self._redis.scan_iter(match=self._prefix + "*"):
            await self._redis.delete(key)


class KeyedLock:
    """
    One asyncio lock per key, released from memory when unused.

    Usage:
        locks = KeyedLock()
        async with locks.hold(user_id):
            ...
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: defaultdict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)


def build_window_counter(backend: str, redis_url: str) -> WindowCounter:
    """Create the configured window counter backend."""
    if backend == "redis":
        import redis.asyncio as redis

        logger.info("window_counter_backend", backend="redis")
        return RedisWindowCounter(redis.from_url(redis_url, decode_responses=True))
    logger.info("window_counter_backend", backend="memory")
    return InMemoryWindowCounter()
