"""
=============================================================================
SITE FORMS - RATE LIMITER MODULE
=============================================================================
Sliding-window rate limiting for form submissions, per client address.

Features:
- 5 admitted submissions per address per 60 seconds (configurable)
- Rejected attempts are not recorded
- Injected window store with an explicit lifetime:
    * InMemoryWindowStore: capped LRU, thread-safe check-then-act
    * RedisWindowStore: sorted set + TTL, atomic via Lua script
- Automatic fallback to in-memory when Redis is unavailable

Usage:
    from siteforms.core.rate_limiter import get_rate_limiter, get_client_address

    decision = get_rate_limiter().hit(get_client_address(request))
=============================================================================
"""

import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Optional

import redis
from fastapi import Request

from siteforms.core.config import settings

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int = 0


# =============================================================================
# STORE ABSTRACTION
# =============================================================================


class SlidingWindowStore(ABC):
    """Abstract storage for per-key request timestamps."""

    @abstractmethod
    def check_and_record(
        self, key: str, now: float, window_seconds: int, limit: int
    ) -> RateLimitDecision:
        """Prune entries older than the window, then admit and record or reject.

        Must be atomic per key.
        """

    @abstractmethod
    def reset(self) -> None:
        """Clear all state (for tests)."""

    @abstractmethod
    def stats(self) -> dict:
        """Return debugging stats."""


def _retry_after(oldest: float, now: float, window_seconds: int) -> int:
    return max(1, math.ceil(oldest + window_seconds - now))


class InMemoryWindowStore(SlidingWindowStore):
    """Thread-safe in-memory store (single-instance only).

    Tracks at most ``max_keys`` addresses; the least recently seen address is
    evicted first.
    """

    def __init__(self, max_keys: int = 10_000) -> None:
        if max_keys < 1:
            raise ValueError("max_keys must be positive")
        self._lock = Lock()
        self._max_keys = max_keys
        self._windows: "OrderedDict[str, Deque[float]]" = OrderedDict()

    def check_and_record(
        self, key: str, now: float, window_seconds: int, limit: int
    ) -> RateLimitDecision:
        window_start = now - window_seconds

        with self._lock:
            window = self._windows.get(key)
            if window is None:
                window = deque()
                self._windows[key] = window
                while len(self._windows) > self._max_keys:
                    evicted, _ = self._windows.popitem(last=False)
                    logger.debug("Rate limiter evicted window for %s", evicted)
            else:
                self._windows.move_to_end(key)

            while window and window[0] < window_start:
                window.popleft()

            if len(window) >= limit:
                return RateLimitDecision(
                    allowed=False,
                    remaining=0,
                    retry_after=_retry_after(window[0], now, window_seconds),
                )

            window.append(now)
            return RateLimitDecision(allowed=True, remaining=limit - len(window))

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "backend": "in_memory",
                "tracked_keys": len(self._windows),
                "max_keys": self._max_keys,
                "windows": {k: len(v) for k, v in self._windows.items()},
            }


# KEYS[1] = window key; ARGV = now, window_seconds, limit, member
_SLIDING_WINDOW_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
local count = redis.call('ZCARD', key)
if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  return {0, count, oldest[2]}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('EXPIRE', key, window)
return {1, count + 1, '0'}
"""


class RedisWindowStore(SlidingWindowStore):
    """Redis-backed store for multi-instance deployments."""

    KEY_PREFIX = "rl:submit:"

    def __init__(self, redis_client) -> None:  # type: ignore[type-arg]
        self._redis = redis_client
        self._script = redis_client.register_script(_SLIDING_WINDOW_LUA)

    def check_and_record(
        self, key: str, now: float, window_seconds: int, limit: int
    ) -> RateLimitDecision:
        allowed, count, oldest = self._script(
            keys=[f"{self.KEY_PREFIX}{key}"],
            args=[repr(now), window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        if int(allowed) == 1:
            return RateLimitDecision(allowed=True, remaining=limit - int(count))
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            retry_after=_retry_after(float(oldest), now, window_seconds),
        )

    def reset(self) -> None:
        cursor = 0
        while True:
            cursor, keys = self._redis.scan(
                cursor, match=f"{self.KEY_PREFIX}*", count=500
            )
            if keys:
                self._redis.delete(*keys)
            if cursor == 0:
                break

    def stats(self) -> dict:
        windows = {}
        cursor = 0
        while True:
            cursor, keys = self._redis.scan(
                cursor, match=f"{self.KEY_PREFIX}*", count=500
            )
            for k in keys:
                key_str = k if isinstance(k, str) else k.decode()
                windows[key_str[len(self.KEY_PREFIX):]] = int(self._redis.zcard(k))
            if cursor == 0:
                break
        return {"backend": "redis", "windows": windows}


# =============================================================================
# LIMITER
# =============================================================================


class SlidingWindowRateLimiter:
    """Admit at most ``limit`` requests per key within ``window_seconds``."""

    def __init__(
        self,
        store: SlidingWindowStore,
        limit: int = 5,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def hit(self, key: str, now: Optional[float] = None) -> RateLimitDecision:
        if now is None:
            now = self._clock()
        decision = self.store.check_and_record(
            key, now, self.window_seconds, self.limit
        )
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for %s (limit=%d/%ds)",
                key,
                self.limit,
                self.window_seconds,
            )
        return decision

    def reset(self) -> None:
        self.store.reset()

    def stats(self) -> dict:
        stats = self.store.stats()
        stats["limit"] = self.limit
        stats["window_seconds"] = self.window_seconds
        return stats


# =============================================================================
# STORE INITIALIZATION
# =============================================================================


def _init_store() -> SlidingWindowStore:
    """Use Redis when configured and reachable, otherwise in-memory."""
    if settings.RATE_LIMIT_BACKEND == "redis":
        try:
            client = redis.Redis.from_url(
                settings.REDIS_URL, decode_responses=True, socket_connect_timeout=2
            )
            client.ping()
            logger.info("Rate limiter using Redis backend (%s)", settings.REDIS_URL)
            return RedisWindowStore(client)
        except (redis.RedisError, ValueError) as exc:
            logger.warning(
                "Redis unavailable for rate limiter, using in-memory fallback: %s",
                exc,
            )
    return InMemoryWindowStore(max_keys=settings.RATE_LIMIT_MAX_TRACKED_CLIENTS)


_limiter: Optional[SlidingWindowRateLimiter] = None
_limiter_lock = Lock()


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Return the process-wide limiter, creating it on first use."""
    global _limiter
    if _limiter is None:
        with _limiter_lock:
            if _limiter is None:
                _limiter = SlidingWindowRateLimiter(
                    _init_store(),
                    limit=settings.RATE_LIMIT_PER_WINDOW,
                    window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
                )
    return _limiter


# =============================================================================
# CLIENT ADDRESS
# =============================================================================


def get_client_address(request: Request) -> str:
    """First X-Forwarded-For value, then X-Real-IP, then the shared 'unknown' bucket."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = request.headers.get("X-Real-IP")
    if real_ip and real_ip.strip():
        return real_ip.strip()

    return UNKNOWN_CLIENT


# =============================================================================
# TEST / DEBUG HELPERS
# =============================================================================


def reset_rate_limiter_state() -> None:
    """Clear rate limiter state. Intended for tests."""
    get_rate_limiter().reset()


def get_rate_limit_stats() -> dict:
    """Get current rate limiting statistics (for admin/debugging)."""
    return get_rate_limiter().stats()
