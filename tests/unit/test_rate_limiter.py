"""Tests for the sliding-window submission rate limiter and its stores."""
import threading
from unittest.mock import MagicMock

import fakeredis
import pytest

from siteforms.core.rate_limiter import (
    UNKNOWN_CLIENT,
    InMemoryWindowStore,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    get_client_address,
)

T0 = 1_700_000_000.0


@pytest.fixture()
def mem_limiter():
    return SlidingWindowRateLimiter(InMemoryWindowStore(), limit=5, window_seconds=60)


@pytest.fixture()
def redis_limiter():
    client = fakeredis.FakeRedis(decode_responses=True)
    return SlidingWindowRateLimiter(RedisWindowStore(client), limit=5, window_seconds=60)


@pytest.fixture(params=["memory", "redis"])
def limiter(request, mem_limiter, redis_limiter):
    return mem_limiter if request.param == "memory" else redis_limiter


# =============================================================================
# Window policy (both stores)
# =============================================================================


class TestSlidingWindow:
    def test_fifth_admitted_sixth_rejected(self, limiter):
        for i in range(5):
            decision = limiter.hit("203.0.113.10", now=T0 + i)
            assert decision.allowed
            assert decision.remaining == 4 - i

        blocked = limiter.hit("203.0.113.10", now=T0 + 5)
        assert not blocked.allowed
        assert blocked.retry_after == 55

    def test_rejection_is_not_recorded(self, limiter):
        for i in range(5):
            limiter.hit("203.0.113.10", now=T0)
        for _ in range(10):
            assert not limiter.hit("203.0.113.10", now=T0 + 30).allowed

        # Only the five admitted requests age out; the rejected ones never counted.
        assert limiter.hit("203.0.113.10", now=T0 + 61).allowed

    def test_window_slides(self, limiter):
        for i in range(5):
            limiter.hit("203.0.113.10", now=T0 + i * 10)

        assert not limiter.hit("203.0.113.10", now=T0 + 59).allowed
        # First entry (T0) is now older than 60s
        assert limiter.hit("203.0.113.10", now=T0 + 60.5).allowed
        assert not limiter.hit("203.0.113.10", now=T0 + 61).allowed

    def test_addresses_are_independent(self, limiter):
        for _ in range(5):
            limiter.hit("203.0.113.10", now=T0)
        assert not limiter.hit("203.0.113.10", now=T0).allowed
        assert limiter.hit("203.0.113.11", now=T0).allowed

    def test_reset(self, limiter):
        for _ in range(5):
            limiter.hit("203.0.113.10", now=T0)
        limiter.reset()
        assert limiter.hit("203.0.113.10", now=T0).allowed

    def test_uses_clock_when_now_omitted(self):
        clock = MagicMock(return_value=T0)
        limiter = SlidingWindowRateLimiter(
            InMemoryWindowStore(), limit=1, window_seconds=60, clock=clock
        )
        assert limiter.hit("a").allowed
        assert not limiter.hit("a").allowed
        clock.return_value = T0 + 61
        assert limiter.hit("a").allowed


# =============================================================================
# In-memory store specifics
# =============================================================================


class TestInMemoryWindowStore:
    def test_lru_eviction_caps_tracked_addresses(self):
        store = InMemoryWindowStore(max_keys=2)
        limiter = SlidingWindowRateLimiter(store, limit=1, window_seconds=60)

        limiter.hit("a", now=T0)
        limiter.hit("b", now=T0)
        limiter.hit("a", now=T0)  # touch "a" so "b" is least recent
        limiter.hit("c", now=T0)

        stats = store.stats()
        assert stats["tracked_keys"] == 2
        assert set(stats["windows"]) == {"a", "c"}

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            InMemoryWindowStore(max_keys=0)

    def test_concurrent_hits_never_exceed_limit(self):
        limiter = SlidingWindowRateLimiter(
            InMemoryWindowStore(), limit=5, window_seconds=60
        )
        results = []
        barrier = threading.Barrier(20)

        def _hit():
            barrier.wait()
            results.append(limiter.hit("198.51.100.7", now=T0).allowed)

        threads = [threading.Thread(target=_hit) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5


class TestRedisWindowStore:
    def test_key_has_ttl(self):
        client = fakeredis.FakeRedis(decode_responses=True)
        store = RedisWindowStore(client)
        store.check_and_record("203.0.113.10", T0, 60, 5)
        ttl = client.ttl(f"{RedisWindowStore.KEY_PREFIX}203.0.113.10")
        assert 0 < ttl <= 60

    def test_stats(self, redis_limiter):
        redis_limiter.hit("203.0.113.10", now=T0)
        redis_limiter.hit("203.0.113.10", now=T0 + 1)
        stats = redis_limiter.stats()
        assert stats["backend"] == "redis"
        assert stats["windows"] == {"203.0.113.10": 2}


# =============================================================================
# Client address extraction
# =============================================================================


class TestGetClientAddress:
    def _make_request(self, headers=None):
        req = MagicMock()
        req.headers = headers or {}
        return req

    def test_first_forwarded_for_value(self):
        req = self._make_request({"X-Forwarded-For": "203.0.113.99, 10.0.0.1"})
        assert get_client_address(req) == "203.0.113.99"

    def test_falls_back_to_real_ip(self):
        req = self._make_request({"X-Real-IP": "198.51.100.4"})
        assert get_client_address(req) == "198.51.100.4"

    def test_forwarded_for_wins_over_real_ip(self):
        req = self._make_request(
            {"X-Forwarded-For": "203.0.113.99", "X-Real-IP": "198.51.100.4"}
        )
        assert get_client_address(req) == "203.0.113.99"

    def test_unknown_bucket(self):
        assert get_client_address(self._make_request()) == UNKNOWN_CLIENT

    def test_blank_forwarded_for_ignored(self):
        req = self._make_request({"X-Forwarded-For": " , 10.0.0.1"})
        assert get_client_address(req) == UNKNOWN_CLIENT


def test_process_wide_limiter_stats():
    from siteforms.core.rate_limiter import get_rate_limit_stats, get_rate_limiter

    get_rate_limiter().hit("203.0.113.10")
    stats = get_rate_limit_stats()
    assert stats["backend"] == "in_memory"
    assert stats["limit"] == 5
    assert stats["window_seconds"] == 60
    assert stats["windows"] == {"203.0.113.10": 1}
