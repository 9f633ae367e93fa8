"""
Unit tests for the TTL cache and circuit breaker.
"""

import pytest

from app.core.cache import CachePrefix, CircuitBreaker, CircuitBreakerState, TTLCache

pytestmark = pytest.mark.unit


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


class TestTTLCache:
    """Tests for TTLCache."""

    def test_hit_within_ttl(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", 1)
        clock.now = 9.9
        assert cache.get("k") == 1

    def test_miss_after_ttl(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", 1)
        clock.now = 10
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_oldest_entry_evicted_when_full(self, clock):
        cache = TTLCache(ttl_seconds=100, clock=clock, max_entries=2)
        cache.set("a", 1)
        clock.now = 1
        cache.set("b", 2)
        clock.now = 2
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_stats(self, clock):
        cache = TTLCache(ttl_seconds=10, clock=clock)
        cache.set("k", 1)
        cache.get("k")
        cache.get("missing")
        stats = cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["size"] == 1

    def test_make_key(self):
        assert TTLCache.make_key(CachePrefix.VOLATILITY, "London", "rain") == "vol:london:rain"


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=clock)
        for _ in range(3):
            assert breaker.can_execute()
            breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN
        assert not breaker.can_execute()

    def test_half_open_after_timeout(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
        breaker.record_failure()
        clock.now = 31
        assert breaker.can_execute()
        assert breaker.state == CircuitBreakerState.HALF_OPEN
        breaker.record_success()
        assert breaker.state == CircuitBreakerState.CLOSED

    def test_half_open_failure_reopens(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
        breaker.record_failure()
        clock.now = 31
        breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.OPEN

    def test_success_resets_failures(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, clock=clock)
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.state == CircuitBreakerState.CLOSED
