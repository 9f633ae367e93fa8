"""
NIMBUS - Cache
In-process TTL cache and circuit breaker, both driven by an injectable clock
so callers (and tests) control expiry.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Hashable, Optional, TypeVar

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
V = TypeVar("V")


class CachePrefix(str, Enum):
    """Cache key prefixes for organization"""
    VOLATILITY = "vol"
    WEATHER = "wx"
    FORECAST = "fc"


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class TTLCache(Generic[V]):
    """
    Bounded-lifetime key/value cache.

    Entries are never invalidated eagerly; a read past ``ttl_seconds``
    evicts the entry and reports a miss so the caller recomputes it.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Clock = time.monotonic,
        max_entries: int = 1024,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, _Entry[V]] = {}
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    @staticmethod
    def make_key(prefix: CachePrefix, *parts: Any) -> str:
        """Create prefixed cache key"""
        return ":".join([prefix.value, *(str(p).lower() for p in parts)])

    def get(self, key: Hashable) -> Optional[V]:
        entry = self._entries.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            self._stats["evictions"] += 1
            self._stats["misses"] += 1
            return None
        self._stats["hits"] += 1
        return entry.value

    def set(self, key: Hashable, value: V) -> None:
        if key not in self._entries and len(self._entries) >= self.max_entries:
            # Drop the oldest entry
            oldest = min(self._entries, key=lambda k: self._entries[k].stored_at)
            del self._entries[oldest]
            self._stats["evictions"] += 1
        self._entries[key] = _Entry(value=value, stored_at=self._clock())
        self._stats["sets"] += 1

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "size": len(self._entries)}


class CircuitBreakerState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Circuit breaker for upstream provider resilience"""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30,
        half_open_requests: int = 1,
        clock: Clock = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_requests = half_open_requests
        self._clock = clock
        self.state = CircuitBreakerState.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0
        self.half_open_successes = 0

    def can_execute(self) -> bool:
        """Check if request can be executed"""
        if self.state == CircuitBreakerState.CLOSED:
            return True

        if self.state == CircuitBreakerState.OPEN:
            if self._clock() - self.last_failure_time > self.recovery_timeout:
                self.state = CircuitBreakerState.HALF_OPEN
                self.half_open_successes = 0
                return True
            return False

        # HALF_OPEN state
        return True

    def record_success(self) -> None:
        """Record successful execution"""
        if self.state == CircuitBreakerState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.half_open_requests:
                self.state = CircuitBreakerState.CLOSED
                self.failure_count = 0
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        """Record failed execution"""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitBreakerState.HALF_OPEN:
            self.state = CircuitBreakerState.OPEN
        elif self.failure_count >= self.failure_threshold:
            self.state = CircuitBreakerState.OPEN
            logger.warning(f"Circuit breaker opened after {self.failure_count} failures")
