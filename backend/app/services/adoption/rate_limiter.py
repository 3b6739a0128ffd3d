"""
Recommendation Rate Limiter

Token bucket keyed by actor + action. Advisory backpressure only:
correctness never depends on it. The store is injectable so a shared
backend can replace the in-process one for multi-instance deployments.
"""
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .errors import RateLimitedError

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


RATE_LIMIT_WINDOW_SECONDS = _env_int("RATE_LIMIT_WINDOW_SECONDS", 60)
RATE_LIMIT_MAX_REQUESTS = _env_int("RATE_LIMIT_MAX_REQUESTS", 20)
BUCKET_IDLE_SECONDS = 3600  # Remove buckets unused for 1 hour
CLEANUP_INTERVAL_SECONDS = 300  # Every 5 minutes


@dataclass
class TokenBucket:
    """Token bucket implementation for smooth rate limiting"""
    capacity: int  # Maximum tokens
    tokens: float  # Current tokens
    rate: float    # Tokens per second
    last_update: float  # Last update timestamp

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_update)
        self.tokens = min(self.capacity, self.tokens + (elapsed * self.rate))
        self.last_update = now

    def consume(self, now: float, tokens_requested: int = 1) -> bool:
        """Attempt to consume tokens from bucket"""
        self.refill(now)
        if self.tokens >= tokens_requested:
            self.tokens -= tokens_requested
            return True
        return False

    def time_until_available(self, tokens_needed: int = 1) -> float:
        """Calculate seconds until tokens are available"""
        if self.tokens >= tokens_needed:
            return 0.0
        return (tokens_needed - self.tokens) / self.rate


class RateLimiter:
    """Interface: check(key) -> (allowed, retry_after_seconds)."""

    def check(self, key: str) -> Tuple[bool, int]:
        raise NotImplementedError

    def enforce(self, key: str) -> None:
        """Raise RateLimitedError when the key is over its budget."""
        allowed, retry_after = self.check(key)
        if not allowed:
            logger.warning(f"Rate limit exceeded for {key}, retry after {retry_after}s")
            raise RateLimitedError(
                "Rate limit exceeded. Please retry later.",
                retry_after_seconds=retry_after,
            )


class InMemoryRateLimiter(RateLimiter):
    """In-process token buckets. Suitable for a single worker and for tests."""

    def __init__(
        self,
        max_requests: int = RATE_LIMIT_MAX_REQUESTS,
        window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.capacity = max_requests
        self.rate = max_requests / float(window_seconds)
        self.clock = clock or time.monotonic
        self.buckets: Dict[str, TokenBucket] = {}
        # An evicted bucket must already be full again
        self.idle_seconds = max(BUCKET_IDLE_SECONDS, window_seconds)
        self.last_cleanup = self.clock()
        self._lock = threading.Lock()

    def cleanup_idle_buckets(self, now: float) -> int:
        """Drop buckets unused for idle_seconds, at most once per CLEANUP_INTERVAL_SECONDS."""
        if now - self.last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return 0

        buckets_to_remove = [
            key for key, bucket in self.buckets.items()
            if now - bucket.last_update > self.idle_seconds
        ]
        for key in buckets_to_remove:
            del self.buckets[key]

        self.last_cleanup = now
        if buckets_to_remove:
            logger.debug(f"Rate limit cleanup: removed {len(buckets_to_remove)} unused buckets")
        return len(buckets_to_remove)

    def check(self, key: str) -> Tuple[bool, int]:
        now = self.clock()
        with self._lock:
            self.cleanup_idle_buckets(now)

            bucket = self.buckets.get(key)
            if bucket is None:
                bucket = TokenBucket(
                    capacity=self.capacity,
                    tokens=self.capacity,  # Start with full bucket
                    rate=self.rate,
                    last_update=now,
                )
                self.buckets[key] = bucket

            if bucket.consume(now):
                return True, 0
            return False, max(1, math.ceil(bucket.time_until_available()))


def rate_limit_key(org_id: str, user_id: str, action: str) -> str:
    return f"{org_id}:{user_id}:{action}"
