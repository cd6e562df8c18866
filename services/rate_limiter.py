"""
Rate limiting using in-memory token bucket
Keys are job queue names: every execution takes a token, whatever triggered it
"""
import time
from typing import Callable, Dict, Tuple


class RateLimiter:
    """
    In-memory token bucket rate limiter per key.
    Uses TTL to clean up old entries.
    """

    def __init__(self, rate: int = 1, per_seconds: float = 60.0, cleanup_interval: int = 300, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            rate: Number of executions allowed
            per_seconds: Per this many seconds
            cleanup_interval: Clean up old entries every N seconds
        """
        self.rate = rate
        self.per_seconds = per_seconds
        self.cleanup_interval = cleanup_interval
        self._clock = clock

        # token_bucket[key] = (tokens_remaining, last_refill_time, last_access_time)
        self.token_bucket: Dict[str, Tuple[float, float, float]] = {}
        self.last_cleanup = clock()

    def _refill(self, key: str, now: float) -> float:
        if key not in self.token_bucket:
            return float(self.rate)
        tokens, last_refill, _ = self.token_bucket[key]
        elapsed = now - last_refill
        return min(float(self.rate), tokens + (elapsed / self.per_seconds) * self.rate)

    def is_allowed(self, key: str) -> bool:
        """Take a token for key if one is available"""
        now = self._clock()

        # Periodic cleanup
        if now - self.last_cleanup > self.cleanup_interval:
            self._cleanup_old_entries(now)
            self.last_cleanup = now

        tokens = self._refill(key, now)
        allowed = tokens >= 1
        if allowed:
            tokens -= 1
        self.token_bucket[key] = (tokens, now, now)
        return allowed

    def retry_after(self, key: str) -> float:
        """Seconds until a token is available for key (0 if one is available now)"""
        tokens = self._refill(key, self._clock())
        if tokens >= 1:
            return 0.0
        return (1 - tokens) * self.per_seconds / self.rate

    def _cleanup_old_entries(self, now: float, max_age: int = 3600):
        """Remove entries not accessed in max_age seconds"""
        keys_to_remove = [
            key for key, (_, _, last_access) in self.token_bucket.items()
            if now - last_access > max(max_age, self.per_seconds)
        ]
        for key in keys_to_remove:
            del self.token_bucket[key]
