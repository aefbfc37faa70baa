"""
Per-minute Rate Limiting

Limits each API key to its requestsPerMinute budget. With REDIS_URL set the
counters live in Redis so every worker shares them; otherwise a thread-safe
in-process sliding window is used. Redis errors degrade to the in-process
window rather than failing requests.

Usage:
    limiter = build_rate_limiter(settings.redis_url)
    decision = limiter.check_and_consume(key_id, limit=300)
    if not decision.allowed:
        raise rate_limited(..., retry_after=decision.retry_after)
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional

import redis

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0


class SlidingWindowRateLimiter:
    """
    Thread-safe per-key rate limiter using a sliding window.

    Each key keeps a deque of request timestamps from the last minute.
    """

    def __init__(self, window_seconds: float = WINDOW_SECONDS):
        self.window_seconds = window_seconds
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def _clean(self, window: Deque[float], now: float) -> None:
        """Remove entries older than the window."""
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def check_and_consume(self, key: str, limit: int) -> RateDecision:
        """Record a request for key if it fits under limit."""
        now = time.time()
        with self._lock:
            window = self._windows.setdefault(key, deque())
            self._clean(window, now)

            if len(window) >= limit:
                wait_time = window[0] + self.window_seconds - now
                return RateDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=max(1, int(wait_time + 0.999)),
                )

            window.append(now)
            return RateDecision(allowed=True, limit=limit, remaining=limit - len(window))

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)


class RedisRateLimiter:
    """
    Fixed one-minute windows in Redis (INCR + EXPIRE).

    Falls back to an in-process sliding window when Redis is unreachable.
    """

    KEY_PREFIX = "pdfapi:ratelimit:"

    def __init__(self, client: "redis.Redis", window_seconds: int = int(WINDOW_SECONDS)):
        self._redis = client
        self.window_seconds = window_seconds
        self._fallback = SlidingWindowRateLimiter(window_seconds)

    def check_and_consume(self, key: str, limit: int) -> RateDecision:
        bucket = int(time.time() // self.window_seconds)
        redis_key = f"{self.KEY_PREFIX}{key}:{bucket}"
        try:
            pipe = self._redis.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, self.window_seconds + 1)
            count, _ = pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Redis rate limiter unavailable, using in-process window: {e}")
            return self._fallback.check_and_consume(key, limit)

        count = int(count)
        if count > limit:
            retry_after = self.window_seconds - int(time.time() % self.window_seconds)
            return RateDecision(allowed=False, limit=limit, remaining=0, retry_after=max(1, retry_after))
        return RateDecision(allowed=True, limit=limit, remaining=limit - count)


def build_rate_limiter(redis_url: Optional[str]):
    """Redis-backed limiter when a URL is configured, otherwise in-process."""
    if not redis_url:
        return SlidingWindowRateLimiter()
    client = redis.from_url(redis_url, decode_responses=True)
    logger.info("Rate limiting backed by Redis")
    return RedisRateLimiter(client)
