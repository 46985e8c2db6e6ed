"""Sliding-window rate limiting keyed by client address and credential."""

import hashlib
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # unix seconds when the oldest counted request leaves the window
    retry_after: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


def rate_limit_key(client_ip: str | None, api_key: str | None) -> str:
    """Key on the client address plus a hash of the presented credential."""
    credential = hashlib.sha256(api_key.encode("utf-8")).hexdigest() if api_key else "anonymous"
    return f"{client_ip or 'unknown'}:{credential}"


class SlidingWindowRateLimiter:
    """In-process limiter: at most ``max_attempts`` hits per ``window_seconds`` per key."""

    def __init__(
        self,
        max_attempts: int = 60,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def _prune(self, hits: deque[float], now: float) -> None:
        boundary = now - self.window_seconds
        while hits and hits[0] <= boundary:
            hits.popleft()

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` unless it would exceed the limit."""
        now = self.clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            self._prune(hits, now)

            if len(hits) >= self.max_attempts:
                reset_at = hits[0] + self.window_seconds
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_attempts,
                    remaining=0,
                    reset_at=int(reset_at),
                    retry_after=max(1, int(reset_at - now + 0.999)),
                )

            hits.append(now)
            if now >= self._next_sweep:
                self._evict_expired(now)
                self._next_sweep = now + self.window_seconds
            reset_at = hits[0] + self.window_seconds
            return RateLimitDecision(
                allowed=True,
                limit=self.max_attempts,
                remaining=self.max_attempts - len(hits),
                reset_at=int(reset_at),
                retry_after=0,
            )

    def _evict_expired(self, now: float) -> None:
        # Keys expire once their newest hit has left the window. Runs at most once per window.
        expired = [k for k, hits in self._hits.items() if not hits or hits[-1] <= now - self.window_seconds]
        for key in expired:
            del self._hits[key]

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
