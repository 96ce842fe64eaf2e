"""
Module: quote_kernel.domain.rate_limit
Responsibility: Fixed-window request limiter in front of every public portal
    endpoint, keyed by client IP and independent of token validity.
Architecture position: Kernel > Domain.  Time comes from an injected Clock;
    counters live in an injected RateLimitStore.

Invariants enforced:
    - At most ``limit`` requests per key are admitted inside one window.
    - Windows start at the first request after the previous window ended.

Failure modes:
    - RateLimitExceededError from ``check()`` when the key is over its limit.

Non-goals:
    The default InMemoryRateLimitStore is per-process.  Multi-instance
    deployments supply a shared store implementing RateLimitStore.
"""

import math
import threading
from dataclasses import dataclass
from typing import Protocol

from quote_kernel.domain.clock import Clock, SystemClock
from quote_kernel.exceptions import RateLimitExceededError
from quote_kernel.logging_config import get_logger

logger = get_logger("domain.rate_limit")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int


class RateLimitStore(Protocol):
    """Pluggable backing store for window counters."""

    def hit(self, key: str, now: float, window_seconds: float) -> tuple[int, float]:
        """Count one request for ``key``; return (count in window, window reset time)."""
        ...

    def purge(self, now: float) -> int:
        """Drop windows that ended before ``now``; return how many were dropped."""
        ...


class InMemoryRateLimitStore:
    """Process-local store.  Thread-safe; stale windows are purged periodically."""

    def __init__(self, purge_every: int = 1000):
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._purge_every = purge_every
        self._hits_since_purge = 0

    def hit(self, key: str, now: float, window_seconds: float) -> tuple[int, float]:
        with self._lock:
            self._hits_since_purge += 1
            if self._hits_since_purge >= self._purge_every:
                self._purge_locked(now)
            count, reset_at = self._windows.get(key, (0, 0.0))
            if count == 0 or now > reset_at:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
            return count, reset_at

    def purge(self, now: float) -> int:
        with self._lock:
            return self._purge_locked(now)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()
            self._hits_since_purge = 0

    def _purge_locked(self, now: float) -> int:
        stale = [key for key, (_, reset_at) in self._windows.items() if now > reset_at]
        for key in stale:
            del self._windows[key]
        self._hits_since_purge = 0
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class FixedWindowRateLimiter:
    """
    Admit up to ``limit`` requests per key per ``window_seconds``.

    Contract:
        ``check(key)`` either returns a RateLimitDecision with allowed=True
        or raises RateLimitExceededError.  ``evaluate(key)`` never raises.
    """

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60,
        clock: Clock | None = None,
        store: RateLimitStore | None = None,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock or SystemClock()
        self._store = store if store is not None else InMemoryRateLimitStore()

    def evaluate(self, key: str) -> RateLimitDecision:
        now = self._clock.monotonic()
        count, reset_at = self._store.hit(key, now, self.window_seconds)
        if count > self.limit:
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                retry_after_seconds=max(1, math.ceil(reset_at - now)),
            )
        return RateLimitDecision(
            allowed=True,
            remaining=self.limit - count,
            retry_after_seconds=0,
        )

    def check(self, key: str) -> RateLimitDecision:
        decision = self.evaluate(key)
        if not decision.allowed:
            logger.warning(
                "rate_limit_exceeded",
                extra={
                    "client_key": key,
                    "limit": self.limit,
                    "retry_after_seconds": decision.retry_after_seconds,
                },
            )
            raise RateLimitExceededError(key, self.limit, decision.retry_after_seconds)
        return decision
