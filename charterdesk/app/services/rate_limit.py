from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional


@dataclass(frozen=True)
class RateLimitConfig:
    name: str
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int


class SlidingWindowRateLimiter:
    """Per-key sliding window counter owned by whoever creates it.

    Only admitted hits are recorded, so a rejected caller does not extend
    its own lockout.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if config.max_requests < 1 or config.window_seconds < 1:
            raise ValueError(f"invalid rate limit configuration for {config.name}")
        self.config = config
        self._clock = clock
        self._lock = Lock()
        self._hits: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def _evict(self, hits: deque[float], now: float) -> None:
        window_start = now - self.config.window_seconds
        while hits and hits[0] <= window_start:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        """Forget keys whose newest hit has left the window."""
        window_start = now - self.config.window_seconds
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in idle:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.config.window_seconds:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            self._evict(hits, now)
            if len(hits) >= self.config.max_requests:
                retry_after = hits[0] + self.config.window_seconds - now
                return RateLimitDecision(
                    allowed=False,
                    limit=self.config.max_requests,
                    remaining=0,
                    retry_after_seconds=max(1, math.ceil(retry_after)),
                )
            hits.append(now)
            return RateLimitDecision(
                allowed=True,
                limit=self.config.max_requests,
                remaining=self.config.max_requests - len(hits),
                retry_after_seconds=0,
            )

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._hits.clear()
            else:
                self._hits.pop(key, None)
