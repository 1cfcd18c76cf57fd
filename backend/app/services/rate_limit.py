"""
Fixed-Window Rate Limiter

Best-effort throttle for the batch recompute path and widget traffic.
Counters are owned by the limiter instance (one per concern, created when
the application is built) and reset on process restart. They are a
defense-in-depth throttle, not a correctness mechanism.
"""
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class RateLimitDecision:
    """Result of a single hit against the limiter."""
    allowed: bool
    retry_after: int  # seconds until the current window resets (0 when allowed)
    remaining: int


@dataclass
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    At most `max_hits` per key per `window_seconds`.

    Holds at most `capacity` keys. When full, expired windows are evicted
    first, then the oldest tracked key.
    """

    def __init__(
        self,
        max_hits: int,
        window_seconds: float,
        capacity: int = 1024,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_hits < 1:
            raise ValueError("max_hits must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_hits = max_hits
        self.window_seconds = window_seconds
        self.capacity = capacity
        self._clock = clock or time.monotonic
        self._windows: "OrderedDict[str, _Window]" = OrderedDict()

    def hit(self, key: str = "global") -> RateLimitDecision:
        """Record one request for `key` and decide whether it may proceed."""
        now = self._clock()
        window = self._windows.get(key)

        if window is None or now >= window.reset_at:
            self._make_room(now)
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            self._windows.move_to_end(key)
            return RateLimitDecision(allowed=True, retry_after=0, remaining=self.max_hits - 1)

        if window.count >= self.max_hits:
            retry_after = max(1, math.ceil(window.reset_at - now))
            return RateLimitDecision(allowed=False, retry_after=retry_after, remaining=0)

        window.count += 1
        return RateLimitDecision(allowed=True, retry_after=0, remaining=self.max_hits - window.count)

    def reset(self) -> None:
        self._windows.clear()

    def tracked_keys(self) -> Dict[str, int]:
        """Snapshot of current counts, for diagnostics."""
        return {key: window.count for key, window in self._windows.items()}

    def _make_room(self, now: float) -> None:
        if len(self._windows) < self.capacity:
            return
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        while len(self._windows) >= self.capacity:
            self._windows.popitem(last=False)
