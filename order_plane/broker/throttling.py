"""
order_plane/broker/throttling.py
Per-session rate-limit budgets.

Each broker session owns one token bucket sized from the broker's
rate_limit config. Consumption is decrement-and-check under a lock, so two
concurrent submits can never both take the last token.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class RateLimitBudget:
    """
    Token bucket for one broker session.

    - Bucket fills with tokens at ``refill_per_second``
    - Each broker request consumes one token
    - Routing reads ``headroom`` (remaining / capacity) without consuming
    """
    capacity: float
    refill_per_second: float
    clock: Callable[[], float] = time.monotonic
    tokens: float = field(init=False)
    last_refill: float = field(init=False)
    _lock: threading.Lock = field(init=False, repr=False, default_factory=threading.Lock)

    def __post_init__(self):
        self.tokens = float(self.capacity)
        self.last_refill = self.clock()

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_second)
            self.last_refill = now

    def try_consume(self, tokens: float = 1.0) -> bool:
        """Atomically take ``tokens`` if available."""
        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True
            return False

    @property
    def remaining(self) -> float:
        with self._lock:
            self._refill()
            return self.tokens

    @property
    def headroom(self) -> float:
        return self.remaining / self.capacity

    def exhausted(self, tokens: float = 1.0) -> bool:
        return self.remaining < tokens
