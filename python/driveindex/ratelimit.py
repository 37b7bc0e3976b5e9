"""In-memory token bucket shared by every outbound connector call."""

import asyncio
import time
from typing import Callable, Optional

from .config import get_config, EngineConfig


class TokenBucket:
    """
    Global outbound request budget.

    Workers await `acquire()` before each call to the source. A worker that
    finds the bucket empty sleeps only until the next token refills; it does
    not hold the lock while sleeping, so other workers are never blocked
    beyond the shared budget itself.
    """

    def __init__(
        self,
        rate: Optional[float] = None,
        capacity: Optional[int] = None,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        config = config or get_config()
        self.rate = rate if rate is not None else config.rate_limit_per_s
        self.capacity = float(capacity if capacity is not None else config.rate_limit_burst)
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self, now: float) -> None:
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self, tokens: float = 1.0) -> float:
        """Take tokens if available. Returns 0 on success, else seconds to wait."""
        now = self._clock()
        self._refill(now)
        if self._tokens >= tokens:
            self._tokens -= tokens
            return 0.0
        if self.rate <= 0:
            return float("inf")
        return (tokens - self._tokens) / self.rate

    async def acquire(self, tokens: float = 1.0) -> None:
        while True:
            async with self._lock:
                wait = self.try_acquire(tokens)
            if wait == 0.0:
                return
            await asyncio.sleep(wait)

    def penalize(self, seconds: float) -> None:
        """Drain the bucket after the source reports quota exhaustion."""
        self._refill(self._clock())
        self._tokens = min(self._tokens, 0.0) - seconds * self.rate

    @property
    def available(self) -> float:
        self._refill(self._clock())
        return self._tokens
