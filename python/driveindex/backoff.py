"""
Backoff - Bounded exponential retry with jitter for transient failures.

Every retried call is capped by `retry_max_attempts`; the engine never
retries forever.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .config import get_config, EngineConfig
from .errors import RateLimitedError, RetryExhaustedError, TransientError


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 0.5
    max_delay_s: float = 30.0
    jitter: float = 0.2

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None) -> "RetryPolicy":
        config = config or get_config()
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay_s=config.retry_base_delay_s,
            max_delay_s=config.retry_max_delay_s,
            jitter=config.retry_jitter,
        )

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number `attempt` (1-based), with +/- jitter."""
        rng = rng or random
        raw = min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))
        return raw * rng.uniform(1.0 - self.jitter, 1.0 + self.jitter)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `operation()` until it succeeds or the attempt ceiling is hit.

    Only TransientError is retried; anything else propagates immediately.
    Raises RetryExhaustedError when the budget runs out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except TransientError as e:
            if attempt >= policy.max_attempts:
                raise RetryExhaustedError(description, attempt, e) from e

            delay = policy.delay(attempt)
            if isinstance(e, RateLimitedError) and e.retry_after:
                delay = max(delay, e.retry_after)

            logger.warning(
                f"{description}: {e} (attempt {attempt}/{policy.max_attempts}, "
                f"retrying in {delay:.2f}s)"
            )
            if on_retry:
                on_retry(attempt, e)
            await sleep(delay)
