from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from triagefix.errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for GitHub calls.

    Only RateLimitError is retried. Attempts run strictly one after another.
    """

    max_attempts: int = 4
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
        )

    def delay_for(self, attempt: int, err: RateLimitError) -> float:
        if err.retry_after_s is not None:
            return min(self.max_delay_s, max(0.0, err.retry_after_s))
        return min(self.max_delay_s, self.base_delay_s * (2 ** (attempt - 1)))


async def with_rate_limit_retry(op: Callable[[], Awaitable[T]], *, policy: RetryPolicy, label: str = "github") -> T:
    attempts = max(1, int(policy.max_attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await op()
        except RateLimitError as e:
            if attempt >= attempts:
                raise
            delay = policy.delay_for(attempt, e)
            logger.warning("%s rate limited (attempt %d/%d); retrying in %.1fs", label, attempt, attempts, delay)
            await policy.sleep(delay)
    raise AssertionError("unreachable")
