"""Exponential backoff with jitter for rate-limited calendar calls."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from birthday_sync.core.metrics import sync_metrics
from birthday_sync.google.calendar import CalendarRequestError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Google reports per-user quota exhaustion as 403 rateLimitExceeded and
# burst throttling as 429.
RATE_LIMIT_STATUS_CODES = frozenset({403, 429})

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 4
    base_delay_seconds: float = 1.0
    max_jitter_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_seconds < 0 or self.max_jitter_seconds < 0:
            raise ValueError("retry delays must be >= 0")

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry number *attempt* (0-based)."""
        jitter = (rng or random).uniform(0, self.max_jitter_seconds)
        return self.base_delay_seconds * (2**attempt) + jitter


def is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, CalendarRequestError) and exc.status_code in RATE_LIMIT_STATUS_CODES


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
    description: str = "calendar call",
) -> T:
    """Await ``operation()``, retrying rate-limit failures with backoff.

    At most ``policy.max_retries + 1`` attempts are made. Errors that are
    not rate limits propagate on their first occurrence; a rate limit that
    persists through the last attempt propagates as well.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except CalendarRequestError as exc:
            if not is_rate_limited(exc) or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt, rng)
            logger.warning(
                "%s rate-limited (status=%d), retrying in %.2fs (attempt %d/%d)",
                description,
                exc.status_code,
                delay,
                attempt + 1,
                policy.max_retries,
            )
            sync_metrics.record_retry(exc.status_code)
            await sleep(delay)
            attempt += 1
