"""Run async operations with a concurrency cap, capturing each outcome."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_bounded(
    operations: Sequence[Callable[[], Awaitable[T]]],
    limit: int,
) -> list[Outcome[T]]:
    """Run *operations* with at most *limit* in flight at once.

    Outcomes are returned in input order. A failing operation is captured as
    an ``Outcome(error=...)`` and never cancels its siblings. With
    ``limit=1`` operations run strictly one after another, in order.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    semaphore = asyncio.Semaphore(limit)

    async def _run(operation: Callable[[], Awaitable[T]]) -> Outcome[T]:
        async with semaphore:
            try:
                return Outcome(value=await operation())
            except Exception as exc:
                logger.debug("Bounded operation failed: %s", exc)
                return Outcome(error=exc)

    return list(await asyncio.gather(*(_run(operation) for operation in operations)))
