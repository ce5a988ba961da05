"""Deferred task dispatch for bulk sync chunks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

TaskHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class TaskDispatcher(Protocol):
    async def enqueue(self, payload: dict[str, Any], delay_seconds: float = 0.0) -> None: ...


class LocalTaskDispatcher:
    """Runs dispatched payloads as asyncio tasks in this process.

    Call :meth:`drain` before shutdown to wait for everything enqueued so far,
    or :meth:`cancel_pending` to abandon it.
    """

    def __init__(self, handler: TaskHandler | None = None) -> None:
        self._handler = handler
        self._tasks: set[asyncio.Task[None]] = set()

    def bind(self, handler: TaskHandler) -> None:
        self._handler = handler

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def enqueue(self, payload: dict[str, Any], delay_seconds: float = 0.0) -> None:
        if self._handler is None:
            raise RuntimeError("LocalTaskDispatcher has no handler bound")
        task = asyncio.create_task(self._run(self._handler, payload, delay_seconds))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, handler: TaskHandler, payload: dict[str, Any], delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await handler(payload)
        except Exception:
            logger.exception("Dispatched task failed for payload keys %s", sorted(payload))

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def cancel_pending(self) -> None:
        """Cancel every task that has not finished and wait for them to unwind."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            logger.warning("Cancelled %d pending dispatched tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
