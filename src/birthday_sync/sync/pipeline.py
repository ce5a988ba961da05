"""Execute a :class:`~birthday_sync.sync.diff.SyncPlan` against the calendar.

All operations of one record run as a single sequential queue. Creates use a
deterministic event ID derived from the record and the event key, so a
create that already happened (lost response, crashed write-back) surfaces as
a 409 and is reconciled into an update instead of producing a duplicate.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from birthday_sync.core.metrics import sync_metrics
from birthday_sync.google.calendar import CalendarClient, CalendarRequestError
from birthday_sync.sync.diff import CreateOp, DeleteOp, SyncPlan, UpdateOp
from birthday_sync.sync.executor import run_bounded
from birthday_sync.sync.models import EventDescriptor, SyncStats
from birthday_sync.sync.retry import RetryPolicy, Sleep, call_with_retry
from birthday_sync.sync.status import truncate_message

logger = logging.getLogger(__name__)


def deterministic_event_id(record_id: str, key: str) -> str:
    """Stable Google event ID for ``(record_id, key)``.

    Lowercase hex is a subset of the base32hex alphabet Google accepts for
    client-supplied IDs.
    """
    digest = hashlib.md5(f"{record_id}_{key}".encode(), usedforsecurity=False).hexdigest()
    return f"hb{digest}"


@dataclass
class ExecutionResult:
    """What a plan execution confirmed.

    ``event_map`` is the prior map with every confirmed outcome applied.
    ``upserts`` and ``removals`` hold the same changes as a delta, so they can
    be replayed onto a fresher copy of the map.
    """

    event_map: dict[str, str]
    upserts: dict[str, str] = field(default_factory=dict)
    removals: set[str] = field(default_factory=set)
    failed_keys: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    stats: SyncStats = field(default_factory=SyncStats)

    def confirm(self, key: str, event_id: str) -> None:
        self.event_map[key] = event_id
        self.upserts[key] = event_id
        self.removals.discard(key)

    def forget(self, key: str) -> None:
        self.event_map.pop(key, None)
        self.upserts.pop(key, None)
        self.removals.add(key)

    def fail(self, key: str, error: Exception) -> None:
        if key not in self.errors:
            self.failed_keys.append(key)
            self.stats.failed += 1
        self.errors[key] = truncate_message(str(error) or type(error).__name__)

    def apply_to(self, event_map: Mapping[str, str]) -> dict[str, str]:
        """Replay this result's delta onto *event_map*."""
        merged = {key: value for key, value in event_map.items() if key not in self.removals}
        merged.update(self.upserts)
        return merged


class PlanExecutor:
    """Applies one record's plan through a :class:`CalendarClient`."""

    def __init__(
        self,
        client: CalendarClient,
        *,
        calendar_id: str,
        record_id: str,
        retry_policy: RetryPolicy | None = None,
        operation_delay_seconds: float = 0.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._client = client
        self._calendar_id = calendar_id
        self._record_id = record_id
        self._retry_policy = retry_policy or RetryPolicy()
        self._operation_delay_seconds = operation_delay_seconds
        self._sleep = sleep

    async def execute(self, plan: SyncPlan, event_map: Mapping[str, str]) -> ExecutionResult:
        result = ExecutionResult(event_map=dict(event_map))

        steps: list[Callable[[], Awaitable[None]]] = []
        for create in plan.creates:
            steps.append(self._paced(len(steps), lambda op=create: self._create(result, op)))
        for update in plan.updates:
            steps.append(self._paced(len(steps), lambda op=update: self._update(result, op)))
        for delete in plan.deletes:
            steps.append(self._paced(len(steps), lambda op=delete: self._delete(result, op)))

        outcomes = await run_bounded(steps, limit=1)
        failures = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info(
            "Executed plan for record %s: created=%d updated=%d deleted=%d failed=%d",
            self._record_id,
            result.stats.created,
            result.stats.updated,
            result.stats.deleted,
            result.stats.failed,
        )
        if failures:
            logger.debug("%d plan operations raised for record %s", failures, self._record_id)
        return result

    def _paced(
        self, index: int, step: Callable[[], Awaitable[None]]
    ) -> Callable[[], Awaitable[None]]:
        if index == 0 or self._operation_delay_seconds <= 0:
            return step

        async def _delayed() -> None:
            await self._sleep(self._operation_delay_seconds)
            await step()

        return _delayed

    async def _call(self, description: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await call_with_retry(
            fn, policy=self._retry_policy, sleep=self._sleep, description=description
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def _create(self, result: ExecutionResult, op: CreateOp) -> None:
        await self._insert(result, op.key, op.descriptor)

    async def _insert(self, result: ExecutionResult, key: str, descriptor: EventDescriptor) -> None:
        event_id = deterministic_event_id(self._record_id, key)
        resource = descriptor.to_resource()
        try:
            created_id = await self._call(
                f"insert {key}",
                lambda: self._client.insert(self._calendar_id, resource, event_id=event_id),
            )
        except CalendarRequestError as exc:
            if exc.is_conflict:
                await self._reconcile_conflict(result, key, event_id, resource)
                return
            sync_metrics.record_operation("create", "failed")
            result.fail(key, exc)
            raise
        except Exception as exc:
            sync_metrics.record_operation("create", "failed")
            result.fail(key, exc)
            raise
        sync_metrics.record_operation("create", "ok")
        result.confirm(key, created_id)
        result.stats.created += 1

    async def _reconcile_conflict(
        self,
        result: ExecutionResult,
        key: str,
        event_id: str,
        resource: dict[str, Any],
    ) -> None:
        logger.info("Event %s for key %s already exists; updating it in place", event_id, key)
        try:
            await self._call(
                f"patch {key}",
                lambda: self._client.patch(self._calendar_id, event_id, resource),
            )
        except Exception as exc:
            logger.error("Could not reconcile existing event %s for key %s: %s", event_id, key, exc)
            sync_metrics.record_operation("create", "failed")
            result.fail(key, exc)
            return
        sync_metrics.record_operation("create", "conflict")
        result.confirm(key, event_id)
        result.stats.created += 1

    async def _update(self, result: ExecutionResult, op: UpdateOp) -> None:
        resource = op.descriptor.to_resource()
        try:
            await self._call(
                f"patch {op.key}",
                lambda: self._client.patch(self._calendar_id, op.event_id, resource),
            )
        except CalendarRequestError as exc:
            if exc.is_gone:
                logger.info(
                    "Event %s for key %s is gone (%d); recreating it",
                    op.event_id,
                    op.key,
                    exc.status_code,
                )
                sync_metrics.record_operation("update", "gone")
                result.forget(op.key)
                await self._insert(result, op.key, op.descriptor)
                return
            sync_metrics.record_operation("update", "failed")
            result.fail(op.key, exc)
            raise
        except Exception as exc:
            sync_metrics.record_operation("update", "failed")
            result.fail(op.key, exc)
            raise
        sync_metrics.record_operation("update", "ok")
        result.confirm(op.key, op.event_id)
        result.stats.updated += 1

    async def _delete(self, result: ExecutionResult, op: DeleteOp) -> None:
        try:
            await self._call(
                f"delete {op.key}",
                lambda: self._client.delete(self._calendar_id, op.event_id),
            )
        except CalendarRequestError as exc:
            if not exc.is_gone:
                sync_metrics.record_operation("delete", "failed")
                result.fail(op.key, exc)
                raise
            logger.debug("Event %s for key %s was already deleted", op.event_id, op.key)
            sync_metrics.record_operation("delete", "gone")
        except Exception as exc:
            sync_metrics.record_operation("delete", "failed")
            result.fail(op.key, exc)
            raise
        else:
            sync_metrics.record_operation("delete", "ok")
        result.forget(op.key)
        result.stats.deleted += 1
