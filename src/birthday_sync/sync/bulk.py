"""Bulk sync: fan many record syncs out under a concurrency cap.

A bulk request is persisted as a :class:`~birthday_sync.sync.models.BulkSyncJob`
and split into small chunks dispatched with increasing delays, which spreads
calendar API load over time. Each chunk runs its records through the bounded
executor; one failing record never fails the chunk or the job. All chunks in
the process share one concurrency cap, so overlapping chunks never exceed it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from birthday_sync.dispatch import TaskDispatcher
from birthday_sync.repositories import AccountLinkRepository, JobRepository, RecordRepository
from birthday_sync.sync.engine import SyncEngine
from birthday_sync.sync.executor import Outcome, run_bounded
from birthday_sync.sync.models import JobError, SyncOutcome

logger = logging.getLogger(__name__)

DEFAULT_BULK_CONCURRENCY = 5
DEFAULT_CHUNK_SIZE = 5
DEFAULT_CHUNK_DELAY_SECONDS = 10.0


@dataclass(frozen=True)
class BulkItemError:
    item_id: str
    message: str


@dataclass
class BulkResult:
    successes: int = 0
    failures: int = 0
    errors: list[BulkItemError] = field(default_factory=list)


@dataclass(frozen=True)
class BulkJobTicket:
    job_id: str
    total_items: int
    chunks: int


class BulkSyncService:
    def __init__(
        self,
        *,
        engine: SyncEngine,
        records: RecordRepository,
        jobs: JobRepository,
        accounts: AccountLinkRepository,
        dispatcher: TaskDispatcher,
        concurrency: int = DEFAULT_BULK_CONCURRENCY,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_delay_seconds: float = DEFAULT_CHUNK_DELAY_SECONDS,
    ) -> None:
        if concurrency < 1 or chunk_size < 1:
            raise ValueError("concurrency and chunk_size must be >= 1")
        if chunk_delay_seconds < 0:
            raise ValueError("chunk_delay_seconds must be >= 0")
        self._engine = engine
        self._records = records
        self._jobs = jobs
        self._accounts = accounts
        self._dispatcher = dispatcher
        self._concurrency = concurrency
        self._chunk_size = chunk_size
        self._chunk_delay_seconds = chunk_delay_seconds
        # Shared by every chunk running in this process.
        self._slots = asyncio.Semaphore(concurrency)

    async def create_job(self, owner_id: str, record_ids: Sequence[str]) -> BulkJobTicket:
        """Persist a job for *record_ids* and dispatch it in delayed chunks."""
        job = await self._jobs.create(owner_id, total_items=len(record_ids))
        await self._accounts.set_sync_status(owner_id, "IN_PROGRESS")

        chunks = [
            list(record_ids[start : start + self._chunk_size])
            for start in range(0, len(record_ids), self._chunk_size)
        ]
        for index, chunk in enumerate(chunks):
            await self._dispatcher.enqueue(
                {"recordIds": chunk, "ownerId": owner_id, "jobId": job.id},
                delay_seconds=index * self._chunk_delay_seconds,
            )
        logger.info(
            "Created bulk sync job %s for owner %s: %d records in %d chunks",
            job.id,
            owner_id,
            len(record_ids),
            len(chunks),
        )
        if not chunks:
            await self._finish_job(job.id, owner_id)
        return BulkJobTicket(job_id=job.id, total_items=len(record_ids), chunks=len(chunks))

    async def handle_task(self, payload: dict[str, Any]) -> BulkResult:
        """Dispatcher entry point for one chunk payload."""
        return await self.process_chunk(
            list(payload.get("recordIds") or []),
            owner_id=payload.get("ownerId"),
            job_id=payload.get("jobId"),
        )

    async def process_chunk(
        self,
        record_ids: Sequence[str],
        *,
        owner_id: str | None = None,
        job_id: str | None = None,
    ) -> BulkResult:
        operations = [
            lambda record_id=record_id: self._sync_item(record_id, owner_id, job_id)
            for record_id in record_ids
        ]
        outcomes = await run_bounded(operations, limit=self._concurrency)
        result = _summarize(record_ids, outcomes)
        logger.info(
            "Bulk chunk finished: %d succeeded, %d failed", result.successes, result.failures
        )
        return result

    async def run_batch(self, record_ids: Sequence[str]) -> BulkResult:
        """Sync a whole batch in-process, without job tracking."""
        return await self.process_chunk(record_ids)

    async def _sync_item(
        self, record_id: str, owner_id: str | None, job_id: str | None
    ) -> SyncOutcome | None:
        async with self._slots:
            return await self._sync_item_unbounded(record_id, owner_id, job_id)

    async def _sync_item_unbounded(
        self, record_id: str, owner_id: str | None, job_id: str | None
    ) -> SyncOutcome | None:
        try:
            outcome = await self._sync_record(record_id)
        except Exception as exc:
            logger.error("Bulk sync of record %s failed: %s", record_id, exc)
            message = str(exc) or type(exc).__name__
            await self._record_progress(job_id, owner_id, record_id, message)
            raise
        error = outcome.message if outcome is not None and outcome.status == "error" else None
        await self._record_progress(job_id, owner_id, record_id, error)
        return outcome

    async def _sync_record(self, record_id: str) -> SyncOutcome | None:
        record = await self._records.get(record_id)
        if record is None or not record.tenant_id:
            logger.info("Bulk sync skipping record %s: missing or unassigned", record_id)
            return None
        await self._records.set_is_synced(record_id, True)
        return await self._engine.sync_record(record_id, force=False)

    async def _record_progress(
        self,
        job_id: str | None,
        owner_id: str | None,
        record_id: str,
        error: str | None,
    ) -> None:
        if job_id is None:
            return
        job_error = (
            JobError(item_id=record_id, message=error, timestamp=datetime.now(UTC))
            if error
            else None
        )
        try:
            job = await self._jobs.record_progress(job_id, job_error)
            if job.is_complete and job.status != "completed":
                await self._finish_job(job_id, owner_id or job.owner_id)
        except Exception:
            logger.exception("Could not record progress of job %s for record %s", job_id, record_id)

    async def _finish_job(self, job_id: str, owner_id: str) -> None:
        await self._jobs.mark_completed(job_id)
        await self._accounts.set_sync_status(owner_id, "IDLE")
        logger.info("Bulk sync job %s completed", job_id)


def _summarize(
    record_ids: Sequence[str], outcomes: Sequence[Outcome[SyncOutcome | None]]
) -> BulkResult:
    result = BulkResult()
    for record_id, outcome in zip(record_ids, outcomes, strict=True):
        if outcome.error is not None:
            result.failures += 1
            result.errors.append(
                BulkItemError(record_id, str(outcome.error) or type(outcome.error).__name__)
            )
        elif outcome.value is not None and outcome.value.status == "error":
            result.failures += 1
            result.errors.append(BulkItemError(record_id, outcome.value.message or "sync error"))
        else:
            result.successes += 1
    return result
