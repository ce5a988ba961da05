"""Scheduled retry of records whose last sync did not fully succeed."""

from __future__ import annotations

import logging

from birthday_sync.repositories import RecordRepository
from birthday_sync.sync.bulk import BulkItemError, BulkResult
from birthday_sync.sync.engine import SyncEngine
from birthday_sync.sync.executor import run_bounded
from birthday_sync.sync.status import is_retry_candidate

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_MAX_RETRIES = 3


class RetrySweep:
    """Re-syncs PARTIAL_SYNC / ERROR records that are still under the retry limit.

    Records parked by a revoked credential carry a retry count far above any
    limit, so they are never picked up here.
    """

    def __init__(
        self,
        *,
        engine: SyncEngine,
        records: RecordRepository,
        concurrency: int = 5,
        max_retries: int = DEFAULT_SWEEP_MAX_RETRIES,
    ) -> None:
        self._engine = engine
        self._records = records
        self._concurrency = concurrency
        self._max_retries = max_retries

    async def run(self) -> BulkResult:
        candidates = [
            record
            for record in await self._records.find_failed()
            if is_retry_candidate(record.sync_metadata, self._max_retries)
        ]
        if not candidates:
            logger.info("Retry sweep found no failed syncs")
            return BulkResult()

        logger.info("Retry sweep re-syncing %d records", len(candidates))
        outcomes = await run_bounded(
            [
                lambda record_id=record.id: self._engine.sync_record(record_id)
                for record in candidates
            ],
            limit=self._concurrency,
        )

        result = BulkResult()
        for record, outcome in zip(candidates, outcomes, strict=True):
            if outcome.error is not None:
                result.failures += 1
                result.errors.append(BulkItemError(record.id, str(outcome.error)))
                logger.error("Retry of record %s failed: %s", record.id, outcome.error)
            elif outcome.value is not None and outcome.value.status in ("partial", "error"):
                result.failures += 1
                result.errors.append(
                    BulkItemError(record.id, outcome.value.message or outcome.value.status)
                )
            else:
                result.successes += 1
        logger.info(
            "Retry sweep finished: %d recovered, %d still failing",
            result.successes,
            result.failures,
        )
        return result
