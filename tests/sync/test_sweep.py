"""Tests for the scheduled retry sweep."""

from __future__ import annotations

import pytest

from birthday_sync.repositories import RecordRepository
from birthday_sync.sync.pipeline import deterministic_event_id
from birthday_sync.sync.sweep import RetrySweep

pytestmark = pytest.mark.unit


def _metadata(status: str, retry_count: int = 0) -> dict:
    return {
        "status": status,
        "lastAttemptAt": "2026-03-09T08:00:00+00:00",
        "retryCount": retry_count,
        "failedKeys": ["gregorian_2026"] if status == "PARTIAL_SYNC" else [],
        "dataHash": "stale",
    }


def _sweep(harness, **kwargs) -> RetrySweep:
    return RetrySweep(
        engine=harness.engine(), records=RecordRepository(harness.store), **kwargs
    )


class TestRetrySweep:
    async def test_only_eligible_records_are_retried(self, harness):
        harness.seed_record("partial", sync_metadata=_metadata("PARTIAL_SYNC", 0))
        harness.seed_record("error", sync_metadata=_metadata("ERROR", 2))
        harness.seed_record("exhausted", sync_metadata=_metadata("ERROR", 3))
        harness.seed_record("revoked", sync_metadata=_metadata("ERROR", 999))
        harness.seed_record(
            "archived", archived=True, sync_metadata=_metadata("PARTIAL_SYNC", 0)
        )
        harness.seed_record("synced", sync_metadata=_metadata("SYNCED"))
        harness.seed_record("never")

        result = await _sweep(harness).run()

        assert (result.successes, result.failures) == (2, 0)
        inserts = harness.calendar.calls_for("insert")
        synced_ids = {
            call.resource["extendedProperties"]["private"]["birthdayId"] for call in inserts
        }
        assert synced_ids == {"partial", "error"}
        assert (await harness.record("partial")).sync_metadata.status == "SYNCED"

    async def test_still_failing_record_counts_as_failure(self, harness):
        harness.seed_record("flaky", sync_metadata=_metadata("PARTIAL_SYNC", 1))
        harness.calendar.fail("insert", deterministic_event_id("flaky", "gregorian_2026"), 500)

        result = await _sweep(harness).run()

        assert (result.successes, result.failures) == (0, 1)
        assert result.errors[0].item_id == "flaky"
        assert (await harness.record("flaky")).sync_metadata.retry_count == 2

    async def test_nothing_to_do(self, harness):
        harness.seed_record("synced", sync_metadata=_metadata("SYNCED"))
        result = await _sweep(harness).run()
        assert (result.successes, result.failures, result.errors) == (0, 0, [])
        assert harness.calendar.calls == []

    async def test_max_retries_is_configurable(self, harness):
        harness.seed_record("error", sync_metadata=_metadata("ERROR", 4))
        result = await _sweep(harness, max_retries=5).run()
        assert result.successes == 1
