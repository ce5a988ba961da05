"""Tests for bulk sync jobs and chunk processing."""

from __future__ import annotations

import asyncio

import pytest

from birthday_sync.dispatch import LocalTaskDispatcher
from birthday_sync.google.calendar import CalendarRequestError
from birthday_sync.repositories import (
    ACCOUNT_LINKS,
    RECORDS,
    AccountLinkRepository,
    JobRepository,
    RecordRepository,
)
from birthday_sync.sync.bulk import BulkSyncService
from birthday_sync.sync.models import SyncOutcome

pytestmark = pytest.mark.unit


class _ScriptedEngine:
    """Engine double: raises for ``failing`` ids, reports ``error`` for ``erroring`` ids."""

    def __init__(self, failing=(), erroring=()) -> None:
        self.failing = set(failing)
        self.erroring = set(erroring)
        self.calls: list[tuple[str, bool]] = []
        self.in_flight = 0
        self.peak = 0

    async def sync_record(self, record_id: str, *, force: bool = False) -> SyncOutcome:
        self.calls.append((record_id, force))
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0)
            if record_id in self.failing:
                raise CalendarRequestError(status_code=400, message="Invalid start date")
            if record_id in self.erroring:
                return SyncOutcome(record_id=record_id, status="error", message="revoked")
            return SyncOutcome(record_id=record_id, status="synced")
        finally:
            self.in_flight -= 1


class _RecordingDispatcher:
    def __init__(self) -> None:
        self.tasks: list[tuple[dict, float]] = []

    async def enqueue(self, payload: dict, delay_seconds: float = 0.0) -> None:
        self.tasks.append((payload, delay_seconds))


def _ids(count: int) -> list[str]:
    return [f"rec-{n}" for n in range(1, count + 1)]


@pytest.fixture
def seeded(harness):
    for record_id in _ids(50):
        harness.seed_record(record_id)
    return harness


@pytest.fixture
def service_for(seeded):
    def _make(engine, dispatcher=None, **kwargs) -> BulkSyncService:
        return BulkSyncService(
            engine=engine,
            records=RecordRepository(seeded.store),
            jobs=JobRepository(seeded.store),
            accounts=AccountLinkRepository(seeded.store),
            dispatcher=dispatcher or _RecordingDispatcher(),
            **kwargs,
        )

    return _make


# ---------------------------------------------------------------------------
# Chunk processing
# ---------------------------------------------------------------------------


class TestProcessChunk:
    async def test_one_failure_among_fifty_is_isolated(self, seeded, service_for):
        engine = _ScriptedEngine(failing={"rec-17"})
        service = service_for(engine, concurrency=5)
        jobs = JobRepository(seeded.store)
        job = await jobs.create("owner-1", total_items=50)

        result = await service.process_chunk(_ids(50), owner_id="owner-1", job_id=job.id)

        assert result.successes == 49
        assert result.failures == 1
        assert [error.item_id for error in result.errors] == ["rec-17"]
        assert "(400)" in result.errors[0].message
        stored = await jobs.get(job.id)
        assert stored.processed_items == 50
        assert stored.status == "completed"
        assert [error.item_id for error in stored.errors] == ["rec-17"]

    async def test_respects_concurrency_cap(self, service_for):
        engine = _ScriptedEngine()
        await service_for(engine, concurrency=5).run_batch(_ids(50))
        assert engine.peak == 5
        assert len(engine.calls) == 50

    async def test_records_are_not_forced(self, service_for):
        engine = _ScriptedEngine()
        await service_for(engine).run_batch(_ids(3))
        assert all(force is False for _, force in engine.calls)

    async def test_marks_records_as_synced_before_syncing(self, seeded, service_for):
        await service_for(_ScriptedEngine()).run_batch(["rec-1"])
        assert seeded.store.snapshot(RECORDS, "rec-1")["is_synced"] is True

    async def test_missing_record_is_skipped_not_failed(self, service_for):
        engine = _ScriptedEngine()
        result = await service_for(engine).run_batch(["rec-1", "ghost"])
        assert (result.successes, result.failures) == (2, 0)
        assert [record_id for record_id, _ in engine.calls] == ["rec-1"]

    async def test_error_outcome_counts_as_failure(self, seeded, service_for):
        engine = _ScriptedEngine(erroring={"rec-2"})
        jobs = JobRepository(seeded.store)
        job = await jobs.create("owner-1", total_items=3)

        result = await service_for(engine).process_chunk(
            _ids(3), owner_id="owner-1", job_id=job.id
        )

        assert (result.successes, result.failures) == (2, 1)
        stored = await jobs.get(job.id)
        assert [(error.item_id, error.message) for error in stored.errors] == [
            ("rec-2", "revoked")
        ]

    async def test_real_engine_batch(self, seeded, service_for):
        result = await service_for(seeded.engine()).run_batch(_ids(3))

        assert (result.successes, result.failures) == (3, 0)
        for record_id in _ids(3):
            assert len((await seeded.record(record_id)).event_map) == 21


# ---------------------------------------------------------------------------
# Job creation and dispatch
# ---------------------------------------------------------------------------


class TestCreateJob:
    async def test_chunks_dispatched_with_increasing_delays(self, seeded, service_for):
        dispatcher = _RecordingDispatcher()
        service = service_for(
            _ScriptedEngine(), dispatcher, chunk_size=5, chunk_delay_seconds=10
        )

        ticket = await service.create_job("owner-1", _ids(12))

        assert ticket.chunks == 3
        assert ticket.total_items == 12
        assert [delay for _, delay in dispatcher.tasks] == [0, 10, 20]
        first, _ = dispatcher.tasks[0]
        assert first == {"recordIds": _ids(5), "ownerId": "owner-1", "jobId": ticket.job_id}
        assert seeded.store.snapshot(ACCOUNT_LINKS, "owner-1")["sync_status"] == "IN_PROGRESS"

    async def test_job_completes_after_last_chunk(self, seeded, service_for):
        dispatcher = _RecordingDispatcher()
        service = service_for(_ScriptedEngine(failing={"rec-7"}), dispatcher, chunk_size=5)
        ticket = await service.create_job("owner-1", _ids(12))

        for payload, _ in dispatcher.tasks:
            await service.handle_task(payload)

        job = await JobRepository(seeded.store).get(ticket.job_id)
        assert job.processed_items == 12
        assert job.status == "completed"
        assert len(job.errors) == 1
        assert seeded.store.snapshot(ACCOUNT_LINKS, "owner-1")["sync_status"] == "IDLE"

    async def test_empty_job_completes_immediately(self, seeded, service_for):
        dispatcher = _RecordingDispatcher()
        ticket = await service_for(_ScriptedEngine(), dispatcher).create_job("owner-1", [])

        assert dispatcher.tasks == []
        job = await JobRepository(seeded.store).get(ticket.job_id)
        assert job.status == "completed"
        assert seeded.store.snapshot(ACCOUNT_LINKS, "owner-1")["sync_status"] == "IDLE"

    async def test_local_dispatcher_runs_chunks(self, seeded, service_for):
        dispatcher = LocalTaskDispatcher()
        service = service_for(_ScriptedEngine(), dispatcher, chunk_delay_seconds=0)
        dispatcher.bind(service.handle_task)

        ticket = await service.create_job("owner-1", _ids(11))
        await dispatcher.drain()

        job = await JobRepository(seeded.store).get(ticket.job_id)
        assert job.processed_items == 11
        assert job.status == "completed"
        assert dispatcher.pending == 0

    async def test_overlapping_chunks_share_the_concurrency_cap(self, seeded, service_for):
        engine = _ScriptedEngine()
        dispatcher = LocalTaskDispatcher()
        service = service_for(engine, dispatcher, concurrency=5, chunk_delay_seconds=0)
        dispatcher.bind(service.handle_task)

        ticket = await service.create_job("owner-1", _ids(50))
        await dispatcher.drain()

        assert len(engine.calls) == 50
        assert engine.peak <= 5
        job = await JobRepository(seeded.store).get(ticket.job_id)
        assert job.processed_items == 50


def test_rejects_invalid_limits(harness):
    with pytest.raises(ValueError):
        BulkSyncService(
            engine=_ScriptedEngine(),
            records=RecordRepository(harness.store),
            jobs=JobRepository(harness.store),
            accounts=AccountLinkRepository(harness.store),
            dispatcher=_RecordingDispatcher(),
            concurrency=0,
        )


def test_rejects_negative_chunk_delay(harness):
    with pytest.raises(ValueError, match="chunk_delay_seconds"):
        BulkSyncService(
            engine=_ScriptedEngine(),
            records=RecordRepository(harness.store),
            jobs=JobRepository(harness.store),
            accounts=AccountLinkRepository(harness.store),
            dispatcher=_RecordingDispatcher(),
            chunk_delay_seconds=-1,
        )
