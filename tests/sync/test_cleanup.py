"""Tests for remove-sync and orphan cleanup."""

from __future__ import annotations

import pytest

from birthday_sync.repositories import RECORDS, RecordRepository
from birthday_sync.sync.cleanup import SyncCleanup
from birthday_sync.sync.errors import CredentialRevokedError, RecordNotFoundError, SyncError
from birthday_sync.sync.pipeline import deterministic_event_id
from birthday_sync.sync.retry import RetryPolicy

pytestmark = pytest.mark.unit

APP_EVENT = {"extendedProperties": {"private": {"createdByApp": "hebbirthday"}}}
FOREIGN_EVENT = {"extendedProperties": {"private": {"createdByApp": "someone-else"}}}


@pytest.fixture
def cleanup(harness):
    return SyncCleanup(
        engine=harness.engine(),
        records=RecordRepository(harness.store),
        credentials=harness.credentials,
        client_factory=lambda credentials: harness.calendar,
        retry_policy=RetryPolicy(max_retries=2, base_delay_seconds=0, max_jitter_seconds=0),
        delay_seconds=0.15,
        sleep=harness.sleep,
    )


# ---------------------------------------------------------------------------
# remove_record_sync
# ---------------------------------------------------------------------------


class TestRemoveRecordSync:
    async def test_deletes_events_and_forgets_tracking(self, harness, cleanup):
        harness.seed_record()
        await harness.engine().sync_record("rec-1")

        outcome = await cleanup.remove_record_sync("rec-1")

        assert outcome.stats.deleted == 21
        assert harness.calendar.events[harness.credentials.calendar_id] == {}
        data = harness.store.snapshot(RECORDS, "rec-1")
        assert "event_map" not in data
        assert "sync_metadata" not in data
        assert "last_synced_at" not in data
        assert data["is_synced"] is False
        assert data["archived"] is False

    async def test_failed_deletes_stay_mapped(self, harness, cleanup):
        harness.seed_record()
        await harness.engine().sync_record("rec-1")
        leftover = deterministic_event_id("rec-1", "gregorian_2030")
        harness.calendar.fail("delete", leftover, 500)

        outcome = await cleanup.remove_record_sync("rec-1")

        assert outcome.failed_keys == ["gregorian_2030"]
        data = harness.store.snapshot(RECORDS, "rec-1")
        assert data["event_map"] == {"gregorian_2030": leftover}
        assert "sync_metadata" in data
        assert "last_synced_at" not in data
        assert data["is_synced"] is False
        assert list(harness.calendar.events[harness.credentials.calendar_id]) == [leftover]

    async def test_removal_can_be_rerun_for_leftovers(self, harness, cleanup):
        harness.seed_record()
        await harness.engine().sync_record("rec-1")
        harness.calendar.fail("delete", deterministic_event_id("rec-1", "gregorian_2030"), 500)
        await cleanup.remove_record_sync("rec-1")

        outcome = await cleanup.remove_record_sync("rec-1")

        assert outcome.stats.deleted == 1
        assert "event_map" not in harness.store.snapshot(RECORDS, "rec-1")
        assert harness.calendar.events[harness.credentials.calendar_id] == {}

    async def test_tenant_without_owner_keeps_tracking(self, harness, cleanup):
        harness.seed_record()
        await harness.engine().sync_record("rec-1")
        harness.seed_tenant(owner_id=None)

        with pytest.raises(SyncError, match="no_owner"):
            await cleanup.remove_record_sync("rec-1")

        assert harness.calendar.calls_for("delete") == []
        assert len(harness.store.snapshot(RECORDS, "rec-1")["event_map"]) == 21

    async def test_record_without_tenant_is_rejected(self, harness, cleanup):
        harness.seed_record(tenant_id=None, event_map={"gregorian_2026": "ev26"})

        with pytest.raises(SyncError, match="no_tenant"):
            await cleanup.remove_record_sync("rec-1")

        assert harness.store.snapshot(RECORDS, "rec-1")["event_map"] == {"gregorian_2026": "ev26"}

    async def test_revoked_credentials_keep_tracking(self, harness, cleanup):
        harness.seed_record()
        await harness.engine().sync_record("rec-1")
        harness.credentials.error = CredentialRevokedError("owner-1", "invalid_grant")

        with pytest.raises(SyncError, match="rec-1"):
            await cleanup.remove_record_sync("rec-1")

        assert len(harness.store.snapshot(RECORDS, "rec-1")["event_map"]) == 21

    async def test_missing_record(self, cleanup):
        with pytest.raises(RecordNotFoundError):
            await cleanup.remove_record_sync("ghost")


# ---------------------------------------------------------------------------
# cleanup_orphans
# ---------------------------------------------------------------------------


class TestCleanupOrphans:
    @pytest.fixture
    def calendar_id(self, harness):
        return harness.credentials.calendar_id

    async def test_deletes_only_app_events_across_pages(self, harness, cleanup, calendar_id):
        for n in range(300):
            harness.calendar.seed(calendar_id, f"app{n:03d}", APP_EVENT)
        harness.calendar.seed(calendar_id, "foreign", FOREIGN_EVENT)

        result = await cleanup.cleanup_orphans("owner-1")

        assert (result.found, result.deleted, result.failed) == (300, 300, 0)
        assert list(harness.calendar.events[calendar_id]) == ["foreign"]
        assert len(harness.calendar.calls_for("list")) == 2
        assert harness.sleeps == [0.15] * 299

    async def test_dry_run_deletes_nothing(self, harness, cleanup, calendar_id):
        for n in range(3):
            harness.calendar.seed(calendar_id, f"app{n}", APP_EVENT)

        result = await cleanup.cleanup_orphans("owner-1", dry_run=True)

        assert (result.found, result.deleted, result.failed) == (3, 3, 0)
        assert harness.calendar.calls_for("delete") == []
        assert len(harness.calendar.events[calendar_id]) == 3

    async def test_failures_are_counted_and_gone_is_success(self, harness, cleanup, calendar_id):
        for n in range(3):
            harness.calendar.seed(calendar_id, f"app{n}", APP_EVENT)
        harness.calendar.fail("delete", "app0", 500)
        harness.calendar.fail("delete", "app1", 410)

        result = await cleanup.cleanup_orphans("owner-1")

        assert (result.found, result.deleted, result.failed) == (3, 2, 1)

    async def test_rate_limited_delete_is_retried(self, harness, cleanup, calendar_id):
        harness.calendar.seed(calendar_id, "app0", APP_EVENT)
        harness.calendar.fail("delete", "app0", 429)

        result = await cleanup.cleanup_orphans("owner-1")

        assert result.deleted == 1
        assert len(harness.calendar.calls_for("delete")) == 2

    async def test_unlink_clears_every_tenant_record(self, harness, cleanup, calendar_id):
        harness.seed_record("rec-1")
        harness.seed_record("rec-2")
        harness.seed_record("other", tenant_id="tenant-9")
        engine = harness.engine()
        for record_id in ("rec-1", "rec-2", "other"):
            await harness.store.update(RECORDS, record_id, {"is_synced": True})
        await engine.sync_record("rec-1")
        await engine.sync_record("rec-2")

        result = await cleanup.cleanup_orphans_and_unlink("owner-1", "tenant-1")

        assert result.deleted == 42
        for record_id in ("rec-1", "rec-2"):
            data = harness.store.snapshot(RECORDS, record_id)
            assert "event_map" not in data
            assert data["is_synced"] is False
        assert harness.store.snapshot(RECORDS, "other")["is_synced"] is True
