"""Integration tests for the Postgres JSONB document store."""

from __future__ import annotations

import pytest

from birthday_sync.core.store import (
    DELETE_FIELD,
    CASConflictError,
    DocumentNotFoundError,
    PostgresDocumentStore,
)
from birthday_sync.repositories import RECORDS, RecordRepository
from birthday_sync.sync.models import SyncStatus

pytestmark = [pytest.mark.integration]


@pytest.fixture
async def store(provisioned_postgres_pool):
    async with provisioned_postgres_pool() as pool:
        store = PostgresDocumentStore(pool)
        await store.ensure_schema()
        yield store


class TestPostgresDocumentStore:
    async def test_schema_is_idempotent(self, store):
        await store.ensure_schema()

    async def test_insert_get_roundtrip(self, store):
        version = await store.insert(RECORDS, "r1", {"first_name": "Dana", "tags": ["a"]})
        document = await store.get(RECORDS, "r1")
        assert version == 1
        assert document.data == {"first_name": "Dana", "tags": ["a"]}
        assert document.version == 1
        assert await store.get(RECORDS, "missing") is None

    async def test_update_merges_and_removes_fields(self, store):
        await store.insert(RECORDS, "r1", {"a": 1, "b": {"x": 1}, "c": 3})
        version = await store.update(RECORDS, "r1", {"b": {"y": 2}, "c": DELETE_FIELD, "d": None})
        document = await store.get(RECORDS, "r1")
        assert version == 2
        assert document.data == {"a": 1, "b": {"y": 2}, "d": None}

    async def test_compare_and_swap(self, store):
        await store.insert(RECORDS, "r1", {"a": 1})
        assert await store.update(RECORDS, "r1", {"a": 2}, expected_version=1) == 2
        with pytest.raises(CASConflictError) as exc_info:
            await store.update(RECORDS, "r1", {"a": 3}, expected_version=1)
        assert exc_info.value.actual_version == 2
        assert (await store.get(RECORDS, "r1")).data == {"a": 2}

    async def test_missing_document(self, store):
        with pytest.raises(DocumentNotFoundError):
            await store.update(RECORDS, "ghost", {"a": 1})
        with pytest.raises(CASConflictError):
            await store.update(RECORDS, "ghost", {"a": 1}, expected_version=1)

    async def test_increment_with_append(self, store):
        await store.insert("sync_jobs", "j1", {"processed_items": 0, "errors": []})
        await store.increment("sync_jobs", "j1", "processed_items")
        document = await store.increment(
            "sync_jobs",
            "j1",
            "processed_items",
            append_field="errors",
            append_items=[{"itemId": "r2"}],
        )
        assert document.data["processed_items"] == 2
        assert document.data["errors"] == [{"itemId": "r2"}]
        assert document.version == 3

    async def test_find_by_containment(self, store):
        await store.insert(RECORDS, "b", {"tenant_id": "t1", "sync_metadata": {"status": "ERROR"}})
        await store.insert(RECORDS, "a", {"tenant_id": "t1"})
        await store.insert(RECORDS, "c", {"tenant_id": "t2"})
        assert [d.id for d in await store.find(RECORDS, {"tenant_id": "t1"})] == ["a", "b"]
        found = await store.find(RECORDS, {"sync_metadata": {"status": "ERROR"}})
        assert [d.id for d in found] == ["b"]

    async def test_record_repository_find_failed(self, store):
        metadata = {"status": "PARTIAL_SYNC", "lastAttemptAt": "2026-01-01T00:00:00Z"}
        await store.insert(
            RECORDS,
            "r1",
            {"tenant_id": "t1", "birth_date_gregorian": "1990-05-15", "sync_metadata": metadata},
        )
        records = await RecordRepository(store).find_failed()
        assert [record.id for record in records] == ["r1"]
        assert records[0].sync_metadata.status == SyncStatus.PARTIAL_SYNC
