"""Typed access to the store collections the sync service reads and writes.

Documents are validated into the models of :mod:`birthday_sync.sync.models`
here, once, so nothing downstream handles raw store payloads.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from birthday_sync.core.store import DELETE_FIELD, Document, DocumentStore
from birthday_sync.sync.models import (
    AccountLink,
    BulkSyncJob,
    Group,
    JobError,
    Organization,
    SubItem,
    SyncRecord,
    SyncStatus,
)

logger = logging.getLogger(__name__)

RECORDS = "birthdays"
ORGANIZATIONS = "tenants"
GROUPS = "groups"
SUB_ITEMS = "wishlist_items"
ACCOUNT_LINKS = "calendar_tokens"
JOBS = "sync_jobs"

TRACKING_FIELDS = ("event_map", "sync_metadata", "last_synced_at")


def _record_from(document: Document) -> SyncRecord:
    return SyncRecord.model_validate(
        {**document.data, "id": document.id, "version": document.version}
    )


class RecordRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, record_id: str) -> SyncRecord | None:
        document = await self._store.get(RECORDS, record_id)
        if document is None:
            return None
        return _record_from(document)

    async def update(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        return await self._store.update(
            RECORDS, record_id, fields, expected_version=expected_version
        )

    async def set_is_synced(self, record_id: str, is_synced: bool) -> None:
        await self._store.update(RECORDS, record_id, {"is_synced": is_synced})

    async def clear_tracking(self, record_id: str, *, unsync: bool = False) -> None:
        fields: dict[str, Any] = {name: DELETE_FIELD for name in TRACKING_FIELDS}
        if unsync:
            fields["is_synced"] = False
        await self._store.update(RECORDS, record_id, fields)

    async def find_by_tenant(self, tenant_id: str) -> list[SyncRecord]:
        return self._validated(await self._store.find(RECORDS, {"tenant_id": tenant_id}))

    async def find_failed(self) -> list[SyncRecord]:
        """Non-archived records whose last sync was partial or failed."""
        documents: list[Document] = []
        for status in (SyncStatus.PARTIAL_SYNC, SyncStatus.ERROR):
            documents.extend(
                await self._store.find(RECORDS, {"sync_metadata": {"status": str(status)}})
            )
        return [record for record in self._validated(documents) if not record.archived]

    @staticmethod
    def _validated(documents: Sequence[Document]) -> list[SyncRecord]:
        records = []
        for document in documents:
            try:
                records.append(_record_from(document))
            except ValidationError as exc:
                logger.warning("Skipping malformed record %s: %s", document.id, exc)
        return records


class OrganizationRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, organization_id: str) -> Organization | None:
        document = await self._store.get(ORGANIZATIONS, organization_id)
        if document is None:
            return None
        return Organization.model_validate({**document.data, "id": document.id})


class GroupRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get_many(self, group_ids: Sequence[str]) -> list[Group]:
        """Return the groups in *group_ids* order, resolving each parent's name."""
        groups: list[Group] = []
        for group_id in group_ids:
            document = await self._store.get(GROUPS, group_id)
            if document is None:
                logger.debug("Group %s referenced by a record does not exist", group_id)
                continue
            data = dict(document.data)
            parent_id = data.get("parent_id")
            if parent_id and not data.get("parent_name"):
                parent = await self._store.get(GROUPS, parent_id)
                if parent is not None:
                    data["parent_name"] = parent.data.get("name")
            groups.append(Group.model_validate({**data, "id": document.id}))
        return groups


class SubItemRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def for_record(self, record_id: str) -> list[SubItem]:
        documents = await self._store.find(SUB_ITEMS, {"record_id": record_id})
        return [
            SubItem.model_validate({**document.data, "id": document.id}) for document in documents
        ]


class AccountLinkRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def get(self, owner_id: str) -> AccountLink | None:
        document = await self._store.get(ACCOUNT_LINKS, owner_id)
        if document is None:
            return None
        return AccountLink.model_validate({**document.data, "owner_id": document.id})

    async def revoke(self, owner_id: str) -> None:
        """Drop the stored refresh token after the provider rejected it."""
        await self._store.update(ACCOUNT_LINKS, owner_id, {"refresh_token": DELETE_FIELD})

    async def set_sync_status(self, owner_id: str, status: str) -> None:
        if await self._store.get(ACCOUNT_LINKS, owner_id) is None:
            return
        await self._store.update(ACCOUNT_LINKS, owner_id, {"sync_status": status})


class JobRepository:
    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def create(self, owner_id: str, total_items: int) -> BulkSyncJob:
        job = BulkSyncJob(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            total_items=total_items,
            created_at=datetime.now(UTC),
        )
        await self._store.insert(JOBS, job.id, job.model_dump(mode="json", exclude={"id"}))
        return job

    async def get(self, job_id: str) -> BulkSyncJob | None:
        document = await self._store.get(JOBS, job_id)
        if document is None:
            return None
        return BulkSyncJob.model_validate({**document.data, "id": document.id})

    async def record_progress(self, job_id: str, error: JobError | None = None) -> BulkSyncJob:
        """Count one processed item, appending *error* if it failed, and return the job."""
        append_items = [error.model_dump(mode="json", by_alias=True)] if error else None
        document = await self._store.increment(
            JOBS,
            job_id,
            "processed_items",
            1,
            append_field="errors" if error else None,
            append_items=append_items,
        )
        return BulkSyncJob.model_validate({**document.data, "id": document.id})

    async def mark_completed(self, job_id: str) -> None:
        await self._store.update(
            JOBS, job_id, {"status": "completed", "completed_at": datetime.now(UTC).isoformat()}
        )
