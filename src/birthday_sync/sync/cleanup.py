"""Removing a record's events and sweeping events left behind on a calendar."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from birthday_sync.core.store import DELETE_FIELD
from birthday_sync.google.calendar import CalendarRequestError
from birthday_sync.google.oauth import CredentialSource
from birthday_sync.repositories import RecordRepository
from birthday_sync.sync.engine import ClientFactory, SyncEngine
from birthday_sync.sync.errors import RecordNotFoundError, SyncError
from birthday_sync.sync.models import APP_MARKER_PROPERTY, APP_MARKER_VALUE, SyncOutcome
from birthday_sync.sync.retry import RetryPolicy, Sleep, call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_DELAY_SECONDS = 0.15


@dataclass(frozen=True)
class CleanupResult:
    found: int
    deleted: int
    failed: int


class SyncCleanup:
    def __init__(
        self,
        *,
        engine: SyncEngine,
        records: RecordRepository,
        credentials: CredentialSource,
        client_factory: ClientFactory,
        retry_policy: RetryPolicy | None = None,
        delay_seconds: float = DEFAULT_CLEANUP_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._engine = engine
        self._records = records
        self._credentials = credentials
        self._client_factory = client_factory
        self._retry_policy = retry_policy or RetryPolicy()
        self._delay_seconds = delay_seconds
        self._sleep = sleep

    async def remove_record_sync(self, record_id: str) -> SyncOutcome:
        """Delete every calendar event of a record and forget its sync state.

        Events whose delete failed stay in the event map and the sync metadata
        is kept, so the removal can be run again.

        Raises:
            RecordNotFoundError: The record does not exist.
            SyncError: The events could not be removed (revoked credentials, or
                no tenant owner to resolve a calendar for); nothing is changed.
        """
        record = await self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)

        snapshot = record.model_copy(update={"archived": True, "is_synced": False})
        outcome = await self._engine.sync_snapshot(snapshot, force=True, persist=False)
        if outcome.status in ("error", "skipped"):
            raise SyncError(
                f"Could not remove calendar events of record {record_id}: {outcome.message}"
            )

        if outcome.failed_keys:
            # Keys whose delete failed stay mapped so a later removal can retry them.
            remaining = {
                key: record.event_map[key]
                for key in outcome.failed_keys
                if key in record.event_map
            }
            await self._records.update(
                record_id,
                {"event_map": remaining, "is_synced": False, "last_synced_at": DELETE_FIELD},
            )
            logger.warning(
                "Record %s unlinked with %d events left on the calendar: %s",
                record_id,
                len(remaining),
                ", ".join(sorted(remaining)),
            )
            return outcome

        await self._records.clear_tracking(record_id, unsync=True)
        logger.info("Removed calendar sync of record %s", record_id)
        return outcome

    async def cleanup_orphans(self, owner_id: str, *, dry_run: bool = False) -> CleanupResult:
        """Delete every event this service ever created on the owner's calendar.

        With *dry_run* nothing is deleted and ``deleted`` reports what would be.
        """
        credentials = await self._credentials.resolve(owner_id)
        client = self._client_factory(credentials)
        marker = f"{APP_MARKER_PROPERTY}={APP_MARKER_VALUE}"

        event_ids: list[str] = []
        page_token: str | None = None
        while True:
            page = await call_with_retry(
                lambda token=page_token: client.list(
                    credentials.calendar_id, private_property=marker, page_token=token
                ),
                policy=self._retry_policy,
                sleep=self._sleep,
                description="list events",
            )
            event_ids.extend(
                item["id"] for item in page.items if isinstance(item.get("id"), str)
            )
            page_token = page.next_page_token
            if not page_token:
                break

        logger.info("Found %d app-created events for owner %s", len(event_ids), owner_id)
        if dry_run:
            return CleanupResult(found=len(event_ids), deleted=len(event_ids), failed=0)

        deleted = failed = 0
        for index, event_id in enumerate(event_ids):
            if index and self._delay_seconds > 0:
                await self._sleep(self._delay_seconds)
            try:
                await call_with_retry(
                    lambda event_id=event_id: client.delete(credentials.calendar_id, event_id),
                    policy=self._retry_policy,
                    sleep=self._sleep,
                    description=f"delete {event_id}",
                )
            except CalendarRequestError as exc:
                if exc.is_gone:
                    deleted += 1
                    continue
                failed += 1
                logger.warning("Could not delete orphan event %s: %s", event_id, exc)
                continue
            except Exception as exc:
                failed += 1
                logger.warning("Could not delete orphan event %s: %s", event_id, exc)
                continue
            deleted += 1

        return CleanupResult(found=len(event_ids), deleted=deleted, failed=failed)

    async def cleanup_orphans_and_unlink(self, owner_id: str, tenant_id: str) -> CleanupResult:
        """Run :meth:`cleanup_orphans` and strip sync tracking from every tenant record."""
        result = await self.cleanup_orphans(owner_id)
        records = await self._records.find_by_tenant(tenant_id)
        for record in records:
            await self._records.clear_tracking(record.id, unsync=True)
        logger.info(
            "Unlinked %d records of tenant %s after deleting %d events",
            len(records),
            tenant_id,
            result.deleted,
        )
        return result
