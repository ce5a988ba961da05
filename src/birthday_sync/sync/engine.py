"""Single-record sync: guard, build, diff, execute, write back.

``SyncEngine`` is the one code path every entry point (record change, bulk
job, retry sweep, remove-sync) goes through.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, date, datetime

from birthday_sync.core.logging import sync_context
from birthday_sync.core.metrics import sync_metrics
from birthday_sync.core.store import CASConflictError
from birthday_sync.core.telemetry import record_span
from birthday_sync.google.calendar import CalendarClient
from birthday_sync.google.oauth import AccountCredentials, CredentialSource
from birthday_sync.hebcal import LunarCalendar, LunarCalendarError
from birthday_sync.repositories import (
    GroupRepository,
    OrganizationRepository,
    RecordRepository,
    SubItemRepository,
)
from birthday_sync.sync.builder import EventBuilder
from birthday_sync.sync.diff import CycleBoundary, compute_plan
from birthday_sync.sync.errors import (
    CredentialError,
    RecordNotFoundError,
    StrictModeError,
    WriteBackConflictError,
)
from birthday_sync.sync.idempotency import compute_data_hash, should_skip
from birthday_sync.sync.models import SyncMetadata, SyncOutcome, SyncRecord
from birthday_sync.sync.pipeline import ExecutionResult, PlanExecutor
from birthday_sync.sync.retry import RetryPolicy, Sleep
from birthday_sync.sync.status import error_metadata, next_metadata

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR_ID = "primary"
DEFAULT_WRITE_BACK_ATTEMPTS = 3

ClientFactory = Callable[[AccountCredentials], CalendarClient]
MetadataFactory = Callable[[SyncMetadata | None], SyncMetadata]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SyncEngine:
    """Reconciles one record's calendar events with its current state."""

    def __init__(
        self,
        *,
        records: RecordRepository,
        organizations: OrganizationRepository,
        groups: GroupRepository,
        sub_items: SubItemRepository,
        credentials: CredentialSource,
        client_factory: ClientFactory,
        builder: EventBuilder,
        lunar_calendar: LunarCalendar,
        retry_policy: RetryPolicy | None = None,
        strict_mode: bool = True,
        operation_delay_seconds: float = 0.0,
        write_back_attempts: int = DEFAULT_WRITE_BACK_ATTEMPTS,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._records = records
        self._organizations = organizations
        self._groups = groups
        self._sub_items = sub_items
        self._credentials = credentials
        self._client_factory = client_factory
        self._builder = builder
        self._lunar_calendar = lunar_calendar
        self._retry_policy = retry_policy or RetryPolicy()
        self._strict_mode = strict_mode
        self._operation_delay_seconds = operation_delay_seconds
        self._write_back_attempts = max(1, write_back_attempts)
        self._clock = clock
        self._sleep = sleep

    @property
    def records(self) -> RecordRepository:
        return self._records

    async def sync_record(
        self,
        record_id: str,
        *,
        force: bool = False,
        archive: bool = False,
        persist: bool = True,
    ) -> SyncOutcome:
        """Load *record_id* and reconcile its calendar events.

        Args:
            force: Bypass the unchanged-data guard.
            archive: Treat the record as archived, deleting every mapped event.
            persist: Write the resulting event map and sync status back.

        Raises:
            RecordNotFoundError: The record does not exist.
        """
        record = await self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        if archive and not record.archived:
            record = record.model_copy(update={"archived": True})
        return await self.sync_snapshot(record, force=force, persist=persist)

    async def sync_snapshot(
        self,
        record: SyncRecord,
        *,
        force: bool = False,
        persist: bool = True,
    ) -> SyncOutcome:
        """Reconcile an already-loaded record."""
        started = time.monotonic()
        with sync_context(record_id=record.id), record_span(
            record.id, force=force, archive=record.archived
        ) as span:
            outcome = await self._sync(record, force=force, persist=persist)
            span.set_attribute("sync.status", outcome.status)
        sync_metrics.record_duration((time.monotonic() - started) * 1000, outcome.status)
        return outcome

    async def _sync(self, record: SyncRecord, *, force: bool, persist: bool) -> SyncOutcome:
        if not record.tenant_id:
            return self._skipped(record, "no_tenant")
        organization = await self._organizations.get(record.tenant_id)
        if organization is None or not organization.owner_id:
            return self._skipped(record, "no_owner")

        data_hash = compute_data_hash(record, organization)
        if should_skip(record, data_hash, force=force):
            return self._skipped(record, "unchanged")

        owner_id = organization.owner_id
        now = self._clock()
        with sync_context(owner_id=owner_id):
            try:
                credentials = await self._credentials.resolve(owner_id)
                if self._strict_mode and credentials.calendar_id == PRIMARY_CALENDAR_ID:
                    raise StrictModeError(credentials.calendar_id)
            except (CredentialError, StrictModeError) as exc:
                logger.warning("Sync of record %s stopped before the diff: %s", record.id, exc)
                metadata = error_metadata(
                    record.sync_metadata, error=exc, data_hash=data_hash, now=now
                )
                if persist:
                    metadata = await self._write_back(
                        record.id,
                        None,
                        lambda previous: error_metadata(
                            previous, error=exc, data_hash=data_hash, now=now
                        ),
                        now,
                    )
                return SyncOutcome(
                    record_id=record.id, status="error", message=metadata.last_error_message
                )

            groups = await self._groups.get_many(record.group_ids)
            sub_items = await self._sub_items.for_record(record.id)
            desired = self._builder.build(
                record, organization, groups, sub_items, today=now.date()
            )
            boundary = await self._cycle_boundary(now.date())
            plan = compute_plan(desired, record.event_map, boundary, archived=record.archived)

            executor = PlanExecutor(
                self._client_factory(credentials),
                calendar_id=credentials.calendar_id,
                record_id=record.id,
                retry_policy=self._retry_policy,
                operation_delay_seconds=self._operation_delay_seconds,
                sleep=self._sleep,
            )
            result = await executor.execute(plan, record.event_map)

            def build_metadata(previous: SyncMetadata | None) -> SyncMetadata:
                return next_metadata(
                    previous,
                    failed_keys=result.failed_keys,
                    errors=result.errors,
                    data_hash=data_hash,
                    now=now,
                )

            metadata = build_metadata(record.sync_metadata)
            if persist:
                metadata = await self._write_back(record.id, result, build_metadata, now)
            elif result.failed_keys:
                logger.warning(
                    "Record %s left %d events unsynced: %s",
                    record.id,
                    len(result.failed_keys),
                    ", ".join(result.failed_keys),
                )

        return SyncOutcome(
            record_id=record.id,
            status="partial" if result.failed_keys else "synced",
            stats=result.stats,
            failed_keys=list(result.failed_keys),
            message=metadata.last_error_message,
        )

    async def _cycle_boundary(self, today: date) -> CycleBoundary:
        try:
            lunar_year: int | None = await self._lunar_calendar.current_year(today)
        except LunarCalendarError as exc:
            logger.warning("Current lunar year unavailable, keeping lunar orphans: %s", exc)
            lunar_year = None
        return CycleBoundary(gregorian=today.year, lunar=lunar_year)

    async def _write_back(
        self,
        record_id: str,
        result: ExecutionResult | None,
        build_metadata: MetadataFactory,
        now: datetime,
    ) -> SyncMetadata:
        """Persist the sync outcome with compare-and-swap.

        Each attempt re-reads the record and replays only this sync's map
        delta onto the fresh map, so a concurrent writer's changes survive.
        """
        metadata = build_metadata(None)
        for attempt in range(1, self._write_back_attempts + 1):
            current = await self._records.get(record_id)
            if current is None:
                logger.warning("Record %s disappeared before its sync state was saved", record_id)
                return metadata
            metadata = build_metadata(current.sync_metadata)
            fields: dict[str, object] = {"sync_metadata": metadata.to_wire()}
            if result is not None:
                fields["event_map"] = result.apply_to(current.event_map)
                fields["last_synced_at"] = now.isoformat()
            try:
                await self._records.update(record_id, fields, expected_version=current.version)
                return metadata
            except CASConflictError as exc:
                logger.info(
                    "Write-back of record %s conflicted (attempt %d/%d): %s",
                    record_id,
                    attempt,
                    self._write_back_attempts,
                    exc,
                )
        raise WriteBackConflictError(record_id, self._write_back_attempts)

    @staticmethod
    def _skipped(record: SyncRecord, reason: str) -> SyncOutcome:
        logger.debug("Skipping sync of record %s: %s", record.id, reason)
        sync_metrics.record_skip(reason)
        return SyncOutcome(record_id=record.id, status="skipped", message=reason)
