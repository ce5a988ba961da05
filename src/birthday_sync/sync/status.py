"""Sync-status transitions for a record after each sync attempt.

``retryCount`` resets only on a full success and grows only when the previous
attempt had already failed, so the first failure after a success is 0.
A revoked credential parks the record at :data:`REVOKED_RETRY_COUNT`, which is
above every automatic retry threshold.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime

from birthday_sync.google.calendar import redact_credential_values
from birthday_sync.sync.errors import (
    CredentialNotConnectedError,
    CredentialRevokedError,
    CredentialUnavailableError,
    StrictModeError,
)
from birthday_sync.sync.models import REVOKED_RETRY_COUNT, SyncMetadata, SyncStatus

MAX_ERROR_MESSAGE_LENGTH = 500

REVOKED_MESSAGE = (
    "Google Calendar access was revoked. Reconnect your Google account to resume syncing."
)
NOT_CONNECTED_MESSAGE = (
    "No Google Calendar account is connected. Connect one to start syncing."
)
UNAVAILABLE_MESSAGE = (
    "Google Calendar could not be reached. The sync will be retried automatically."
)
STRICT_MODE_MESSAGE = (
    "Syncing into the primary calendar is not allowed. Choose a dedicated calendar."
)


def _failure_base(previous: SyncMetadata | None) -> tuple[int, bool]:
    """Return the retry count to build on and whether the previous attempt failed."""
    if previous is None:
        return 0, False
    if previous.credential_revoked:
        # The credential resolved again, so the sentinel no longer applies.
        return 0, False
    failed_before = previous.status in (SyncStatus.PARTIAL_SYNC, SyncStatus.ERROR)
    return previous.retry_count, failed_before


def _next_failure_count(previous: SyncMetadata | None) -> int:
    base, failed_before = _failure_base(previous)
    return base + 1 if failed_before else base


def truncate_message(message: str) -> str:
    message = redact_credential_values(message)
    if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return message[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."


def format_failures(failed_keys: Sequence[str], errors: Mapping[str, str]) -> str | None:
    """Aggregate per-key errors into ``"<key>: <message>; ..."``."""
    if not failed_keys:
        return None
    parts = [f"{key}: {errors.get(key, 'unknown error')}" for key in failed_keys]
    return truncate_message("; ".join(parts))


def next_metadata(
    previous: SyncMetadata | None,
    *,
    failed_keys: Sequence[str],
    errors: Mapping[str, str],
    data_hash: str,
    now: datetime,
) -> SyncMetadata:
    """Metadata after a sync whose plan was executed."""
    if not failed_keys:
        return SyncMetadata(
            status=SyncStatus.SYNCED,
            last_attempt_at=now,
            failed_keys=[],
            last_error_message=None,
            retry_count=0,
            data_hash=data_hash,
        )
    return SyncMetadata(
        status=SyncStatus.PARTIAL_SYNC,
        last_attempt_at=now,
        failed_keys=list(failed_keys),
        last_error_message=format_failures(failed_keys, errors),
        retry_count=_next_failure_count(previous),
        data_hash=data_hash,
    )


def describe_error(error: Exception) -> str:
    """User-facing message for a pipeline-level failure."""
    if isinstance(error, CredentialNotConnectedError):
        return NOT_CONNECTED_MESSAGE
    if isinstance(error, CredentialRevokedError):
        return REVOKED_MESSAGE
    if isinstance(error, CredentialUnavailableError):
        return UNAVAILABLE_MESSAGE
    if isinstance(error, StrictModeError):
        return STRICT_MODE_MESSAGE
    return truncate_message(str(error) or type(error).__name__)


def error_metadata(
    previous: SyncMetadata | None,
    *,
    error: Exception,
    data_hash: str,
    now: datetime,
) -> SyncMetadata:
    """Metadata after a failure that stopped the sync before any event was touched."""
    if isinstance(error, CredentialRevokedError):
        retry_count = REVOKED_RETRY_COUNT
    else:
        retry_count = _next_failure_count(previous)
    return SyncMetadata(
        status=SyncStatus.ERROR,
        last_attempt_at=now,
        failed_keys=[],
        last_error_message=describe_error(error),
        retry_count=retry_count,
        data_hash=data_hash,
    )


def is_retry_candidate(metadata: SyncMetadata | None, max_retries: int) -> bool:
    """True for failed syncs that the scheduled sweep should attempt again."""
    if metadata is None:
        return False
    return (
        metadata.status in (SyncStatus.PARTIAL_SYNC, SyncStatus.ERROR)
        and metadata.retry_count < max_retries
    )
