"""Change detection that lets a record sync skip all external work."""

from __future__ import annotations

import hashlib
import json

from birthday_sync.sync.models import (
    Organization,
    SyncRecord,
    SyncStatus,
    effective_preference,
)


def compute_data_hash(record: SyncRecord, organization: Organization) -> str:
    """Fingerprint the record fields that influence its calendar events.

    Only fields that change event content or the desired key set take part:
    name, gregorian date, after-sunset flag, effective calendar preference,
    archival, notes and group membership.
    """
    payload = {
        "firstName": record.first_name,
        "lastName": record.last_name,
        "date": record.birth_date_gregorian.isoformat(),
        "sunset": record.after_sunset,
        "prefs": str(effective_preference(record, organization)),
        "archived": record.archived,
        "notes": record.notes,
        "groups": list(record.group_ids),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def should_skip(record: SyncRecord, data_hash: str, *, force: bool = False) -> bool:
    """Return True when the last sync already reflects *data_hash* completely.

    A record with no mapped events is never skipped, so a record that was
    synced while every event failed (or was never synced) always proceeds.
    """
    if force or not record.event_map:
        return False
    metadata = record.sync_metadata
    if metadata is None:
        return False
    return metadata.status == SyncStatus.SYNCED and metadata.data_hash == data_hash
