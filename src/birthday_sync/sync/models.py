"""Domain and wire models for record synchronization.

Every payload that crosses a collaborator boundary (store documents, builder
output, persisted sync status) is validated into one of these models exactly
once. The engine works on the validated shapes and never re-checks optional
fields deep inside the pipeline.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

APP_MARKER_PROPERTY = "createdByApp"
APP_MARKER_VALUE = "hebbirthday"

# retryCount value that marks a permanently revoked credential.
REVOKED_RETRY_COUNT = 999

_EVENT_KEY_PATTERN = re.compile(r"^(gregorian|hebrew)_(\d+)$")


class CalendarPreference(StrEnum):
    """Which date systems a record gets calendar events for."""

    BOTH = "both"
    GREGORIAN = "gregorian"
    LUNAR = "lunar"

    @classmethod
    def _missing_(cls, value: object) -> CalendarPreference | None:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized == "hebrew":
                return cls.LUNAR
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def includes_gregorian(self) -> bool:
        return self in (CalendarPreference.BOTH, CalendarPreference.GREGORIAN)

    @property
    def includes_lunar(self) -> bool:
        return self in (CalendarPreference.BOTH, CalendarPreference.LUNAR)


class SyncStatus(StrEnum):
    SYNCED = "SYNCED"
    PARTIAL_SYNC = "PARTIAL_SYNC"
    ERROR = "ERROR"


# ---------------------------------------------------------------------------
# Event keys
# ---------------------------------------------------------------------------


class GregorianKey(BaseModel):
    """Event key for the gregorian occurrence in a given year."""

    model_config = ConfigDict(frozen=True)

    system: Literal["gregorian"] = "gregorian"
    year: int = Field(ge=0)

    def __str__(self) -> str:
        return f"gregorian_{self.year}"


class LunarKey(BaseModel):
    """Event key for the lunar (Hebrew calendar) occurrence in a given lunar year."""

    model_config = ConfigDict(frozen=True)

    system: Literal["hebrew"] = "hebrew"
    year: int = Field(ge=0)

    def __str__(self) -> str:
        return f"hebrew_{self.year}"


EventKey = Annotated[GregorianKey | LunarKey, Field(discriminator="system")]


def parse_event_key(raw: str) -> GregorianKey | LunarKey:
    """Parse a serialized event-map key such as ``gregorian_2026`` or ``hebrew_5787``.

    Raises:
        ValueError: If *raw* is not a well-formed key.
    """
    match = _EVENT_KEY_PATTERN.match(raw)
    if match is None:
        raise ValueError(f"Malformed event key: {raw!r}")
    system, year = match.group(1), int(match.group(2))
    if system == "gregorian":
        return GregorianKey(year=year)
    return LunarKey(year=year)


# ---------------------------------------------------------------------------
# Event descriptors
# ---------------------------------------------------------------------------


class ReminderOverride(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: Literal["popup", "email"] = "popup"
    minutes: int = Field(ge=0)


class EventDescriptor(BaseModel):
    """One desired all-day calendar event, keyed by date system and cycle year."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: EventKey
    summary: str
    description: str = ""
    start: date
    end: date
    reminders: tuple[ReminderOverride, ...] = ()
    private_properties: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_range(self) -> EventDescriptor:
        if self.end <= self.start:
            raise ValueError("end must be after start for an all-day event")
        return self

    @property
    def map_key(self) -> str:
        return str(self.key)

    def to_resource(self) -> dict[str, Any]:
        """Render the Google Calendar event body for this descriptor."""
        return {
            "summary": self.summary,
            "description": self.description,
            "start": {"date": self.start.isoformat()},
            "end": {"date": self.end.isoformat()},
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": reminder.method, "minutes": reminder.minutes}
                    for reminder in self.reminders
                ],
            },
            "extendedProperties": {"private": dict(self.private_properties)},
        }


# ---------------------------------------------------------------------------
# Persisted sync status
# ---------------------------------------------------------------------------


class SyncMetadata(BaseModel):
    """Per-record sync status, persisted with camelCase field names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: SyncStatus
    last_attempt_at: datetime = Field(alias="lastAttemptAt")
    failed_keys: list[str] = Field(default_factory=list, alias="failedKeys")
    last_error_message: str | None = Field(default=None, alias="lastErrorMessage")
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    data_hash: str | None = Field(default=None, alias="dataHash")

    @property
    def credential_revoked(self) -> bool:
        return self.retry_count == REVOKED_RETRY_COUNT

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Store documents
# ---------------------------------------------------------------------------


class LunarOccurrence(BaseModel):
    """A precomputed future lunar birthday: its gregorian date and lunar year."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    gregorian: date
    lunar_year: int = Field(ge=0)


class SyncRecord(BaseModel):
    """A birthday record as read from the store."""

    model_config = ConfigDict(extra="ignore")

    id: str
    tenant_id: str | None = None
    first_name: str = ""
    last_name: str = ""
    birth_date_gregorian: date
    after_sunset: bool = False
    calendar_preference_override: CalendarPreference | None = None
    archived: bool = False
    notes: str | None = None
    group_ids: list[str] = Field(default_factory=list)
    lunar_birth_date_label: str | None = None
    lunar_birth_year: int | None = None
    lunar_birth_month: str | None = None
    future_lunar_birthdays: list[LunarOccurrence] = Field(default_factory=list)
    is_synced: bool = False
    event_map: dict[str, str] = Field(default_factory=dict)
    sync_metadata: SyncMetadata | None = None
    last_synced_at: datetime | None = None
    version: int = 0

    @model_validator(mode="before")
    @classmethod
    def _legacy_group_id(cls, data: Any) -> Any:
        # Older records carry a single group_id instead of group_ids.
        if isinstance(data, dict) and not data.get("group_ids") and data.get("group_id"):
            data = {**data, "group_ids": [data["group_id"]]}
        return data

    @field_validator("event_map", mode="before")
    @classmethod
    def _drop_empty_event_ids(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {key: event_id for key, event_id in value.items() if event_id}
        return value

    @field_validator("calendar_preference_override", mode="before")
    @classmethod
    def _normalize_preference(cls, value: Any) -> Any:
        if isinstance(value, str):
            return CalendarPreference(value) if value.strip() else None
        return value

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Organization(BaseModel):
    """Tenant that owns records; its owner holds the calendar grant."""

    model_config = ConfigDict(extra="ignore")

    id: str
    owner_id: str | None = None
    default_language: Literal["he", "en"] = "he"
    default_calendar_preference: CalendarPreference = CalendarPreference.BOTH

    @field_validator("default_language", mode="before")
    @classmethod
    def _normalize_language(cls, value: Any) -> str:
        if isinstance(value, str) and value.strip().lower().startswith("en"):
            return "en"
        return "he"

    @field_validator("default_calendar_preference", mode="before")
    @classmethod
    def _normalize_preference(cls, value: Any) -> Any:
        if value is None or value == "":
            return CalendarPreference.BOTH
        if isinstance(value, str):
            return CalendarPreference(value)
        return value


class Group(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    parent_name: str | None = None

    @property
    def display_name(self) -> str:
        if self.parent_name:
            return f"{self.parent_name}: {self.name}"
        return self.name


class SubItem(BaseModel):
    """Wishlist entry attached to a record."""

    model_config = ConfigDict(extra="ignore")

    id: str
    record_id: str
    item_name: str
    priority: Literal["high", "medium", "low"] = "medium"


class AccountLink(BaseModel):
    """Token-vault entry linking an owner to their calendar account."""

    model_config = ConfigDict(extra="ignore")

    owner_id: str
    refresh_token: str | None = None
    calendar_id: str | None = None
    calendar_name: str | None = None
    sync_status: Literal["IDLE", "IN_PROGRESS"] = "IDLE"


class JobError(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    item_id: str = Field(alias="itemId")
    message: str
    timestamp: datetime


class BulkSyncJob(BaseModel):
    """Progress tracking for a bulk sync request."""

    model_config = ConfigDict(extra="ignore")

    id: str
    owner_id: str
    status: Literal["pending", "completed"] = "pending"
    total_items: int = Field(ge=0)
    processed_items: int = Field(default=0, ge=0)
    errors: list[JobError] = Field(default_factory=list)
    created_at: datetime

    @property
    def is_complete(self) -> bool:
        return self.processed_items >= self.total_items


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class SyncStats(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0


class SyncOutcome(BaseModel):
    """What one record sync did, as reported to callers."""

    record_id: str
    status: Literal["synced", "partial", "error", "skipped"]
    stats: SyncStats = Field(default_factory=SyncStats)
    failed_keys: list[str] = Field(default_factory=list)
    message: str | None = None


def effective_preference(record: SyncRecord, organization: Organization) -> CalendarPreference:
    """Return the record's calendar preference, falling back to the organization default."""
    return record.calendar_preference_override or organization.default_calendar_preference
