"""Shared fixtures for the sync engine tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import Any

import pytest

from birthday_sync.google.oauth import AccountCredentials
from birthday_sync.hebcal import LunarCalendarError
from birthday_sync.repositories import (
    ACCOUNT_LINKS,
    GROUPS,
    ORGANIZATIONS,
    RECORDS,
    SUB_ITEMS,
    GroupRepository,
    OrganizationRepository,
    RecordRepository,
    SubItemRepository,
)
from birthday_sync.sync.builder import DefaultEventBuilder
from birthday_sync.sync.engine import SyncEngine
from birthday_sync.sync.models import SyncRecord
from birthday_sync.sync.retry import RetryPolicy
from birthday_sync.testing import FakeCalendarClient, InMemoryDocumentStore

FIXED_NOW = datetime(2026, 3, 10, 9, 30, tzinfo=UTC)
CURRENT_LUNAR_YEAR = 5786


class StaticCredentials:
    def __init__(self, calendar_id: str = "birthdays@group.calendar.google.com") -> None:
        self.calendar_id = calendar_id
        self.error: Exception | None = None
        self.resolved: list[str] = []

    async def resolve(self, owner_id: str) -> AccountCredentials:
        self.resolved.append(owner_id)
        if self.error is not None:
            raise self.error
        return AccountCredentials(
            owner_id=owner_id, calendar_id=self.calendar_id, access_token="ya29.test"
        )

    async def get_access_token(self, owner_id: str, force_refresh: bool = False) -> str:
        return "ya29.test"


class StaticLunarCalendar:
    def __init__(self, year: int = CURRENT_LUNAR_YEAR) -> None:
        self.year = year
        self.error: Exception | None = None

    async def current_year(self, today: date) -> int:
        if self.error is not None:
            raise self.error
        return self.year


def lunar_birthdays(first_year: int = CURRENT_LUNAR_YEAR, count: int = 10) -> list[dict]:
    return [
        {"gregorian": date(2026 + offset, 6, 2).isoformat(), "lunar_year": first_year + offset}
        for offset in range(count)
    ]


@dataclass
class SyncHarness:
    store: InMemoryDocumentStore
    calendar: FakeCalendarClient
    credentials: StaticCredentials
    lunar: StaticLunarCalendar
    sleeps: list[float] = field(default_factory=list)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def seed_tenant(
        self,
        tenant_id: str = "tenant-1",
        *,
        owner_id: str | None = "owner-1",
        language: str = "en",
        preference: str = "both",
    ) -> None:
        self.store.seed(
            ORGANIZATIONS,
            tenant_id,
            {
                "owner_id": owner_id,
                "default_language": language,
                "default_calendar_preference": preference,
            },
        )
        if owner_id:
            self.store.seed(
                ACCOUNT_LINKS,
                owner_id,
                {"refresh_token": "1//refresh", "calendar_id": self.credentials.calendar_id},
            )

    def seed_record(self, record_id: str = "rec-1", **overrides: Any) -> None:
        data: dict[str, Any] = {
            "tenant_id": "tenant-1",
            "first_name": "Dana",
            "last_name": "Levi",
            "birth_date_gregorian": "1990-05-15",
            "after_sunset": False,
            "lunar_birth_date_label": "20 Iyyar 5750",
            "lunar_birth_year": 5750,
            "lunar_birth_month": "Iyyar",
            "future_lunar_birthdays": lunar_birthdays(),
            "archived": False,
            "group_ids": [],
        }
        data.update(overrides)
        self.store.seed(RECORDS, record_id, data)

    def seed_group(self, group_id: str, name: str, parent_id: str | None = None) -> None:
        self.store.seed(GROUPS, group_id, {"name": name, "parent_id": parent_id})

    def seed_sub_item(self, item_id: str, record_id: str, name: str, priority: str) -> None:
        self.store.seed(
            SUB_ITEMS, item_id, {"record_id": record_id, "item_name": name, "priority": priority}
        )

    async def record(self, record_id: str = "rec-1") -> SyncRecord:
        record = await RecordRepository(self.store).get(record_id)
        assert record is not None
        return record

    def engine(self, **overrides: Any) -> SyncEngine:
        options: dict[str, Any] = {
            "records": RecordRepository(self.store),
            "organizations": OrganizationRepository(self.store),
            "groups": GroupRepository(self.store),
            "sub_items": SubItemRepository(self.store),
            "credentials": self.credentials,
            "client_factory": lambda credentials: self.calendar,
            "builder": DefaultEventBuilder(),
            "lunar_calendar": self.lunar,
            "retry_policy": RetryPolicy(max_retries=4, base_delay_seconds=1.0),
            "clock": lambda: FIXED_NOW,
            "sleep": self.sleep,
        }
        options.update(overrides)
        return SyncEngine(**options)


@pytest.fixture
def harness() -> SyncHarness:
    h = SyncHarness(
        store=InMemoryDocumentStore(),
        calendar=FakeCalendarClient(),
        credentials=StaticCredentials(),
        lunar=StaticLunarCalendar(),
    )
    h.seed_tenant()
    return h


@pytest.fixture
def lunar_unavailable() -> LunarCalendarError:
    return LunarCalendarError("hebcal down")
