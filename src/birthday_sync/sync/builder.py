"""Desired calendar events for a record.

The engine depends only on the :class:`EventBuilder` protocol. The default
builder renders the localized all-day events: one gregorian birthday per year
for the current year and the next ten, plus the next ten precomputed lunar
birthdays.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, timedelta
from typing import Literal, Protocol

from birthday_sync.sync.models import (
    APP_MARKER_PROPERTY,
    APP_MARKER_VALUE,
    EventDescriptor,
    GregorianKey,
    Group,
    LunarKey,
    Organization,
    ReminderOverride,
    SubItem,
    SyncRecord,
    effective_preference,
)

GREGORIAN_YEARS_AHEAD = 10
MAX_LUNAR_EVENTS = 10

DEFAULT_REMINDERS = (
    ReminderOverride(method="popup", minutes=24 * 60),
    ReminderOverride(method="popup", minutes=60),
)

_PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}

Language = Literal["he", "en"]

_LABELS: dict[str, dict[Language, str]] = {
    "wishlist": {"en": "🎁 Wishlist:", "he": "🎁 רשימת משאלות:"},
    "gregorian_date": {"en": "Gregorian Birth Date", "he": "תאריך לידה לועזי"},
    "lunar_date": {"en": "Hebrew Birth Date", "he": "תאריך לידה עברי"},
    "after_sunset": {"en": "⚠️ After Sunset", "he": "⚠️ לאחר השקיעה"},
    "groups": {"en": "Groups", "he": "קבוצות"},
    "notes": {"en": "Notes", "he": "הערות"},
    "zodiac": {"en": "Zodiac Sign", "he": "מזל"},
    "gregorian_title": {"en": "Birthday", "he": "יום הולדת לועזי"},
    "lunar_title": {"en": "Hebrew Birthday", "he": "יום הולדת עברי"},
}

# (first month, first day) of each sign, in calendar order from January.
_ZODIAC_STARTS = (
    ((1, 20), "aquarius"),
    ((2, 19), "pisces"),
    ((3, 21), "aries"),
    ((4, 20), "taurus"),
    ((5, 21), "gemini"),
    ((6, 21), "cancer"),
    ((7, 23), "leo"),
    ((8, 23), "virgo"),
    ((9, 23), "libra"),
    ((10, 23), "scorpio"),
    ((11, 22), "sagittarius"),
    ((12, 22), "capricorn"),
)

_LUNAR_MONTH_SIGNS = {
    "Nisan": "aries",
    "Iyyar": "taurus",
    "Sivan": "gemini",
    "Tamuz": "cancer",
    "Av": "leo",
    "Elul": "virgo",
    "Tishrei": "libra",
    "Cheshvan": "scorpio",
    "Kislev": "sagittarius",
    "Tevet": "capricorn",
    "Sh'vat": "aquarius",
    "Adar": "pisces",
    "Adar I": "pisces",
    "Adar II": "pisces",
}

_SIGN_NAMES: dict[str, dict[Language, str]] = {
    "aries": {"en": "Aries", "he": "טלה"},
    "taurus": {"en": "Taurus", "he": "שור"},
    "gemini": {"en": "Gemini", "he": "תאומים"},
    "cancer": {"en": "Cancer", "he": "סרטן"},
    "leo": {"en": "Leo", "he": "אריה"},
    "virgo": {"en": "Virgo", "he": "בתולה"},
    "libra": {"en": "Libra", "he": "מאזניים"},
    "scorpio": {"en": "Scorpio", "he": "עקרב"},
    "sagittarius": {"en": "Sagittarius", "he": "קשת"},
    "capricorn": {"en": "Capricorn", "he": "גדי"},
    "aquarius": {"en": "Aquarius", "he": "דלי"},
    "pisces": {"en": "Pisces", "he": "דגים"},
}


class EventBuilder(Protocol):
    def build(
        self,
        record: SyncRecord,
        organization: Organization,
        groups: Sequence[Group],
        sub_items: Sequence[SubItem],
        *,
        today: date,
    ) -> list[EventDescriptor]: ...


def gregorian_zodiac(birth_date: date) -> str:
    sign = "capricorn"
    for (month, day), name in _ZODIAC_STARTS:
        if (birth_date.month, birth_date.day) >= (month, day):
            sign = name
    return sign


def lunar_zodiac(lunar_month: str | None) -> str | None:
    if not lunar_month:
        return None
    return _LUNAR_MONTH_SIGNS.get(lunar_month)


def anniversary(birth_date: date, year: int) -> date:
    """The birthday in *year*; 29 February falls on 1 March in common years."""
    try:
        return birth_date.replace(year=year)
    except ValueError:
        return date(year, 3, 1)


class DefaultEventBuilder:
    """Localized birthday events in the organization's language."""

    def __init__(
        self,
        *,
        gregorian_years_ahead: int = GREGORIAN_YEARS_AHEAD,
        max_lunar_events: int = MAX_LUNAR_EVENTS,
        reminders: Sequence[ReminderOverride] = DEFAULT_REMINDERS,
    ) -> None:
        self._gregorian_years_ahead = gregorian_years_ahead
        self._max_lunar_events = max_lunar_events
        self._reminders = tuple(reminders)

    def build(
        self,
        record: SyncRecord,
        organization: Organization,
        groups: Sequence[Group],
        sub_items: Sequence[SubItem],
        *,
        today: date,
    ) -> list[EventDescriptor]:
        if record.archived:
            return []

        language: Language = organization.default_language
        preference = effective_preference(record, organization)
        description = self._description(record, groups, sub_items, language)
        private = {
            APP_MARKER_PROPERTY: APP_MARKER_VALUE,
            "tenantId": record.tenant_id or "",
            "birthdayId": record.id,
        }

        events: list[EventDescriptor] = []
        if preference.includes_gregorian:
            sign = gregorian_zodiac(record.birth_date_gregorian)
            gregorian_description = _with_zodiac(description, sign, language)
            for offset in range(self._gregorian_years_ahead + 1):
                year = today.year + offset
                start = anniversary(record.birth_date_gregorian, year)
                age = year - record.birth_date_gregorian.year
                events.append(
                    EventDescriptor(
                        key=GregorianKey(year=year),
                        summary=self._title(record, age, "gregorian_title", language),
                        description=gregorian_description,
                        start=start,
                        end=start + timedelta(days=1),
                        reminders=self._reminders,
                        private_properties=private,
                    )
                )

        if preference.includes_lunar:
            sign = lunar_zodiac(record.lunar_birth_month)
            lunar_description = _with_zodiac(description, sign, language)
            for occurrence in record.future_lunar_birthdays[: self._max_lunar_events]:
                age = (
                    occurrence.lunar_year - record.lunar_birth_year
                    if occurrence.lunar_year and record.lunar_birth_year
                    else 0
                )
                events.append(
                    EventDescriptor(
                        key=LunarKey(year=occurrence.lunar_year),
                        summary=self._title(record, age, "lunar_title", language),
                        description=lunar_description,
                        start=occurrence.gregorian,
                        end=occurrence.gregorian + timedelta(days=1),
                        reminders=self._reminders,
                        private_properties=private,
                    )
                )
        return events

    @staticmethod
    def _title(record: SyncRecord, age: int, label: str, language: Language) -> str:
        return f"{record.first_name} {record.last_name} | {age} | {_LABELS[label][language]} 🎂"

    @staticmethod
    def _description(
        record: SyncRecord,
        groups: Sequence[Group],
        sub_items: Sequence[SubItem],
        language: Language,
    ) -> str:
        parts: list[str] = []
        if sub_items:
            ranked = sorted(
                sub_items, key=lambda item: _PRIORITY_RANK.get(item.priority, 0), reverse=True
            )
            lines = [f"{index}. {item.item_name}" for index, item in enumerate(ranked, start=1)]
            parts.append(_LABELS["wishlist"][language] + "\n" + "\n".join(lines) + "\n\n")

        parts.append(
            f"{_LABELS['gregorian_date'][language]}: {record.birth_date_gregorian.isoformat()}\n"
            f"{_LABELS['lunar_date'][language]}: {record.lunar_birth_date_label or ''}\n"
        )
        if record.after_sunset:
            parts.append(_LABELS["after_sunset"][language] + "\n")
        if groups:
            names = ", ".join(group.display_name for group in groups)
            parts.append(f"\n{_LABELS['groups'][language]}: {names}")
        if record.notes:
            parts.append(f"\n\n{_LABELS['notes'][language]}: {record.notes}")
        return "".join(parts)


def _with_zodiac(description: str, sign: str | None, language: Language) -> str:
    if sign is None:
        return description
    return f"{description}\n\n{_LABELS['zodiac'][language]}: {_SIGN_NAMES[sign][language]}"
