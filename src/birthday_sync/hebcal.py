"""Current Hebrew calendar year via the hebcal.com date converter."""

from __future__ import annotations

import logging
from datetime import date
from typing import Protocol

import httpx

logger = logging.getLogger(__name__)

HEBCAL_CONVERTER_URL = "https://www.hebcal.com/converter"


class LunarCalendarError(RuntimeError):
    """Raised when the current lunar year cannot be determined."""


class LunarCalendar(Protocol):
    async def current_year(self, today: date) -> int: ...


class HebcalClient:
    """Resolves the Hebrew year containing a gregorian date, cached per date."""

    def __init__(self, http_client: httpx.AsyncClient, *, base_url: str = HEBCAL_CONVERTER_URL):
        self._http_client = http_client
        self._base_url = base_url
        self._cache: dict[date, int] = {}

    async def current_year(self, today: date) -> int:
        cached = self._cache.get(today)
        if cached is not None:
            return cached

        try:
            response = await self._http_client.get(
                self._base_url,
                params={
                    "cfg": "json",
                    "gy": today.year,
                    "gm": today.month,
                    "gd": today.day,
                    "g2h": 1,
                },
            )
        except httpx.HTTPError as exc:
            raise LunarCalendarError(f"Hebcal request failed: {exc}") from exc

        if response.status_code != 200:
            raise LunarCalendarError(f"Hebcal converter returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise LunarCalendarError("Hebcal converter returned invalid JSON") from exc

        year = payload.get("hy") if isinstance(payload, dict) else None
        if isinstance(year, bool) or not isinstance(year, int) or year <= 0:
            raise LunarCalendarError(f"Hebcal converter returned no Hebrew year for {today}")

        # One entry per day is enough; drop older dates.
        self._cache = {today: year}
        logger.debug("Hebrew year for %s is %d", today, year)
        return year
