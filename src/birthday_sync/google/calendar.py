"""Google Calendar API client used by the sync pipeline.

The client performs exactly one HTTP request per call (plus one forced token
refresh on 401). It does not retry rate-limited requests itself; the sync
pipeline wraps every call with :func:`birthday_sync.sync.retry.call_with_retry`
so retry policy lives in one place.
"""

from __future__ import annotations

import abc
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
EVENT_LIST_PAGE_SIZE = 250

CONFLICT_STATUS_CODES = frozenset({409})
GONE_STATUS_CODES = frozenset({404, 410})

# Called with force_refresh; returns a bearer token.
AccessTokenProvider = Callable[[bool], Awaitable[str]]


class CalendarError(RuntimeError):
    """Base error raised by calendar API helpers."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request returns a non-2xx status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")

    @property
    def is_conflict(self) -> bool:
        return self.status_code in CONFLICT_STATUS_CODES

    @property
    def is_gone(self) -> bool:
        return self.status_code in GONE_STATUS_CODES


class EventPage(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    next_page_token: str | None = None


class CalendarClient(abc.ABC):
    """Minimal calendar surface the sync pipeline needs."""

    @abc.abstractmethod
    async def insert(
        self,
        calendar_id: str,
        resource: dict[str, Any],
        *,
        event_id: str | None = None,
    ) -> str:
        """Create an event and return its external ID."""

    @abc.abstractmethod
    async def patch(self, calendar_id: str, event_id: str, resource: dict[str, Any]) -> None:
        """Overwrite the fields in *resource* on an existing event."""

    @abc.abstractmethod
    async def delete(self, calendar_id: str, event_id: str) -> None:
        """Delete an event."""

    @abc.abstractmethod
    async def list(
        self,
        calendar_id: str,
        *,
        private_property: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        """Return one page of events, optionally filtered by a private extended property."""


class GoogleCalendarClient(CalendarClient):
    """Google Calendar v3 REST client over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_provider: AccessTokenProvider,
        *,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        self._http_client = http_client
        self._token_provider = token_provider
        self._base_url = base_url.rstrip("/")

    async def insert(
        self,
        calendar_id: str,
        resource: dict[str, Any],
        *,
        event_id: str | None = None,
    ) -> str:
        body = dict(resource)
        if event_id is not None:
            body["id"] = event_id
        payload = await self._request_json(
            "POST", f"/calendars/{_quote(calendar_id)}/events", json_body=body
        )
        created_id = payload.get("id")
        if isinstance(created_id, str) and created_id:
            return created_id
        if event_id is not None:
            return event_id
        raise CalendarError("Google Calendar API did not return an event id")

    async def patch(self, calendar_id: str, event_id: str, resource: dict[str, Any]) -> None:
        # A previously cancelled event with this ID is revived by the patch.
        body = {**resource, "status": "confirmed"}
        await self._request_json(
            "PATCH",
            f"/calendars/{_quote(calendar_id)}/events/{_quote(event_id)}",
            json_body=body,
        )

    async def delete(self, calendar_id: str, event_id: str) -> None:
        await self._request_json(
            "DELETE", f"/calendars/{_quote(calendar_id)}/events/{_quote(event_id)}"
        )

    async def list(
        self,
        calendar_id: str,
        *,
        private_property: str | None = None,
        page_token: str | None = None,
    ) -> EventPage:
        params: dict[str, Any] = {"maxResults": EVENT_LIST_PAGE_SIZE, "singleEvents": "true"}
        if private_property:
            params["privateExtendedProperty"] = private_property
        if page_token:
            params["pageToken"] = page_token
        payload = await self._request_json(
            "GET", f"/calendars/{_quote(calendar_id)}/events", params=params
        )
        items = payload.get("items")
        next_token = payload.get("nextPageToken")
        return EventPage(
            items=[item for item in items if isinstance(item, dict)]
            if isinstance(items, list)
            else [],
            next_page_token=next_token if isinstance(next_token, str) and next_token else None,
        )

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        response = await self._request_once(method, url, params, json_body, force_refresh=False)
        if response.status_code == 401:
            logger.debug("Calendar API returned 401, retrying once with a refreshed token")
            response = await self._request_once(method, url, params, json_body, force_refresh=True)
        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        *,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_provider(force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarError(f"Google Calendar request failed: {exc}") from exc


def _quote(value: str) -> str:
    return quote(value, safe="")


ERROR_MESSAGE_MAX_CHARS = 200


def _squash(text: str) -> str:
    return " ".join(text.split())[:ERROR_MESSAGE_MAX_CHARS]


def safe_google_error_message(response: httpx.Response) -> str:
    """Best human-readable error text from a Google API error response.

    Prefers ``error.message`` from the JSON envelope, then a bare string
    ``error``, then the raw body. Whitespace is collapsed and the result is
    capped at ``ERROR_MESSAGE_MAX_CHARS``.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None

    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        error = error.get("message")
    for candidate in (error, response.text):
        if isinstance(candidate, str) and candidate.strip():
            return _squash(candidate)
    return "Request failed without an error payload"


_SECRET_NAMES = r"(?:client_secret|refresh_token|access_token|token)"
_REDACTIONS = (
    # token=value
    (re.compile(rf"(?i)\b({_SECRET_NAMES})\s*=\s*[^\s,;]+"), r"\1=[REDACTED]"),
    # "token": "value"
    (
        re.compile(rf"""(?i)(['"]?{_SECRET_NAMES}['"]?\s*:\s*)(['"]).*?\2"""),
        r'\1"[REDACTED]"',
    ),
    # token: value
    (re.compile(rf"(?i)\b({_SECRET_NAMES})\s*:\s*[^\s,;\"']+"), r"\1: [REDACTED]"),
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+"), "Bearer [REDACTED]"),
)


def redact_credential_values(message: str) -> str:
    """Redact token and secret values from a message before it is persisted or logged."""
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message
