"""Per-owner Google OAuth access tokens from stored refresh tokens."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from birthday_sync.google.calendar import redact_credential_values, safe_google_error_message
from birthday_sync.repositories import AccountLinkRepository
from birthday_sync.sync.errors import (
    CredentialNotConnectedError,
    CredentialRevokedError,
    CredentialUnavailableError,
)
from birthday_sync.sync.models import AccountLink

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_CALENDAR_ID = "primary"


@dataclass(frozen=True)
class AccountCredentials:
    owner_id: str
    calendar_id: str
    access_token: str


class CredentialSource(Protocol):
    async def resolve(self, owner_id: str) -> AccountCredentials: ...

    async def get_access_token(self, owner_id: str, force_refresh: bool = False) -> str: ...


@dataclass
class _CachedToken:
    value: str
    expires_at: datetime

    def is_fresh(self) -> bool:
        return datetime.now(UTC) < self.expires_at


class GoogleTokenSource:
    """Exchanges each owner's refresh token for short-lived access tokens.

    Access tokens are cached per owner until shortly before they expire.
    A refresh rejected with ``invalid_grant`` (or any 400) means the grant
    was revoked: the stored refresh token is dropped and
    :class:`CredentialRevokedError` is raised. Network failures and other
    statuses raise :class:`CredentialUnavailableError`. An owner with no stored
    account link raises :class:`CredentialNotConnectedError`.
    """

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        accounts: AccountLinkRepository,
        http_client: httpx.AsyncClient,
        token_url: str = GOOGLE_OAUTH_TOKEN_URL,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._accounts = accounts
        self._http_client = http_client
        self._token_url = token_url
        self._tokens: dict[str, _CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def resolve(self, owner_id: str) -> AccountCredentials:
        link = await self._accounts.get(owner_id)
        refresh_token = _stored_refresh_token(owner_id, link)
        access_token = await self._access_token(owner_id, refresh_token, force_refresh=False)
        return AccountCredentials(
            owner_id=owner_id,
            calendar_id=link.calendar_id or DEFAULT_CALENDAR_ID,
            access_token=access_token,
        )

    async def get_access_token(self, owner_id: str, force_refresh: bool = False) -> str:
        cached = self._tokens.get(owner_id)
        if not force_refresh and cached is not None and cached.is_fresh():
            return cached.value
        link = await self._accounts.get(owner_id)
        refresh_token = _stored_refresh_token(owner_id, link)
        return await self._access_token(owner_id, refresh_token, force_refresh=force_refresh)

    async def _access_token(self, owner_id: str, refresh_token: str, *, force_refresh: bool) -> str:
        cached = self._tokens.get(owner_id)
        if not force_refresh and cached is not None and cached.is_fresh():
            return cached.value

        lock = self._locks.setdefault(owner_id, asyncio.Lock())
        async with lock:
            cached = self._tokens.get(owner_id)
            if not force_refresh and cached is not None and cached.is_fresh():
                return cached.value
            token = await self._refresh(owner_id, refresh_token)
            self._tokens[owner_id] = token
            return token.value

    async def _refresh(self, owner_id: str, refresh_token: str) -> _CachedToken:
        try:
            response = await self._http_client.post(
                self._token_url,
                data={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CredentialUnavailableError(
                owner_id, redact_credential_values(f"token refresh request failed: {exc}")
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = safe_google_error_message(response)
            if response.status_code == 400 or _error_code(response) == "invalid_grant":
                logger.warning("Refresh token for owner %s was rejected; dropping it", owner_id)
                self._tokens.pop(owner_id, None)
                await self._accounts.revoke(owner_id)
                raise CredentialRevokedError(owner_id, redact_credential_values(message))
            raise CredentialUnavailableError(
                owner_id,
                redact_credential_values(
                    f"token refresh failed ({response.status_code}): {message}"
                ),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CredentialUnavailableError(
                owner_id, "token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CredentialUnavailableError(
                owner_id, "token response is missing a non-empty access_token"
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        ttl = max(expires_in - 60, 30)
        return _CachedToken(
            value=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        )


def _stored_refresh_token(owner_id: str, link: AccountLink | None) -> str:
    if link is None:
        raise CredentialNotConnectedError(owner_id)
    if not link.refresh_token:
        raise CredentialRevokedError(
            owner_id, "calendar access was revoked; the account must be reconnected"
        )
    return link.refresh_token


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600
