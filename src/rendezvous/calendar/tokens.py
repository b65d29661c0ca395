"""Access-credential issuance and refresh per (user, provider).

``OAuthTokenService`` hands out stored credentials and refreshes any that
expire within the refresh threshold (five minutes by default). Refresh is
single-flight per (user, provider): concurrent callers await the same
refresh task and receive the same credential. A refresh is attempted
exactly once per request; if it fails the caller gets ``AuthExpiredError``
and the user has to re-authenticate.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rendezvous.calendar.errors import (
    AuthExpiredError,
    NetworkTimeoutError,
    safe_response_error_message,
)
from rendezvous.calendar.models import Credential, Provider


GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_DEFAULT_SCOPE = "offline_access Calendars.Read"
DEFAULT_REFRESH_THRESHOLD = timedelta(minutes=5)
_DEFAULT_EXPIRES_IN_SECONDS = 3600


class TokenService(Protocol):
    """Issues valid provider credentials; signals when re-authentication is needed."""

    async def get_valid_token(
        self, user_id: str, provider: Provider, *, force_refresh: bool = False
    ) -> Credential: ...

    async def disconnect(self, user_id: str, provider: Provider) -> None: ...


class CredentialRepository(Protocol):
    async def load(self, user_id: str, provider: Provider) -> Credential | None: ...

    async def save(self, credential: Credential) -> None: ...

    async def delete(self, user_id: str, provider: Provider) -> None: ...


class RefreshedToken(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    expires_in: int = _DEFAULT_EXPIRES_IN_SECONDS
    refresh_token: str | None = None

    @field_validator("access_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("access_token must be a non-empty string")
        return normalized

    @field_validator("expires_in", mode="before")
    @classmethod
    def _coerce_expires_in(cls, value: Any) -> int:
        if isinstance(value, bool):
            return _DEFAULT_EXPIRES_IN_SECONDS
        if isinstance(value, int | float):
            return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip()) or _DEFAULT_EXPIRES_IN_SECONDS
        return _DEFAULT_EXPIRES_IN_SECONDS


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> RefreshedToken: ...


class OAuthClientCredentials(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)

    def __repr__(self) -> str:
        return f"OAuthClientCredentials(client_id={self.client_id!r}, client_secret='***')"

    __str__ = __repr__


class TokenRefreshFailed(Exception):
    """Raised by refreshers when the token endpoint rejects or cannot serve a refresh."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        self.timed_out = timed_out
        super().__init__(message)


class OAuthTokenRefresher:
    """Refresh-token grant against an OAuth 2.0 token endpoint."""

    def __init__(
        self,
        token_url: str,
        client: OAuthClientCredentials,
        http_client: httpx.AsyncClient,
        *,
        scope: str | None = None,
    ) -> None:
        self._token_url = token_url
        self._client = client
        self._http_client = http_client
        self._scope = scope

    @classmethod
    def google(
        cls, client: OAuthClientCredentials, http_client: httpx.AsyncClient
    ) -> OAuthTokenRefresher:
        return cls(GOOGLE_OAUTH_TOKEN_URL, client, http_client)

    @classmethod
    def microsoft(
        cls,
        client: OAuthClientCredentials,
        http_client: httpx.AsyncClient,
        *,
        tenant: str = "common",
        scope: str = MICROSOFT_DEFAULT_SCOPE,
    ) -> OAuthTokenRefresher:
        token_url = MICROSOFT_OAUTH_TOKEN_URL_TEMPLATE.format(tenant=tenant)
        return cls(token_url, client, http_client, scope=scope)

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        data = {
            "client_id": self._client.client_id,
            "client_secret": self._client.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._scope:
            data["scope"] = self._scope
        try:
            response = await self._http_client.post(
                self._token_url, data=data, headers={"Accept": "application/json"}
            )
        except httpx.TimeoutException as exc:
            raise TokenRefreshFailed(f"token refresh timed out: {exc}", timed_out=True) from exc
        except httpx.HTTPError as exc:
            raise TokenRefreshFailed(f"token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshFailed(
                f"token refresh failed ({response.status_code}): "
                f"{safe_response_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshFailed("token endpoint returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenRefreshFailed("token endpoint returned an unexpected payload shape")
        try:
            return RefreshedToken.model_validate(payload)
        except ValueError as exc:
            raise TokenRefreshFailed("token response is missing a non-empty access_token") from exc


class OAuthTokenService:
    """Stored-credential token service with single-flight refresh."""

    def __init__(
        self,
        repository: CredentialRepository,
        refreshers: Mapping[Provider, TokenRefresher],
        *,
        refresh_threshold: timedelta = DEFAULT_REFRESH_THRESHOLD,
        logger: logging.Logger | None = None,
    ) -> None:
        self._repository = repository
        self._refreshers = dict(refreshers)
        self._refresh_threshold = refresh_threshold
        self._logger = logger or logging.getLogger(__name__)
        self._inflight: dict[tuple[str, Provider], asyncio.Task[Credential]] = {}

    async def get_valid_token(
        self, user_id: str, provider: Provider, *, force_refresh: bool = False
    ) -> Credential:
        provider = Provider(provider)
        key = (user_id, provider)
        task = self._inflight.get(key)
        if task is not None:
            return await asyncio.shield(task)

        stored = await self._repository.load(user_id, provider)
        if stored is None:
            raise AuthExpiredError(provider, "provider is not connected; re-auth required")

        if not force_refresh and not stored.expires_within(self._refresh_threshold):
            return stored

        # Re-check after the load; another caller may have started a refresh meanwhile.
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(stored))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._clear_inflight(key, done))
        # Shield so one cancelled caller does not abort the refresh others await.
        return await asyncio.shield(task)

    def _clear_inflight(self, key: tuple[str, Provider], task: asyncio.Task[Credential]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter was cancelled.
            task.exception()

    async def _refresh(self, stored: Credential) -> Credential:
        provider = stored.provider
        refresher = self._refreshers.get(provider)
        if refresher is None or not stored.refresh_token:
            raise AuthExpiredError(provider, "credential cannot be refreshed; re-auth required")

        try:
            refreshed = await refresher.refresh(stored.refresh_token)
        except TokenRefreshFailed as exc:
            self._logger.warning(
                "Calendar token refresh failed (user_id=%s, provider=%s): %s",
                stored.user_id,
                provider.value,
                exc,
            )
            if exc.timed_out:
                raise NetworkTimeoutError(provider, str(exc)) from exc
            raise AuthExpiredError(provider, str(exc)) from exc

        credential = stored.model_copy(
            update={
                "access_token": refreshed.access_token,
                "refresh_token": refreshed.refresh_token or stored.refresh_token,
                "expires_at": datetime.now(UTC) + timedelta(seconds=refreshed.expires_in),
            }
        )
        await self._repository.save(credential)
        self._logger.info(
            "Calendar token refreshed (user_id=%s, provider=%s)", stored.user_id, provider.value
        )
        return credential.model_copy(update={"refreshed": True})

    async def disconnect(self, user_id: str, provider: Provider) -> None:
        provider = Provider(provider)
        task = self._inflight.pop((user_id, provider), None)
        if task is not None:
            task.cancel()
        await self._repository.delete(user_id, provider)
        self._logger.info(
            "Calendar provider disconnected (user_id=%s, provider=%s)", user_id, provider.value
        )


class InMemoryCredentialRepository:
    """Dict-backed credential repository."""

    def __init__(self, credentials: list[Credential] | None = None) -> None:
        self._credentials: dict[tuple[str, Provider], Credential] = {}
        for credential in credentials or []:
            self._credentials[(credential.user_id, credential.provider)] = credential

    async def load(self, user_id: str, provider: Provider) -> Credential | None:
        return self._credentials.get((user_id, Provider(provider)))

    async def save(self, credential: Credential) -> None:
        self._credentials[(credential.user_id, credential.provider)] = credential

    async def delete(self, user_id: str, provider: Provider) -> None:
        self._credentials.pop((user_id, Provider(provider)), None)
