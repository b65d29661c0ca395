"""Provider adapter abstraction and shared HTTP plumbing."""

from __future__ import annotations

import abc
import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from rendezvous.calendar.errors import (
    NetworkTimeoutError,
    ProviderUnavailableError,
    error_for_response,
)
from rendezvous.calendar.models import Credential, Provider, RawEvent

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


def rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


class ProviderAdapter(abc.ABC):
    """Fetches raw events for one provider."""

    #: Whether the orchestrator must obtain a credential before fetching.
    requires_credential: bool = True

    @property
    @abc.abstractmethod
    def provider(self) -> Provider:
        """Provider identifier."""
        ...

    @abc.abstractmethod
    async def fetch_events(
        self,
        credential: Credential | None,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        """Return raw events overlapping ``[window_start, window_end)``.

        Raises a ``ProviderError`` subclass on failure.
        """
        ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None


class HttpProviderAdapter(ProviderAdapter):
    """Base for REST providers authenticated with a bearer token."""

    def __init__(self, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=DEFAULT_HTTP_TIMEOUT_SECONDS
        )

    async def _get_json(
        self,
        url: str,
        credential: Credential | None,
        *,
        params: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        if credential is None:
            raise ProviderUnavailableError(self.provider, "no credential supplied for fetch")
        headers = {"Authorization": f"Bearer {credential.access_token}"}
        if extra_headers:
            headers.update(extra_headers)

        try:
            response = await self._http_client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise NetworkTimeoutError(self.provider, f"request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(self.provider, f"request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            error = error_for_response(self.provider, response)
            logger.warning(
                "Calendar provider request failed (provider=%s, status=%d, kind=%s)",
                self.provider.value,
                response.status_code,
                error.kind.value,
            )
            raise error

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                self.provider, "provider returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderUnavailableError(
                self.provider, "provider returned an unexpected JSON payload shape"
            )
        return payload

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
