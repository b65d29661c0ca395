"""Microsoft Graph calendarView adapter."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from rendezvous.calendar.errors import ProviderUnavailableError
from rendezvous.calendar.models import Credential, Provider, RawEvent
from rendezvous.calendar.providers.base import HttpProviderAdapter, rfc3339

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 40
# Ask Graph to express every dateTime in UTC.
_PREFER_UTC = 'outlook.timezone="UTC"'
_DEFAULT_CALENDAR = "default"


class MicrosoftGraphAdapter(HttpProviderAdapter):
    """Lists events from the user's default calendar or from named calendars."""

    def __init__(
        self,
        *,
        calendar_ids: Sequence[str] | None = None,
        http_client: httpx.AsyncClient | None = None,
        page_size: int = GRAPH_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        base_url: str = GRAPH_API_BASE_URL,
    ) -> None:
        super().__init__(http_client=http_client)
        self._calendar_ids = tuple(calendar_ids) if calendar_ids else None
        self._page_size = max(1, page_size)
        self._max_pages = max_pages
        self._base_url = base_url.rstrip("/")

    @property
    def provider(self) -> Provider:
        return Provider.MICROSOFT

    async def fetch_events(
        self,
        credential: Credential | None,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        if self._calendar_ids is None:
            return await self._fetch_view(
                credential,
                f"{self._base_url}/me/calendarView",
                _DEFAULT_CALENDAR,
                window_start,
                window_end,
            )

        events: list[RawEvent] = []
        for calendar_id in self._calendar_ids:
            url = f"{self._base_url}/me/calendars/{quote(calendar_id, safe='')}/calendarView"
            events.extend(
                await self._fetch_view(credential, url, calendar_id, window_start, window_end)
            )
        return events

    async def _fetch_view(
        self,
        credential: Credential | None,
        url: str,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        params: dict[str, Any] | None = {
            "startDateTime": rfc3339(window_start),
            "endDateTime": rfc3339(window_end),
            "$top": self._page_size,
        }
        headers = {"Prefer": _PREFER_UTC}

        events: list[RawEvent] = []
        next_url: str | None = url
        pages = 0
        while next_url is not None:
            if pages >= self._max_pages:
                logger.warning(
                    "Graph calendarView pagination stopped after %d pages (calendar_id=%s)",
                    self._max_pages,
                    calendar_id,
                )
                break
            payload = await self._get_json(
                next_url, credential, params=params, extra_headers=headers
            )
            pages += 1
            items = payload.get("value")
            if not isinstance(items, list):
                raise ProviderUnavailableError(
                    self.provider, "Graph calendarView response missing value array"
                )
            events.extend(
                RawEvent(provider=self.provider, calendar_id=calendar_id, payload=item)
                for item in items
                if isinstance(item, dict)
            )

            next_link = payload.get("@odata.nextLink")
            next_url = next_link if isinstance(next_link, str) and next_link else None
            # nextLink already carries the query string
            params = None

        logger.debug(
            "Fetched Graph calendar events (calendar_id=%s, count=%d)", calendar_id, len(events)
        )
        return events
