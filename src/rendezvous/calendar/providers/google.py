"""Google Calendar v3 adapter."""

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

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_MAX_PAGE_SIZE = 250
DEFAULT_MAX_PAGES = 40


class GoogleCalendarAdapter(HttpProviderAdapter):
    """Lists expanded (single) events from one or more Google calendars."""

    def __init__(
        self,
        *,
        calendar_ids: Sequence[str] = ("primary",),
        http_client: httpx.AsyncClient | None = None,
        page_size: int = GOOGLE_MAX_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
    ) -> None:
        super().__init__(http_client=http_client)
        if not calendar_ids:
            raise ValueError("calendar_ids must contain at least one calendar id")
        self._calendar_ids = tuple(calendar_ids)
        self._page_size = max(1, min(page_size, GOOGLE_MAX_PAGE_SIZE))
        self._max_pages = max_pages
        self._base_url = base_url.rstrip("/")

    @property
    def provider(self) -> Provider:
        return Provider.GOOGLE

    async def fetch_events(
        self,
        credential: Credential | None,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        events: list[RawEvent] = []
        for calendar_id in self._calendar_ids:
            events.extend(
                await self._fetch_calendar(credential, calendar_id, window_start, window_end)
            )
        return events

    async def _fetch_calendar(
        self,
        credential: Credential | None,
        calendar_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        url = f"{self._base_url}/calendars/{quote(calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": self._page_size,
            "timeMin": rfc3339(window_start),
            "timeMax": rfc3339(window_end),
        }

        events: list[RawEvent] = []
        for _ in range(self._max_pages):
            payload = await self._get_json(url, credential, params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise ProviderUnavailableError(
                    self.provider, "Google Calendar events response missing items array"
                )
            events.extend(
                RawEvent(provider=self.provider, calendar_id=calendar_id, payload=item)
                for item in items
                if isinstance(item, dict)
            )

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            params = {**params, "pageToken": next_page_token}
        else:
            logger.warning(
                "Google Calendar pagination stopped after %d pages (calendar_id=%s)",
                self._max_pages,
                calendar_id,
            )

        logger.debug(
            "Fetched Google Calendar events (calendar_id=%s, count=%d)", calendar_id, len(events)
        )
        return events
