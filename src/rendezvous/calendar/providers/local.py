"""Local device calendar adapter.

The device calendar is reached through an injected ``LocalEventSource``; the
engine never prompts for device permissions itself. ``JsonFileEventSource``
reads an export written by a device bridge::

    {"events": [{"eventIdentifier": "...", "title": "...",
                 "startDate": "2026-03-02T14:00:00Z", "endDate": "...",
                 "isAllDay": false, "availability": "busy", "status": "confirmed"}]}
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from rendezvous.calendar.errors import PermissionDeniedError, ProviderUnavailableError
from rendezvous.calendar.models import Credential, Provider, RawEvent
from rendezvous.calendar.normalize import parse_timestamp
from rendezvous.calendar.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

_UTC = ZoneInfo("UTC")


class LocalEventSource(Protocol):
    """Supplies device calendar records for a window."""

    async def list_records(
        self, window_start: datetime, window_end: datetime
    ) -> list[dict[str, Any]]: ...


def _record_overlaps(record: dict[str, Any], window_start: datetime, window_end: datetime) -> bool:
    """Best-effort window filter; records with unreadable dates are kept for the normalizer."""
    start_raw = record.get("startDate")
    end_raw = record.get("endDate")
    if not isinstance(start_raw, str) or not isinstance(end_raw, str):
        return True
    try:
        start = parse_timestamp(start_raw, default_zone=_UTC)
        end = parse_timestamp(end_raw, default_zone=_UTC)
    except ValueError:
        return True
    if end <= start:
        # single-day all-day records repeat the start date as the end date
        end = start + timedelta(days=1)
    return start < window_end and end > window_start


class JsonFileEventSource:
    """Reads device calendar records from a JSON export file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    def _read(self) -> list[dict[str, Any]]:
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("events", [])
        if not isinstance(payload, list):
            raise ValueError("local calendar export must be a list or an object with 'events'")
        return [record for record in payload if isinstance(record, dict)]

    async def list_records(
        self, window_start: datetime, window_end: datetime
    ) -> list[dict[str, Any]]:
        records = await asyncio.to_thread(self._read)
        return [r for r in records if _record_overlaps(r, window_start, window_end)]


class LocalCalendarAdapter(ProviderAdapter):
    requires_credential = False

    def __init__(self, source: LocalEventSource, *, calendar_id: str = "local") -> None:
        self._source = source
        self._calendar_id = calendar_id

    @property
    def provider(self) -> Provider:
        return Provider.LOCAL

    async def fetch_events(
        self,
        credential: Credential | None,  # noqa: ARG002
        window_start: datetime,
        window_end: datetime,
    ) -> list[RawEvent]:
        try:
            records = await self._source.list_records(window_start, window_end)
        except PermissionError as exc:
            raise PermissionDeniedError(
                self.provider, f"device calendar access denied: {exc}"
            ) from exc
        except (OSError, ValueError) as exc:
            raise ProviderUnavailableError(
                self.provider, f"device calendar could not be read: {exc}"
            ) from exc

        logger.debug("Read local calendar records (count=%d)", len(records))
        return [
            RawEvent(provider=self.provider, calendar_id=self._calendar_id, payload=record)
            for record in records
        ]
