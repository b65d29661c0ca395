"""Map provider-specific raw events onto the canonical ``Event`` shape.

Each provider has its own date encoding and free/busy vocabulary:

- Google Calendar v3: ``start.dateTime`` (RFC3339) or ``start.date`` for
  all-day events, ``transparency`` (``transparent`` means free) and
  ``status``.
- Microsoft Graph: ``start.dateTime`` in the zone named by
  ``start.timeZone`` (up to seven fractional digits), ``isAllDay``,
  ``showAs``, ``isCancelled`` and ``responseStatus``.
- Local device calendar: flat ``startDate``/``endDate`` values plus
  ``availability`` and ``status`` strings as exported by the device bridge.

Unknown vocabulary maps conservatively to busy/confirmed. A missing title is
an empty string. ``ParseError`` is raised only when the event id or its
start/end cannot be determined.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rendezvous.calendar.errors import ParseError
from rendezvous.calendar.models import (
    Event,
    EventAvailability,
    EventStatus,
    Provider,
    RawEvent,
    event_id_for,
)

_FRACTION_PATTERN = re.compile(r"\.(\d{6})\d+")

_GOOGLE_STATUS = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "cancelled": EventStatus.CANCELLED,
}

_MICROSOFT_SHOW_AS = {
    "free": EventAvailability.FREE,
    "tentative": EventAvailability.TENTATIVE,
    "busy": EventAvailability.BUSY,
    "oof": EventAvailability.BUSY,
    "workingelsewhere": EventAvailability.BUSY,
}

_LOCAL_AVAILABILITY = {
    "free": EventAvailability.FREE,
    "tentative": EventAvailability.TENTATIVE,
    "busy": EventAvailability.BUSY,
    "unavailable": EventAvailability.BUSY,
}

_LOCAL_STATUS = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "canceled": EventStatus.CANCELLED,
    "cancelled": EventStatus.CANCELLED,
}


# ---------------------------------------------------------------------------
# Shared parsing helpers
# ---------------------------------------------------------------------------


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _coerce_zoneinfo(name: str | None, fallback: ZoneInfo) -> ZoneInfo:
    if not name:
        return fallback
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        # Non-IANA names (e.g. Windows zone names) fall back to the caller's zone.
        return fallback


def parse_timestamp(value: str, *, default_zone: ZoneInfo) -> datetime:
    """Parse an ISO-8601/RFC3339 timestamp, attaching *default_zone* when naive."""
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    normalized = _FRACTION_PATTERN.sub(r".\1", normalized)
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_zone)
    return parsed.astimezone(UTC)


def _start_of_day(day: date, zone: ZoneInfo) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=zone).astimezone(UTC)


def _all_day_bounds(
    start_day: date, end_day: date | None, zone: ZoneInfo
) -> tuple[datetime, datetime]:
    """Return UTC bounds for an all-day span; the end is exclusive end-of-day."""
    if end_day is None or end_day <= start_day:
        end_day = start_day + timedelta(days=1)
    return _start_of_day(start_day, zone), _start_of_day(end_day, zone)


def _date_value(value: Any) -> date | None:
    text = _text(value)
    if text is None or "T" in text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def _build_event(
    provider: Provider,
    provider_event_id: str,
    *,
    user_id: str,
    calendar_id: str,
    start: datetime,
    end: datetime,
    **fields: Any,
) -> Event:
    if end <= start:
        raise ParseError(
            provider,
            f"event end {end.isoformat()} is not after start {start.isoformat()}",
            provider_event_id=provider_event_id,
        )
    return Event(
        id=event_id_for(user_id, provider, provider_event_id),
        user_id=user_id,
        provider=provider,
        provider_event_id=provider_event_id,
        calendar_id=calendar_id,
        start=start,
        end=end,
        **fields,
    )


# ---------------------------------------------------------------------------
# Google Calendar
# ---------------------------------------------------------------------------


def _google_boundary(payload: Any, *, zone: ZoneInfo) -> tuple[datetime | None, date | None]:
    if not isinstance(payload, Mapping):
        return None, None
    boundary_zone = _coerce_zoneinfo(_text(payload.get("timeZone")), zone)
    date_time = _text(payload.get("dateTime"))
    if date_time is not None:
        return parse_timestamp(date_time, default_zone=boundary_zone), None
    return None, _date_value(payload.get("date"))


def _normalize_google(
    raw: Mapping[str, Any], *, user_id: str, calendar_id: str, zone: ZoneInfo
) -> Event:
    provider_event_id = _text(raw.get("id"))
    if provider_event_id is None:
        raise ParseError(Provider.GOOGLE, "Google event is missing an id")

    try:
        start_at, start_day = _google_boundary(raw.get("start"), zone=zone)
        end_at, end_day = _google_boundary(raw.get("end"), zone=zone)
    except (ValueError, OverflowError) as exc:
        raise ParseError(
            Provider.GOOGLE, f"invalid start/end value: {exc}", provider_event_id=provider_event_id
        ) from exc

    is_all_day = False
    if start_at is not None and end_at is not None:
        start, end = start_at, end_at
    elif start_day is not None:
        event_zone = _coerce_zoneinfo(_text((raw.get("start") or {}).get("timeZone")), zone)
        start, end = _all_day_bounds(start_day, end_day, event_zone)
        is_all_day = True
    else:
        raise ParseError(
            Provider.GOOGLE,
            "Google event is missing start/end dateTime or date values",
            provider_event_id=provider_event_id,
        )

    status = _GOOGLE_STATUS.get(str(raw.get("status", "")).strip().lower(), EventStatus.CONFIRMED)
    transparency = str(raw.get("transparency", "")).strip().lower()
    if transparency == "transparent":
        availability = EventAvailability.FREE
    elif status == EventStatus.TENTATIVE:
        availability = EventAvailability.TENTATIVE
    else:
        availability = EventAvailability.BUSY

    return _build_event(
        Provider.GOOGLE,
        provider_event_id,
        user_id=user_id,
        calendar_id=calendar_id,
        start=start,
        end=end,
        title=_text(raw.get("summary")) or "",
        description=_text(raw.get("description")),
        location=_text(raw.get("location")),
        is_all_day=is_all_day,
        availability=availability,
        status=status,
    )


# ---------------------------------------------------------------------------
# Microsoft Graph
# ---------------------------------------------------------------------------


def _microsoft_boundary(payload: Any, *, zone: ZoneInfo) -> datetime | None:
    if not isinstance(payload, Mapping):
        return None
    date_time = _text(payload.get("dateTime"))
    if date_time is None:
        return None
    boundary_zone = _coerce_zoneinfo(_text(payload.get("timeZone")), zone)
    return parse_timestamp(date_time, default_zone=boundary_zone)


def _normalize_microsoft(
    raw: Mapping[str, Any], *, user_id: str, calendar_id: str, zone: ZoneInfo
) -> Event:
    provider_event_id = _text(raw.get("id"))
    if provider_event_id is None:
        raise ParseError(Provider.MICROSOFT, "Graph event is missing an id")

    try:
        start = _microsoft_boundary(raw.get("start"), zone=zone)
        end = _microsoft_boundary(raw.get("end"), zone=zone)
    except (ValueError, OverflowError) as exc:
        raise ParseError(
            Provider.MICROSOFT,
            f"invalid start/end value: {exc}",
            provider_event_id=provider_event_id,
        ) from exc
    if start is None or end is None:
        raise ParseError(
            Provider.MICROSOFT,
            "Graph event is missing start/end dateTime values",
            provider_event_id=provider_event_id,
        )

    is_all_day = bool(raw.get("isAllDay"))
    if is_all_day:
        start_zone = _coerce_zoneinfo(_text((raw.get("start") or {}).get("timeZone")), zone)
        start_day = start.astimezone(start_zone).date()
        end_day = end.astimezone(start_zone).date()
        start, end = _all_day_bounds(start_day, end_day, start_zone)

    show_as = str(raw.get("showAs", "")).strip().lower()
    availability = _MICROSOFT_SHOW_AS.get(show_as, EventAvailability.BUSY)

    response = raw.get("responseStatus")
    response_value = (
        str(response.get("response", "")).strip() if isinstance(response, Mapping) else ""
    )
    if raw.get("isCancelled") is True:
        status = EventStatus.CANCELLED
    elif response_value == "tentativelyAccepted":
        status = EventStatus.TENTATIVE
    else:
        status = EventStatus.CONFIRMED

    location = raw.get("location")
    body = raw.get("body")
    description = _text(raw.get("bodyPreview"))
    if description is None and isinstance(body, Mapping):
        description = _text(body.get("content"))

    return _build_event(
        Provider.MICROSOFT,
        provider_event_id,
        user_id=user_id,
        calendar_id=calendar_id,
        start=start,
        end=end,
        title=_text(raw.get("subject")) or "",
        description=description,
        location=_text(location.get("displayName")) if isinstance(location, Mapping) else None,
        is_all_day=is_all_day,
        availability=availability,
        status=status,
    )


# ---------------------------------------------------------------------------
# Local device calendar
# ---------------------------------------------------------------------------


def _normalize_local(
    raw: Mapping[str, Any], *, user_id: str, calendar_id: str, zone: ZoneInfo
) -> Event:
    provider_event_id = _text(raw.get("eventIdentifier")) or _text(raw.get("id"))
    if provider_event_id is None:
        raise ParseError(Provider.LOCAL, "local event is missing an identifier")

    calendar_id = _text(raw.get("calendarIdentifier")) or calendar_id
    event_zone = _coerce_zoneinfo(_text(raw.get("timeZone")), zone)
    is_all_day = bool(raw.get("isAllDay"))

    start_day = _date_value(raw.get("startDate"))
    end_day = _date_value(raw.get("endDate"))
    try:
        if start_day is not None:
            is_all_day = True
            start, end = _all_day_bounds(start_day, end_day, event_zone)
        else:
            start_text = _text(raw.get("startDate"))
            end_text = _text(raw.get("endDate"))
            if start_text is None or end_text is None:
                raise ParseError(
                    Provider.LOCAL,
                    "local event is missing startDate/endDate",
                    provider_event_id=provider_event_id,
                )
            start = parse_timestamp(start_text, default_zone=event_zone)
            end = parse_timestamp(end_text, default_zone=event_zone)
            if is_all_day:
                local_start = start.astimezone(event_zone).date()
                local_end = end.astimezone(event_zone).date()
                start, end = _all_day_bounds(local_start, local_end, event_zone)
    except (ValueError, OverflowError) as exc:
        raise ParseError(
            Provider.LOCAL, f"invalid start/end value: {exc}", provider_event_id=provider_event_id
        ) from exc

    availability = _LOCAL_AVAILABILITY.get(
        str(raw.get("availability", "")).strip().lower(), EventAvailability.BUSY
    )
    status = _LOCAL_STATUS.get(str(raw.get("status", "")).strip().lower(), EventStatus.CONFIRMED)

    return _build_event(
        Provider.LOCAL,
        provider_event_id,
        user_id=user_id,
        calendar_id=calendar_id,
        start=start,
        end=end,
        title=_text(raw.get("title")) or "",
        description=_text(raw.get("notes")),
        location=_text(raw.get("location")),
        is_all_day=is_all_day,
        availability=availability,
        status=status,
    )


_NORMALIZERS = {
    Provider.GOOGLE: _normalize_google,
    Provider.MICROSOFT: _normalize_microsoft,
    Provider.LOCAL: _normalize_local,
}


def normalize(
    provider: Provider | str,
    raw_event: RawEvent | Mapping[str, Any],
    *,
    user_id: str,
    calendar_id: str | None = None,
    timezone: str = "UTC",
    synced_at: datetime | None = None,
) -> Event:
    """Normalize one raw provider event into a canonical ``Event``.

    ``timezone`` is used for naive timestamps and date-only values that carry
    no zone of their own. The result is deterministic for a given raw event,
    so repeated normalization yields an identical ``Event``.

    Raises
    ------
    ParseError
        If the provider event id, start, or end cannot be determined.
    """
    provider = Provider(provider)
    if isinstance(raw_event, RawEvent):
        payload: Mapping[str, Any] = raw_event.payload
        calendar_id = calendar_id or raw_event.calendar_id
    else:
        payload = raw_event
    if not isinstance(payload, Mapping):
        raise ParseError(provider, "raw event payload must be a JSON object")

    zone = _coerce_zoneinfo(timezone, ZoneInfo("UTC"))
    try:
        event = _NORMALIZERS[provider](
            payload, user_id=user_id, calendar_id=calendar_id or "primary", zone=zone
        )
    except ParseError:
        raise
    except (ValueError, OverflowError, TypeError) as exc:
        # Out-of-range dates and malformed values must only ever cost this one event.
        event_id = _text(payload.get("id")) or _text(payload.get("eventIdentifier"))
        raise ParseError(
            provider, f"{type(exc).__name__}: {exc}", provider_event_id=event_id
        ) from exc
    if synced_at is not None:
        event = event.model_copy(update={"last_synced_at": synced_at.astimezone(UTC)})
    return event
