"""Canonical calendar data model shared by every engine component."""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Namespace for deterministic event and conflict identifiers.
RENDEZVOUS_NAMESPACE = uuid.UUID("6f1c3c0e-5b7a-4f43-9d2e-2a8f4b1e7c11")

DEFAULT_SYNC_WINDOW_DAYS = 30
MINUTES_PER_DAY = 24 * 60


class Provider(enum.StrEnum):
    """External calendar source."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    LOCAL = "local"


class EventAvailability(enum.StrEnum):
    FREE = "free"
    BUSY = "busy"
    TENTATIVE = "tentative"


class EventStatus(enum.StrEnum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


def _require_aware(value: datetime) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError("datetime values must be timezone-aware")
    return value.astimezone(UTC)


def event_id_for(user_id: str, provider: Provider | str, provider_event_id: str) -> str:
    """Return the stable canonical id for a provider event in one user's calendar.

    The user is part of the key because a shared invitation carries the same
    provider event id in every attendee's calendar.
    """
    key = f"{user_id}:{Provider(provider).value}:{provider_event_id}"
    return str(uuid.uuid5(RENDEZVOUS_NAMESPACE, key))


class TimeWindow(BaseModel):
    """Half-open interval ``[start, end)``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)

    @model_validator(mode="after")
    def _validate_order(self) -> TimeWindow:
        if self.end <= self.start:
            raise ValueError("window end must be after window start")
        return self

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    @classmethod
    def days_from(cls, start: datetime, days: int = DEFAULT_SYNC_WINDOW_DAYS) -> TimeWindow:
        if days < 1:
            raise ValueError("days must be at least 1")
        return cls(start=start, end=start + timedelta(days=days))


class Event(BaseModel):
    """Provider-independent event as stored by the synchronization engine."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str = Field(min_length=1)
    provider: Provider
    provider_event_id: str = Field(min_length=1)
    calendar_id: str = "primary"
    title: str = ""
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    is_all_day: bool = False
    availability: EventAvailability = EventAvailability.BUSY
    status: EventStatus = EventStatus.CONFIRMED
    last_synced_at: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)

    @field_validator("last_synced_at")
    @classmethod
    def _normalize_synced_at(cls, value: datetime | None) -> datetime | None:
        return None if value is None else _require_aware(value)

    @model_validator(mode="after")
    def _validate_interval(self) -> Event:
        if self.end <= self.start:
            raise ValueError("event end must be after event start")
        return self

    @classmethod
    def create(cls, **fields: Any) -> Event:
        """Build an event, deriving ``id`` from user, provider and provider_event_id."""
        fields.setdefault(
            "id",
            event_id_for(fields["user_id"], fields["provider"], fields["provider_event_id"]),
        )
        return cls(**fields)

    @property
    def is_busy(self) -> bool:
        return self.availability == EventAvailability.BUSY


class SyncCursor(BaseModel):
    """Last successful fetch window and health for one (user, provider)."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    provider: Provider
    window_start: datetime | None = None
    window_end: datetime | None = None
    last_synced_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def healthy(self) -> bool:
        if self.last_error_at is None:
            return True
        return self.last_synced_at is not None and self.last_synced_at >= self.last_error_at


class SyncResult(BaseModel):
    """Counts of operations applied by one reconcile."""

    model_config = ConfigDict(extra="forbid")

    provider: Provider
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.error is None


class BusyPeriod(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime
    end: datetime
    source_event_id: str | None = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)


class AvailabilitySlot(BaseModel):
    """Granularity-aligned free interval. Frozen so slot sets can be intersected."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize_aware(cls, value: datetime) -> datetime:
        return _require_aware(value)

    @property
    def minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class RecurringCommitment(BaseModel):
    """A weekly block (class, practice, standing meeting) that is never free.

    ``weekday`` uses the same 1 (Sunday) through 7 (Saturday) numbering as
    ``AvailabilityPreferences.preferred_weekdays``; the minute range is local
    to the preferences' timezone.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str = ""
    weekday: int = Field(ge=1, le=7)
    start_minute: int = Field(ge=0, le=MINUTES_PER_DAY)
    end_minute: int = Field(ge=0, le=MINUTES_PER_DAY)

    @model_validator(mode="after")
    def _validate_range(self) -> RecurringCommitment:
        if self.end_minute <= self.start_minute:
            raise ValueError("end_minute must be after start_minute")
        return self


class AvailabilityPreferences(BaseModel):
    """Per-user scheduling preferences.

    Weekdays are numbered 1 (Sunday) through 7 (Saturday). The daily window is
    expressed in minutes after local midnight in ``timezone``, and so are the
    weekly ``recurring_commitments``, which block time like busy events.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_slot_minutes: int = Field(default=30, ge=1)
    max_slot_minutes: int = Field(default=240, ge=1)
    preferred_weekdays: frozenset[int] = frozenset({2, 3, 4, 5})
    daily_window_start: int = Field(default=9 * 60, ge=0, le=MINUTES_PER_DAY)
    daily_window_end: int = Field(default=17 * 60, ge=0, le=MINUTES_PER_DAY)
    slot_granularity_minutes: int = Field(default=30, ge=1, le=MINUTES_PER_DAY)
    timezone: str = "UTC"
    recurring_commitments: tuple[RecurringCommitment, ...] = ()

    @field_validator("preferred_weekdays")
    @classmethod
    def _validate_weekdays(cls, value: frozenset[int]) -> frozenset[int]:
        invalid = sorted(day for day in value if day < 1 or day > 7)
        if invalid:
            raise ValueError(f"preferred_weekdays must be within 1..7, got {invalid}")
        return value

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone: {value!r}") from exc
        return normalized

    @model_validator(mode="after")
    def _validate_ranges(self) -> AvailabilityPreferences:
        if self.daily_window_end <= self.daily_window_start:
            raise ValueError("daily_window_end must be after daily_window_start")
        if self.max_slot_minutes < self.min_slot_minutes:
            raise ValueError("max_slot_minutes must be >= min_slot_minutes")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ConflictRecord(BaseModel):
    """Cross-provider overlap between two busy events, kept for manual review."""

    model_config = ConfigDict(extra="forbid")

    id: str
    user_id: str
    event_id_a: str
    event_id_b: str
    detected_at: datetime
    resolved: bool = False

    @classmethod
    def for_pair(
        cls, user_id: str, event_id_a: str, event_id_b: str, *, detected_at: datetime
    ) -> ConflictRecord:
        first, second = sorted((event_id_a, event_id_b))
        conflict_id = str(uuid.uuid5(RENDEZVOUS_NAMESPACE, f"conflict:{user_id}:{first}:{second}"))
        return cls(
            id=conflict_id,
            user_id=user_id,
            event_id_a=first,
            event_id_b=second,
            detected_at=detected_at,
        )

    @property
    def pair(self) -> frozenset[str]:
        return frozenset((self.event_id_a, self.event_id_b))


class RawEvent(BaseModel):
    """Provider payload for a single event, before normalization."""

    model_config = ConfigDict(extra="forbid")

    provider: Provider
    calendar_id: str = "primary"
    payload: dict[str, Any]


class Credential(BaseModel):
    """Provider access credential for one (user, provider)."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    provider: Provider
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    # Set on credentials handed out by a refresh in the current request; never stored.
    refreshed: bool = Field(default=False, exclude=True)

    def expires_within(self, threshold: timedelta, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now or datetime.now(UTC)
        return self.expires_at - current <= threshold

    def __repr__(self) -> str:
        return (
            f"Credential(user_id={self.user_id!r}, provider={self.provider.value!r}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


class ProviderSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    calendar_ids: list[str] = Field(default_factory=lambda: ["primary"])


class UserCalendarSettings(BaseModel):
    """Persisted per-user settings: connected providers keyed by provider."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    providers: dict[Provider, ProviderSettings] = Field(default_factory=dict)
    preferences: AvailabilityPreferences = Field(default_factory=AvailabilityPreferences)

    @property
    def connected_providers(self) -> list[Provider]:
        return [provider for provider, settings in self.providers.items() if settings.enabled]
