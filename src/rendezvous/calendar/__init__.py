"""Calendar engine: normalization, sync, conflict detection, and availability."""

from __future__ import annotations

from rendezvous.calendar.availability import (
    busy_periods_from_events,
    compute_availability,
    compute_free_windows,
    compute_mutual_availability,
    filter_short_runs,
    merge_slots,
)
from rendezvous.calendar.conflicts import ConflictResolver, detect_overlaps, events_conflict
from rendezvous.calendar.errors import (
    AuthExpiredError,
    CalendarSyncError,
    NetworkTimeoutError,
    ParseError,
    PermissionDeniedError,
    ProviderError,
    ProviderErrorKind,
    ProviderUnavailableError,
    RateLimitedError,
    SettingsNotFoundError,
)
from rendezvous.calendar.models import (
    AvailabilityPreferences,
    AvailabilitySlot,
    BusyPeriod,
    ConflictRecord,
    Credential,
    Event,
    EventAvailability,
    EventStatus,
    Provider,
    ProviderSettings,
    RawEvent,
    SyncCursor,
    SyncResult,
    TimeWindow,
    UserCalendarSettings,
)
from rendezvous.calendar.normalize import normalize
from rendezvous.calendar.orchestrator import FetchOutcome, ProviderFetchOrchestrator
from rendezvous.calendar.service import CalendarSyncService, PeriodicSyncScheduler, SyncRunReport
from rendezvous.calendar.sync import SynchronizationEngine

__all__ = [
    "AuthExpiredError",
    "AvailabilityPreferences",
    "AvailabilitySlot",
    "BusyPeriod",
    "CalendarSyncError",
    "CalendarSyncService",
    "ConflictRecord",
    "ConflictResolver",
    "Credential",
    "Event",
    "EventAvailability",
    "EventStatus",
    "FetchOutcome",
    "NetworkTimeoutError",
    "ParseError",
    "PeriodicSyncScheduler",
    "PermissionDeniedError",
    "Provider",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderFetchOrchestrator",
    "ProviderSettings",
    "ProviderUnavailableError",
    "RateLimitedError",
    "RawEvent",
    "SettingsNotFoundError",
    "SyncCursor",
    "SyncResult",
    "SyncRunReport",
    "SynchronizationEngine",
    "TimeWindow",
    "UserCalendarSettings",
    "busy_periods_from_events",
    "compute_availability",
    "compute_free_windows",
    "compute_mutual_availability",
    "detect_overlaps",
    "events_conflict",
    "filter_short_runs",
    "merge_slots",
    "normalize",
]
