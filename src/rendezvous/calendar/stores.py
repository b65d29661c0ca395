"""Storage interfaces for events, cursors, preferences, and conflict records.

Persistence technology is not prescribed; any durable keyed store that
implements these protocols works. In-memory implementations are provided for
tests and one-shot computations, and ``rendezvous.calendar.postgres`` provides
asyncpg-backed ones.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from rendezvous.calendar.errors import SettingsNotFoundError
from rendezvous.calendar.models import (
    AvailabilityPreferences,
    ConflictRecord,
    Event,
    Provider,
    SyncCursor,
    UserCalendarSettings,
)


class EventStore(Protocol):
    async def list_events(
        self,
        user_id: str,
        provider: Provider,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Event]:
        """Return stored events for (user, provider) that overlap ``[start, end)``."""
        ...

    async def get_event(self, user_id: str, event_id: str) -> Event | None: ...

    async def upsert(self, event: Event) -> None:
        """Insert or replace the event keyed by its id."""
        ...

    async def delete(self, event_id: str) -> None:
        """Delete the event; deleting a missing event is a no-op."""
        ...

    async def get_cursor(self, user_id: str, provider: Provider) -> SyncCursor | None: ...

    async def set_cursor(self, cursor: SyncCursor) -> None: ...


class PreferencesStore(Protocol):
    async def get_availability_preferences(self, user_id: str) -> AvailabilityPreferences:
        """Return the user's preferences, or defaults when none are stored."""
        ...

    async def get_connected_providers(self, user_id: str) -> list[Provider]:
        """Return enabled providers; raises ``SettingsNotFoundError`` without a settings record."""
        ...


class ConflictStore(Protocol):
    async def save_conflict(self, record: ConflictRecord) -> None: ...

    async def list_unresolved_conflicts(self, user_id: str) -> list[ConflictRecord]: ...

    async def list_conflicts(self, user_id: str) -> list[ConflictRecord]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryEventStore:
    def __init__(self, events: list[Event] | None = None) -> None:
        self.events: dict[str, Event] = {event.id: event for event in events or []}
        self.cursors: dict[tuple[str, Provider], SyncCursor] = {}

    async def list_events(
        self,
        user_id: str,
        provider: Provider,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Event]:
        return sorted(
            (
                event
                for event in self.events.values()
                if event.user_id == user_id
                and event.provider == provider
                and event.start < window_end
                and event.end > window_start
            ),
            key=lambda event: (event.start, event.id),
        )

    async def get_event(self, user_id: str, event_id: str) -> Event | None:
        event = self.events.get(event_id)
        if event is None or event.user_id != user_id:
            return None
        return event

    async def upsert(self, event: Event) -> None:
        self.events[event.id] = event

    async def delete(self, event_id: str) -> None:
        self.events.pop(event_id, None)

    async def get_cursor(self, user_id: str, provider: Provider) -> SyncCursor | None:
        return self.cursors.get((user_id, provider))

    async def set_cursor(self, cursor: SyncCursor) -> None:
        self.cursors[(cursor.user_id, cursor.provider)] = cursor


class InMemoryPreferencesStore:
    def __init__(self, settings: list[UserCalendarSettings] | None = None) -> None:
        self.settings: dict[str, UserCalendarSettings] = {
            item.user_id: item for item in settings or []
        }

    async def get_availability_preferences(self, user_id: str) -> AvailabilityPreferences:
        settings = self.settings.get(user_id)
        if settings is None:
            return AvailabilityPreferences()
        return settings.preferences

    async def get_connected_providers(self, user_id: str) -> list[Provider]:
        settings = self.settings.get(user_id)
        if settings is None:
            raise SettingsNotFoundError(user_id)
        return settings.connected_providers

    async def save_settings(self, settings: UserCalendarSettings) -> None:
        self.settings[settings.user_id] = settings


class InMemoryConflictStore:
    def __init__(self) -> None:
        self.records: dict[str, ConflictRecord] = {}

    async def save_conflict(self, record: ConflictRecord) -> None:
        self.records.setdefault(record.id, record)

    async def list_unresolved_conflicts(self, user_id: str) -> list[ConflictRecord]:
        return [record for record in await self.list_conflicts(user_id) if not record.resolved]

    async def list_conflicts(self, user_id: str) -> list[ConflictRecord]:
        return sorted(
            (record for record in self.records.values() if record.user_id == user_id),
            key=lambda record: (record.detected_at, record.id),
        )
