"""PostgreSQL (asyncpg) implementations of the calendar storage protocols.

Tables are created idempotently by ``ensure_schema``::

    calendar_events        one row per (user_id, provider, provider_event_id)
    calendar_sync_cursors  one row per (user_id, provider)
    calendar_conflicts     one row per (user_id, event pair)
    calendar_user_settings providers/preferences JSONB per user
    calendar_credentials   provider access/refresh tokens per (user_id, provider)

Every store takes an ``asyncpg.Pool`` or a ``rendezvous.db.Database`` (which
proxies ``fetch``/``fetchrow``/``execute``).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from rendezvous.calendar.errors import SettingsNotFoundError
from rendezvous.calendar.models import (
    AvailabilityPreferences,
    ConflictRecord,
    Credential,
    Event,
    Provider,
    SyncCursor,
    UserCalendarSettings,
)

if TYPE_CHECKING:
    import asyncpg

    from rendezvous.db import Database

logger = logging.getLogger(__name__)

_SCHEMA_DDL = (
    """
    CREATE TABLE IF NOT EXISTS calendar_events (
        id                TEXT PRIMARY KEY,
        user_id           TEXT NOT NULL,
        provider          TEXT NOT NULL,
        provider_event_id TEXT NOT NULL,
        calendar_id       TEXT NOT NULL,
        title             TEXT NOT NULL DEFAULT '',
        description       TEXT,
        location          TEXT,
        starts_at         TIMESTAMPTZ NOT NULL,
        ends_at           TIMESTAMPTZ NOT NULL,
        is_all_day        BOOLEAN NOT NULL DEFAULT false,
        availability      TEXT NOT NULL DEFAULT 'busy',
        status            TEXT NOT NULL DEFAULT 'confirmed',
        last_synced_at    TIMESTAMPTZ,
        UNIQUE (user_id, provider, provider_event_id),
        CHECK (ends_at > starts_at)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_calendar_events_user_provider_start
    ON calendar_events (user_id, provider, starts_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_sync_cursors (
        user_id        TEXT NOT NULL,
        provider       TEXT NOT NULL,
        window_start   TIMESTAMPTZ,
        window_end     TIMESTAMPTZ,
        last_synced_at TIMESTAMPTZ,
        last_error     TEXT,
        last_error_at  TIMESTAMPTZ,
        created        INTEGER NOT NULL DEFAULT 0,
        updated        INTEGER NOT NULL DEFAULT 0,
        deleted        INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, provider)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_conflicts (
        id          TEXT PRIMARY KEY,
        user_id     TEXT NOT NULL,
        event_id_a  TEXT NOT NULL,
        event_id_b  TEXT NOT NULL,
        detected_at TIMESTAMPTZ NOT NULL,
        resolved    BOOLEAN NOT NULL DEFAULT false,
        UNIQUE (user_id, event_id_a, event_id_b)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_user_settings (
        user_id     TEXT PRIMARY KEY,
        providers   JSONB NOT NULL DEFAULT '{}',
        preferences JSONB NOT NULL DEFAULT '{}',
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS calendar_credentials (
        user_id       TEXT NOT NULL,
        provider      TEXT NOT NULL,
        access_token  TEXT NOT NULL,
        refresh_token TEXT,
        expires_at    TIMESTAMPTZ,
        updated_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, provider)
    )
    """,
)


async def ensure_schema(pool: asyncpg.Pool | Database) -> None:
    """Create the calendar tables and indexes if they do not exist."""
    for statement in _SCHEMA_DDL:
        await pool.execute(statement)
    logger.debug("Calendar schema ensured")


def _decode_jsonb(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_event(row: Any) -> Event:
    return Event(
        id=row["id"],
        user_id=row["user_id"],
        provider=Provider(row["provider"]),
        provider_event_id=row["provider_event_id"],
        calendar_id=row["calendar_id"],
        title=row["title"],
        description=row["description"],
        location=row["location"],
        start=row["starts_at"],
        end=row["ends_at"],
        is_all_day=row["is_all_day"],
        availability=row["availability"],
        status=row["status"],
        last_synced_at=row["last_synced_at"],
    )


class PostgresEventStore:
    def __init__(self, pool: asyncpg.Pool | Database) -> None:
        self._pool = pool

    async def list_events(
        self,
        user_id: str,
        provider: Provider,
        window_start: datetime,
        window_end: datetime,
    ) -> list[Event]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM calendar_events
            WHERE user_id = $1 AND provider = $2 AND starts_at < $4 AND ends_at > $3
            ORDER BY starts_at, id
            """,
            user_id,
            Provider(provider).value,
            window_start,
            window_end,
        )
        return [_row_to_event(row) for row in rows]

    async def get_event(self, user_id: str, event_id: str) -> Event | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM calendar_events WHERE id = $1 AND user_id = $2",
            event_id,
            user_id,
        )
        return None if row is None else _row_to_event(row)

    async def upsert(self, event: Event) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_events (
                id, user_id, provider, provider_event_id, calendar_id, title, description,
                location, starts_at, ends_at, is_all_day, availability, status, last_synced_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (id) DO UPDATE SET
                calendar_id = EXCLUDED.calendar_id,
                title = EXCLUDED.title,
                description = EXCLUDED.description,
                location = EXCLUDED.location,
                starts_at = EXCLUDED.starts_at,
                ends_at = EXCLUDED.ends_at,
                is_all_day = EXCLUDED.is_all_day,
                availability = EXCLUDED.availability,
                status = EXCLUDED.status,
                last_synced_at = EXCLUDED.last_synced_at
            """,
            event.id,
            event.user_id,
            event.provider.value,
            event.provider_event_id,
            event.calendar_id,
            event.title,
            event.description,
            event.location,
            event.start,
            event.end,
            event.is_all_day,
            event.availability.value,
            event.status.value,
            event.last_synced_at,
        )

    async def delete(self, event_id: str) -> None:
        await self._pool.execute("DELETE FROM calendar_events WHERE id = $1", event_id)

    async def get_cursor(self, user_id: str, provider: Provider) -> SyncCursor | None:
        row = await self._pool.fetchrow(
            "SELECT * FROM calendar_sync_cursors WHERE user_id = $1 AND provider = $2",
            user_id,
            Provider(provider).value,
        )
        if row is None:
            return None
        return SyncCursor(
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            window_start=row["window_start"],
            window_end=row["window_end"],
            last_synced_at=row["last_synced_at"],
            last_error=row["last_error"],
            last_error_at=row["last_error_at"],
            created=row["created"],
            updated=row["updated"],
            deleted=row["deleted"],
        )

    async def set_cursor(self, cursor: SyncCursor) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_sync_cursors (
                user_id, provider, window_start, window_end, last_synced_at,
                last_error, last_error_at, created, updated, deleted
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (user_id, provider) DO UPDATE SET
                window_start = EXCLUDED.window_start,
                window_end = EXCLUDED.window_end,
                last_synced_at = EXCLUDED.last_synced_at,
                last_error = EXCLUDED.last_error,
                last_error_at = EXCLUDED.last_error_at,
                created = EXCLUDED.created,
                updated = EXCLUDED.updated,
                deleted = EXCLUDED.deleted
            """,
            cursor.user_id,
            cursor.provider.value,
            cursor.window_start,
            cursor.window_end,
            cursor.last_synced_at,
            cursor.last_error,
            cursor.last_error_at,
            cursor.created,
            cursor.updated,
            cursor.deleted,
        )


class PostgresPreferencesStore:
    def __init__(self, pool: asyncpg.Pool | Database) -> None:
        self._pool = pool

    async def get_settings(self, user_id: str) -> UserCalendarSettings | None:
        row = await self._pool.fetchrow(
            "SELECT providers, preferences FROM calendar_user_settings WHERE user_id = $1",
            user_id,
        )
        if row is None:
            return None
        return UserCalendarSettings(
            user_id=user_id,
            providers=_decode_jsonb(row["providers"]) or {},
            preferences=AvailabilityPreferences.model_validate(
                _decode_jsonb(row["preferences"]) or {}
            ),
        )

    async def save_settings(self, settings: UserCalendarSettings) -> None:
        payload = settings.model_dump(mode="json")
        await self._pool.execute(
            """
            INSERT INTO calendar_user_settings (user_id, providers, preferences, updated_at)
            VALUES ($1, $2::jsonb, $3::jsonb, now())
            ON CONFLICT (user_id) DO UPDATE SET
                providers = EXCLUDED.providers,
                preferences = EXCLUDED.preferences,
                updated_at = now()
            """,
            settings.user_id,
            json.dumps(payload["providers"]),
            json.dumps(payload["preferences"]),
        )

    async def get_availability_preferences(self, user_id: str) -> AvailabilityPreferences:
        settings = await self.get_settings(user_id)
        if settings is None:
            return AvailabilityPreferences()
        return settings.preferences

    async def get_connected_providers(self, user_id: str) -> list[Provider]:
        settings = await self.get_settings(user_id)
        if settings is None:
            raise SettingsNotFoundError(user_id)
        return settings.connected_providers


def _row_to_conflict(row: Any) -> ConflictRecord:
    return ConflictRecord(
        id=row["id"],
        user_id=row["user_id"],
        event_id_a=row["event_id_a"],
        event_id_b=row["event_id_b"],
        detected_at=row["detected_at"],
        resolved=row["resolved"],
    )


class PostgresConflictStore:
    def __init__(self, pool: asyncpg.Pool | Database) -> None:
        self._pool = pool

    async def save_conflict(self, record: ConflictRecord) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_conflicts (
                id, user_id, event_id_a, event_id_b, detected_at, resolved
            )
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT DO NOTHING
            """,
            record.id,
            record.user_id,
            record.event_id_a,
            record.event_id_b,
            record.detected_at,
            record.resolved,
        )

    async def list_unresolved_conflicts(self, user_id: str) -> list[ConflictRecord]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM calendar_conflicts
            WHERE user_id = $1 AND NOT resolved
            ORDER BY detected_at, id
            """,
            user_id,
        )
        return [_row_to_conflict(row) for row in rows]

    async def list_conflicts(self, user_id: str) -> list[ConflictRecord]:
        rows = await self._pool.fetch(
            "SELECT * FROM calendar_conflicts WHERE user_id = $1 ORDER BY detected_at, id",
            user_id,
        )
        return [_row_to_conflict(row) for row in rows]


class PostgresCredentialRepository:
    """Credential repository for ``OAuthTokenService``; token values never reach logs."""

    def __init__(self, pool: asyncpg.Pool | Database) -> None:
        self._pool = pool

    async def load(self, user_id: str, provider: Provider) -> Credential | None:
        row = await self._pool.fetchrow(
            """
            SELECT access_token, refresh_token, expires_at FROM calendar_credentials
            WHERE user_id = $1 AND provider = $2
            """,
            user_id,
            Provider(provider).value,
        )
        if row is None:
            return None
        return Credential(
            user_id=user_id,
            provider=Provider(provider),
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["expires_at"],
        )

    async def save(self, credential: Credential) -> None:
        await self._pool.execute(
            """
            INSERT INTO calendar_credentials (
                user_id, provider, access_token, refresh_token, expires_at, updated_at
            )
            VALUES ($1, $2, $3, $4, $5, now())
            ON CONFLICT (user_id, provider) DO UPDATE SET
                access_token = EXCLUDED.access_token,
                refresh_token = EXCLUDED.refresh_token,
                expires_at = EXCLUDED.expires_at,
                updated_at = now()
            """,
            credential.user_id,
            credential.provider.value,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
        )

    async def delete(self, user_id: str, provider: Provider) -> None:
        await self._pool.execute(
            "DELETE FROM calendar_credentials WHERE user_id = $1 AND provider = $2",
            user_id,
            Provider(provider).value,
        )
