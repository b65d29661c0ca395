"""Integration tests for the asyncpg-backed calendar stores.

Covers:
- ensure_schema idempotence
- Event upsert/list/get/delete with overlap filtering
- Cursor round trip and reconcile through PostgresEventStore
- Settings JSONB persistence and SettingsNotFoundError
- Conflict dedupe via ON CONFLICT DO NOTHING
- Credential save/load/delete
"""

from __future__ import annotations

import shutil
import uuid
from datetime import UTC, datetime, timedelta

import pytest

from rendezvous.calendar.errors import SettingsNotFoundError
from rendezvous.calendar.models import (
    AvailabilityPreferences,
    ConflictRecord,
    Credential,
    Event,
    Provider,
    ProviderSettings,
    SyncCursor,
    TimeWindow,
    UserCalendarSettings,
)
from rendezvous.calendar.postgres import (
    PostgresConflictStore,
    PostgresCredentialRepository,
    PostgresEventStore,
    PostgresPreferencesStore,
    ensure_schema,
)
from rendezvous.calendar.sync import SynchronizationEngine

docker_available = shutil.which("docker") is not None
pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
WINDOW = TimeWindow(start=datetime(2026, 3, 2, tzinfo=UTC), end=datetime(2026, 4, 1, tzinfo=UTC))


def _unique_db_name() -> str:
    """Generate a unique database name for test isolation."""
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="module")
def postgres_container():
    """Start a PostgreSQL container for the test module."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as postgres:
        yield postgres


@pytest.fixture
async def database(postgres_container):
    """Fresh database with the calendar schema applied."""
    from rendezvous.db import Database

    db = Database(
        db_name=_unique_db_name(),
        host=postgres_container.get_container_host_ip(),
        port=int(postgres_container.get_exposed_port(5432)),
        user=postgres_container.username,
        password=postgres_container.password,
        min_pool_size=1,
        max_pool_size=3,
    )
    await db.provision()
    await db.connect()
    await ensure_schema(db)
    try:
        yield db
    finally:
        await db.close()


def _event(pid: str, day: int = 2, **fields) -> Event:
    start = datetime(2026, 3, day, 14, tzinfo=UTC)
    return Event.create(
        user_id="alice",
        provider=Provider.GOOGLE,
        provider_event_id=pid,
        title=pid,
        start=start,
        end=start + timedelta(hours=1),
        **fields,
    )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


async def test_ensure_schema_is_idempotent(database):
    await ensure_schema(database)
    row = await database.fetchrow("SELECT to_regclass('calendar_events')::text AS name")
    assert row["name"] == "calendar_events"


# ---------------------------------------------------------------------------
# Events and cursors
# ---------------------------------------------------------------------------


class TestPostgresEventStore:
    async def test_upsert_list_get_delete(self, database):
        store = PostgresEventStore(database)
        inside, outside = _event("e1"), _event("e0", day=1)
        await store.upsert(inside)
        await store.upsert(outside)

        listed = await store.list_events("alice", Provider.GOOGLE, WINDOW.start, WINDOW.end)
        assert listed == [inside]
        assert await store.get_event("alice", outside.id) == outside
        assert await store.get_event("bob", outside.id) is None

        await store.delete(inside.id)
        await store.delete(inside.id)
        assert await store.list_events("alice", Provider.GOOGLE, WINDOW.start, WINDOW.end) == []

    async def test_list_includes_events_running_into_window(self, database):
        store = PostgresEventStore(database)
        long_trip = Event.create(
            user_id="alice",
            provider=Provider.GOOGLE,
            provider_event_id="trip",
            start=WINDOW.start - timedelta(days=10),
            end=WINDOW.start + timedelta(hours=3),
        )
        await store.upsert(long_trip)
        await store.upsert(_event("ended", day=1))

        listed = await store.list_events("alice", Provider.GOOGLE, WINDOW.start, WINDOW.end)
        assert listed == [long_trip]

    async def test_upsert_replaces_fields(self, database):
        store = PostgresEventStore(database)
        await store.upsert(_event("e1"))
        await store.upsert(_event("e1", description="Bring slides", last_synced_at=NOW))

        stored = await store.get_event("alice", _event("e1").id)
        assert stored.description == "Bring slides"
        assert stored.last_synced_at == NOW

    async def test_cursor_round_trip(self, database):
        store = PostgresEventStore(database)
        cursor = SyncCursor(
            user_id="alice",
            provider=Provider.MICROSOFT,
            window_start=WINDOW.start,
            window_end=WINDOW.end,
            last_synced_at=NOW,
            created=3,
        )
        await store.set_cursor(cursor)
        assert await store.get_cursor("alice", Provider.MICROSOFT) == cursor
        assert await store.get_cursor("alice", Provider.GOOGLE) is None

    async def test_reconcile_against_postgres(self, database):
        store = PostgresEventStore(database)
        engine = SynchronizationEngine(store=store, clock=lambda: NOW)
        await store.upsert(_event("stale", day=5))

        first = await engine.reconcile(
            "alice", Provider.GOOGLE, WINDOW, [_event("e1"), _event("e2", day=3)]
        )
        second = await engine.reconcile(
            "alice", Provider.GOOGLE, WINDOW, [_event("e1"), _event("e2", day=3)]
        )

        assert (first.created, first.deleted) == (2, 1)
        assert (second.created, second.updated, second.deleted, second.unchanged) == (0, 0, 0, 2)
        cursor = await store.get_cursor("alice", Provider.GOOGLE)
        assert cursor.window_end == WINDOW.end


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestPostgresPreferencesStore:
    async def test_missing_settings(self, database):
        store = PostgresPreferencesStore(database)
        assert await store.get_availability_preferences("alice") == AvailabilityPreferences()
        with pytest.raises(SettingsNotFoundError):
            await store.get_connected_providers("alice")

    async def test_settings_round_trip(self, database):
        store = PostgresPreferencesStore(database)
        settings = UserCalendarSettings(
            user_id="alice",
            providers={
                Provider.GOOGLE: ProviderSettings(calendar_ids=["primary", "team"]),
                Provider.MICROSOFT: ProviderSettings(enabled=False),
            },
            preferences=AvailabilityPreferences(
                preferred_weekdays=frozenset({1, 7}), timezone="Europe/Berlin"
            ),
        )
        await store.save_settings(settings)

        assert await store.get_settings("alice") == settings
        assert await store.get_connected_providers("alice") == [Provider.GOOGLE]
        prefs = await store.get_availability_preferences("alice")
        assert prefs.preferred_weekdays == frozenset({1, 7})


# ---------------------------------------------------------------------------
# Conflicts and credentials
# ---------------------------------------------------------------------------


class TestPostgresConflictStore:
    async def test_save_is_deduplicated(self, database):
        store = PostgresConflictStore(database)
        record = ConflictRecord.for_pair("alice", "a", "b", detected_at=NOW)
        await store.save_conflict(record)
        await store.save_conflict(ConflictRecord.for_pair("alice", "b", "a", detected_at=NOW))

        assert await store.list_conflicts("alice") == [record]
        assert await store.list_unresolved_conflicts("alice") == [record]
        assert await store.list_conflicts("bob") == []


class TestPostgresCredentialRepository:
    async def test_save_load_delete(self, database):
        repository = PostgresCredentialRepository(database)
        credential = Credential(
            user_id="alice",
            provider=Provider.GOOGLE,
            access_token="tok",
            refresh_token="rtok",
            expires_at=NOW,
        )
        await repository.save(credential)
        assert await repository.load("alice", Provider.GOOGLE) == credential

        await repository.save(credential.model_copy(update={"access_token": "tok-2"}))
        assert (await repository.load("alice", Provider.GOOGLE)).access_token == "tok-2"

        await repository.delete("alice", Provider.GOOGLE)
        assert await repository.load("alice", Provider.GOOGLE) is None
