"""Unit tests for SynchronizationEngine.reconcile.

Covers:
- Create / update / unchanged / delete accounting
- Idempotence: reconciling the same fetch twice is a no-op the second time
- Window containment: stored events outside the window are never touched
- Overlap listing: events running into the window are listed but never tombstoned
- Events that began before the window are updated, not duplicated
- Cursor advance on success, no rollback, and failure recording
- Partial failure leaves a retryable state
- Serialization of reconciles for the same (user, provider)
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from rendezvous.calendar.models import (
    Event,
    EventAvailability,
    Provider,
    SyncCursor,
    TimeWindow,
)
from rendezvous.calendar.stores import InMemoryEventStore
from rendezvous.calendar.sync import SynchronizationEngine, changed_fields

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
WINDOW = TimeWindow(start=datetime(2026, 3, 2, tzinfo=UTC), end=datetime(2026, 4, 1, tzinfo=UTC))


def _event(
    provider_event_id: str,
    *,
    day: int = 2,
    hour: int = 14,
    title: str | None = None,
    provider: Provider = Provider.GOOGLE,
    user_id: str = "alice",
    **fields,
) -> Event:
    start = datetime(2026, 3, day, hour, tzinfo=UTC)
    return Event.create(
        user_id=user_id,
        provider=provider,
        provider_event_id=provider_event_id,
        title=title if title is not None else provider_event_id,
        start=start,
        end=start + timedelta(hours=1),
        **fields,
    )


def _engine(store: InMemoryEventStore) -> SynchronizationEngine:
    return SynchronizationEngine(store=store, clock=lambda: NOW)


# ---------------------------------------------------------------------------
# changed_fields
# ---------------------------------------------------------------------------


class TestChangedFields:
    def test_ignores_last_synced_at(self):
        stored = _event("e1", last_synced_at=NOW - timedelta(days=1))
        fetched = _event("e1", last_synced_at=NOW)
        assert changed_fields(stored, fetched) == []

    def test_reports_differences(self):
        stored = _event("e1")
        fetched = _event("e1", title="Renamed", availability=EventAvailability.FREE)
        assert changed_fields(stored, fetched) == ["title", "availability"]


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


class TestReconcile:
    async def test_first_sync_creates_everything(self):
        store = InMemoryEventStore()
        result = await _engine(store).reconcile(
            "alice", Provider.GOOGLE, WINDOW, [_event("e1"), _event("e2", day=3)]
        )

        assert (result.created, result.updated, result.deleted, result.unchanged) == (2, 0, 0, 0)
        assert result.completed
        assert all(event.last_synced_at == NOW for event in store.events.values())

    async def test_missing_fetched_event_is_deleted(self):
        e1, e2 = _event("e1"), _event("e2", day=3)
        store = InMemoryEventStore([e1, e2])

        result = await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [e1])

        assert result.deleted == 1
        assert result.unchanged == 1
        assert result.updated == 0
        assert set(store.events) == {e1.id}

    async def test_changed_event_is_updated(self):
        e1, e2 = _event("e1"), _event("e2", day=3)
        store = InMemoryEventStore([e1, e2])

        result = await _engine(store).reconcile(
            "alice", Provider.GOOGLE, WINDOW, [_event("e1", title="Moved", hour=15)]
        )

        assert (result.created, result.updated, result.deleted) == (0, 1, 1)
        assert store.events[e1.id].title == "Moved"
        assert store.events[e1.id].start.hour == 15

    async def test_reconcile_is_idempotent(self):
        store = InMemoryEventStore([_event("stale", day=5)])
        engine = _engine(store)
        fetched = [_event("e1"), _event("e2", day=3)]

        await engine.reconcile("alice", Provider.GOOGLE, WINDOW, fetched)
        snapshot = dict(store.events)
        second = await engine.reconcile("alice", Provider.GOOGLE, WINDOW, fetched)

        assert (second.created, second.updated, second.deleted) == (0, 0, 0)
        assert second.unchanged == 2
        assert store.events == snapshot

    async def test_events_outside_window_are_untouched(self):
        before = _event("before", day=1)
        after = Event.create(
            user_id="alice",
            provider=Provider.GOOGLE,
            provider_event_id="after",
            start=datetime(2026, 4, 5, 9, tzinfo=UTC),
            end=datetime(2026, 4, 5, 10, tzinfo=UTC),
        )
        store = InMemoryEventStore([before, after])

        result = await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [])

        assert result.deleted == 0
        assert set(store.events) == {before.id, after.id}

    async def test_event_running_into_window_is_not_tombstoned(self):
        running = Event.create(
            user_id="alice",
            provider=Provider.GOOGLE,
            provider_event_id="overnight",
            start=datetime(2026, 3, 1, 22, tzinfo=UTC),
            end=datetime(2026, 3, 2, 2, tzinfo=UTC),
        )
        store = InMemoryEventStore([running])

        result = await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [])

        assert result.deleted == 0
        assert running.id in store.events

    async def test_other_providers_and_users_are_untouched(self):
        outlook = _event("m1", provider=Provider.MICROSOFT)
        bobs = _event("e9", user_id="bob")
        store = InMemoryEventStore([outlook, bobs])

        await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [])

        assert set(store.events) == {outlook.id, bobs.id}

    async def test_event_started_before_window_is_updated_not_duplicated(self):
        spanning = Event.create(
            user_id="alice",
            provider=Provider.GOOGLE,
            provider_event_id="offsite",
            title="Offsite",
            start=datetime(2026, 3, 1, 9, tzinfo=UTC),
            end=datetime(2026, 3, 3, 17, tzinfo=UTC),
        )
        store = InMemoryEventStore([spanning])

        result = await _engine(store).reconcile(
            "alice",
            Provider.GOOGLE,
            WINDOW,
            [spanning.model_copy(update={"title": "Offsite (moved)"})],
        )

        assert (result.created, result.updated) == (0, 1)
        assert len(store.events) == 1
        assert store.events[spanning.id].title == "Offsite (moved)"

    async def test_foreign_fetched_events_are_ignored(self):
        store = InMemoryEventStore()
        result = await _engine(store).reconcile(
            "alice", Provider.GOOGLE, WINDOW, [_event("m1", provider=Provider.MICROSOFT)]
        )

        assert result.created == 0
        assert store.events == {}

    async def test_duplicate_stored_rows_are_collapsed(self):
        e1 = _event("e1")
        duplicate = e1.model_copy(update={"id": "legacy-row"})
        store = InMemoryEventStore([e1, duplicate])

        result = await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [e1])

        assert result.unchanged == 1
        assert set(store.events) == {e1.id}


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------


class TestCursor:
    async def test_success_advances_cursor(self):
        store = InMemoryEventStore()
        await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [_event("e1")])

        cursor = store.cursors[("alice", Provider.GOOGLE)]
        assert cursor.window_start == WINDOW.start
        assert cursor.window_end == WINDOW.end
        assert cursor.last_synced_at == NOW
        assert cursor.created == 1
        assert cursor.healthy

    async def test_cursor_never_moves_backwards(self):
        store = InMemoryEventStore()
        engine = _engine(store)
        await engine.reconcile("alice", Provider.GOOGLE, WINDOW, [])

        earlier = TimeWindow(start=WINDOW.start, end=WINDOW.start + timedelta(days=7))
        await engine.reconcile("alice", Provider.GOOGLE, earlier, [])

        assert store.cursors[("alice", Provider.GOOGLE)].window_end == WINDOW.end

    async def test_contiguous_window_extends_covered_range(self):
        store = InMemoryEventStore()
        engine = _engine(store)
        await engine.reconcile("alice", Provider.GOOGLE, WINDOW, [])

        tail = TimeWindow(start=WINDOW.end, end=WINDOW.end + timedelta(days=1))
        await engine.reconcile("alice", Provider.GOOGLE, tail, [])

        cursor = store.cursors[("alice", Provider.GOOGLE)]
        assert (cursor.window_start, cursor.window_end) == (WINDOW.start, tail.end)

    async def test_disjoint_window_replaces_covered_range(self):
        store = InMemoryEventStore()
        engine = _engine(store)
        await engine.reconcile("alice", Provider.GOOGLE, WINDOW, [])

        later = TimeWindow(start=WINDOW.end + timedelta(days=5), end=WINDOW.end + timedelta(days=6))
        await engine.reconcile("alice", Provider.GOOGLE, later, [])

        cursor = store.cursors[("alice", Provider.GOOGLE)]
        assert (cursor.window_start, cursor.window_end) == (later.start, later.end)

    async def test_record_failure_keeps_window(self):
        store = InMemoryEventStore()
        engine = _engine(store)
        await engine.reconcile("alice", Provider.GOOGLE, WINDOW, [])

        await engine.record_failure("alice", Provider.GOOGLE, "access_token=abc expired")

        cursor = store.cursors[("alice", Provider.GOOGLE)]
        assert cursor.window_end == WINDOW.end
        assert cursor.last_error == "access_token=[REDACTED] expired"
        assert cursor.last_error_at == NOW
        # Failure at the same instant as the last success counts as recovered.
        assert cursor.healthy

    async def test_record_failure_without_prior_cursor(self):
        store = InMemoryEventStore()
        await _engine(store).record_failure("alice", Provider.MICROSOFT, "timeout")

        cursor = store.cursors[("alice", Provider.MICROSOFT)]
        assert cursor.window_end is None
        assert cursor.last_error == "timeout"
        assert not cursor.healthy


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


class _FlakyStore(InMemoryEventStore):
    """Fails the Nth upsert once, then behaves normally."""

    def __init__(self, events=None, *, fail_on: int = 2) -> None:
        super().__init__(events)
        self._upserts = 0
        self._fail_on = fail_on

    async def upsert(self, event: Event) -> None:
        self._upserts += 1
        if self._upserts == self._fail_on:
            raise ConnectionError("database went away")
        await super().upsert(event)


class TestPartialFailure:
    async def test_failure_returns_partial_counts_without_advancing_cursor(self):
        store = _FlakyStore()
        fetched = [_event("e1"), _event("e2", day=3), _event("e3", day=4)]

        result = await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, fetched)

        assert result.created == 1
        assert not result.completed
        assert "ConnectionError" in result.error
        cursor = store.cursors[("alice", Provider.GOOGLE)]
        assert cursor.window_end is None
        assert cursor.last_error is not None

    async def test_retry_after_failure_converges(self):
        store = _FlakyStore()
        engine = _engine(store)
        fetched = [_event("e1"), _event("e2", day=3), _event("e3", day=4)]

        await engine.reconcile("alice", Provider.GOOGLE, WINDOW, fetched)
        retry = await engine.reconcile("alice", Provider.GOOGLE, WINDOW, fetched)

        assert retry.completed
        assert (retry.created, retry.unchanged) == (2, 1)
        assert {event.provider_event_id for event in store.events.values()} == {"e1", "e2", "e3"}
        assert store.cursors[("alice", Provider.GOOGLE)].window_end == WINDOW.end

    async def test_store_read_failure(self):
        class _Unreadable(InMemoryEventStore):
            async def list_events(self, *args, **kwargs):
                raise TimeoutError("read timed out")

        store = _Unreadable()
        result = await _engine(store).reconcile("alice", Provider.GOOGLE, WINDOW, [_event("e1")])

        assert result.error is not None
        assert store.events == {}


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class _SlowStore(InMemoryEventStore):
    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.max_active = 0

    async def list_events(self, *args, **kwargs):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(0.01)
        try:
            return await super().list_events(*args, **kwargs)
        finally:
            self.active -= 1


class TestSerialization:
    async def test_same_provider_reconciles_are_serialized(self):
        store = _SlowStore()
        engine = _engine(store)

        await asyncio.gather(
            engine.reconcile("alice", Provider.GOOGLE, WINDOW, [_event("e1")]),
            engine.reconcile("alice", Provider.GOOGLE, WINDOW, [_event("e1")]),
        )

        assert store.max_active == 1
        assert len(store.events) == 1

    async def test_different_providers_run_concurrently(self):
        store = _SlowStore()
        engine = _engine(store)

        await asyncio.gather(
            engine.reconcile("alice", Provider.GOOGLE, WINDOW, []),
            engine.reconcile("alice", Provider.MICROSOFT, WINDOW, []),
        )

        assert store.max_active == 2


# ---------------------------------------------------------------------------
# InMemoryEventStore
# ---------------------------------------------------------------------------


class TestInMemoryEventStore:
    async def test_list_events_returns_every_event_overlapping_the_range(self):
        long_trip = Event.create(
            user_id="alice",
            provider=Provider.GOOGLE,
            provider_event_id="trip",
            start=WINDOW.start - timedelta(days=10),
            end=WINDOW.start + timedelta(hours=3),
        )
        ended = Event.create(
            user_id="alice",
            provider=Provider.GOOGLE,
            provider_event_id="ended",
            start=WINDOW.start - timedelta(hours=2),
            end=WINDOW.start,
        )
        inside = _event("inside")
        store = InMemoryEventStore([long_trip, ended, inside])

        listed = await store.list_events("alice", Provider.GOOGLE, WINDOW.start, WINDOW.end)

        assert listed == [long_trip, inside]


def test_sync_cursor_defaults_are_healthy():
    assert SyncCursor(user_id="alice", provider=Provider.GOOGLE).healthy
