"""Per-user sync runs, availability queries, and the periodic sync scheduler."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field

from rendezvous.calendar.availability import (
    busy_periods_from_events,
    compute_availability,
    compute_free_windows,
    compute_mutual_availability,
)
from rendezvous.calendar.conflicts import ConflictResolver
from rendezvous.calendar.errors import ProviderError, SettingsNotFoundError
from rendezvous.calendar.models import (
    DEFAULT_SYNC_WINDOW_DAYS,
    AvailabilitySlot,
    BusyPeriod,
    ConflictRecord,
    Event,
    Provider,
    SyncCursor,
    SyncResult,
    TimeWindow,
)
from rendezvous.calendar.orchestrator import ProviderFetchOrchestrator
from rendezvous.calendar.stores import ConflictStore, EventStore, PreferencesStore
from rendezvous.calendar.sync import SynchronizationEngine
from rendezvous.calendar.tokens import TokenService
from rendezvous.core.logging import sync_context
from rendezvous.core.telemetry import get_tracer, tag_sync_span

DEFAULT_SYNC_INTERVAL_HOURS = 6
MAX_QUERY_DAYS = 90
# A cursor older than this gets a full refetch instead of an incremental one.
DEFAULT_FULL_REFETCH_HOURS = DEFAULT_SYNC_INTERVAL_HOURS


class ProviderErrorInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: Provider
    kind: str
    error: str
    error_type: str
    retry_after: float | None = None

    @classmethod
    def from_error(cls, error: ProviderError) -> ProviderErrorInfo:
        return cls.model_validate(error.to_dict() | {"provider": error.provider})


class SyncRunReport(BaseModel):
    """Outcome of one sync run: best available event set plus per-provider errors."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    window: TimeWindow
    providers: list[Provider] = Field(default_factory=list)
    fetch_windows: dict[Provider, TimeWindow] = Field(default_factory=dict)
    results: dict[Provider, SyncResult] = Field(default_factory=dict)
    errors: list[ProviderErrorInfo] = Field(default_factory=list)
    events: list[Event] = Field(default_factory=list)
    new_conflicts: list[ConflictRecord] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors and all(result.completed for result in self.results.values())


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validate_query_range(start: datetime, end: datetime) -> None:
    if start.tzinfo is None or end.tzinfo is None:
        raise ValueError("start and end must be timezone-aware")
    if end <= start:
        raise ValueError("end must be after start")
    if end - start > timedelta(days=MAX_QUERY_DAYS):
        raise ValueError(f"availability queries may span at most {MAX_QUERY_DAYS} days")


class CalendarSyncService:
    """Runs fetch, reconcile, and conflict scan for a user, and answers availability queries."""

    def __init__(
        self,
        *,
        orchestrator: ProviderFetchOrchestrator,
        engine: SynchronizationEngine,
        resolver: ConflictResolver,
        event_store: EventStore,
        preferences_store: PreferencesStore,
        conflict_store: ConflictStore,
        token_service: TokenService,
        window_days: int = DEFAULT_SYNC_WINDOW_DAYS,
        full_refetch_after: timedelta = timedelta(hours=DEFAULT_FULL_REFETCH_HOURS),
        clock: Callable[[], datetime] = _utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._engine = engine
        self._resolver = resolver
        self._event_store = event_store
        self._preferences_store = preferences_store
        self._conflict_store = conflict_store
        self._token_service = token_service
        self._window_days = window_days
        self._full_refetch_after = full_refetch_after
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._tracer = get_tracer(__name__)
        self._runs: dict[str, asyncio.Task[SyncRunReport]] = {}

    # ------------------------------------------------------------------
    # Sync runs
    # ------------------------------------------------------------------

    async def sync_user(
        self,
        user_id: str,
        *,
        window: TimeWindow | None = None,
        providers: Iterable[Provider] | None = None,
        full: bool = False,
    ) -> SyncRunReport:
        """Run one orchestration for *user_id*.

        Without an explicit *window*, each provider's cursor decides what is
        fetched: the whole sync window after a failed or stale cycle (or with
        ``full=True``), otherwise only the range past the cursor's window end.

        A default call made while another run for the same user is in flight
        joins that run instead of starting a second one.
        """
        running = self._runs.get(user_id)
        joinable = window is None and providers is None and not full
        if running is not None and not running.done() and joinable:
            return await asyncio.shield(running)

        with sync_context(user_id):
            # The task copies the bound logging context when it is created.
            task = asyncio.ensure_future(self._run(user_id, window, providers, full))
        self._runs[user_id] = task
        try:
            return await task
        finally:
            if self._runs.get(user_id) is task:
                del self._runs[user_id]

    def cancel_sync(self, user_id: str) -> bool:
        """Cancel the user's in-flight run. Returns True if one was running."""
        task = self._runs.get(user_id)
        if task is None or task.done():
            return False
        task.cancel()
        self._logger.info("Calendar sync cancelled (user_id=%s)", user_id)
        return True

    async def connected_providers(self, user_id: str) -> list[Provider]:
        try:
            return await self._preferences_store.get_connected_providers(user_id)
        except SettingsNotFoundError:
            self._logger.info(
                "No calendar settings for user; treating as no connected providers (user_id=%s)",
                user_id,
            )
            return []

    async def _plan_fetch_window(
        self, user_id: str, provider: Provider, target: TimeWindow
    ) -> TimeWindow | None:
        """Window to fetch for *provider*, or None when the cursor already covers *target*."""
        cursor = await self._event_store.get_cursor(user_id, provider)
        if (
            cursor is None
            or cursor.window_start is None
            or cursor.window_end is None
            or cursor.last_synced_at is None
            or not cursor.healthy
            or target.start - cursor.last_synced_at >= self._full_refetch_after
            or cursor.window_start > target.start
            or cursor.window_end <= target.start
        ):
            return target
        if cursor.window_end >= target.end:
            return None
        return TimeWindow(start=cursor.window_end, end=target.end)

    async def _run(
        self,
        user_id: str,
        window: TimeWindow | None,
        providers: Iterable[Provider] | None,
        full: bool = False,
    ) -> SyncRunReport:
        target = window or TimeWindow.days_from(self._clock(), self._window_days)
        requested = (
            list(dict.fromkeys(Provider(p) for p in providers))
            if providers is not None
            else await self.connected_providers(user_id)
        )

        with self._tracer.start_as_current_span("rendezvous.calendar.sync_user") as span:
            tag_sync_span(span, user_id)
            span.set_attribute("calendar.provider_count", len(requested))

            fetch_windows: dict[Provider, TimeWindow] = {}
            for provider in requested:
                if window is not None or full:
                    fetch_windows[provider] = target
                    continue
                planned = await self._plan_fetch_window(user_id, provider, target)
                if planned is None:
                    self._logger.debug(
                        "Calendar cursor already covers sync window (user_id=%s, provider=%s)",
                        user_id,
                        provider.value,
                    )
                    continue
                fetch_windows[provider] = planned
            incremental = sum(1 for planned in fetch_windows.values() if planned != target)
            span.set_attribute("calendar.incremental_count", incremental)

            outcome = await self._orchestrator.fetch_all(
                user_id, list(fetch_windows), target, windows=fetch_windows
            )
            for provider, error in outcome.errors.items():
                await self._engine.record_failure(user_id, provider, error.message)

            reconciled = await asyncio.gather(
                *(
                    self._engine.reconcile(user_id, provider, fetch_windows[provider], events)
                    for provider, events in outcome.events.items()
                )
            )
            results = dict(zip(outcome.events.keys(), reconciled, strict=True))

            merged: list[Event] = []
            for provider in requested:
                stored = await self._event_store.list_events(
                    user_id, provider, target.start, target.end
                )
                merged.extend(stored)
            merged.sort(key=lambda event: (event.start, event.end, event.id))

            new_conflicts = await self._resolver.find_conflicts(user_id, merged)

        report = SyncRunReport(
            user_id=user_id,
            window=target,
            providers=requested,
            fetch_windows=fetch_windows,
            results=results,
            errors=[ProviderErrorInfo.from_error(error) for error in outcome.errors.values()],
            events=merged,
            new_conflicts=new_conflicts,
        )
        self._logger.info(
            "Calendar sync run finished (user_id=%s, providers=%d, incremental=%d, failed=%d, "
            "events=%d, new_conflicts=%d)",
            user_id,
            len(requested),
            incremental,
            len(report.errors),
            len(merged),
            len(new_conflicts),
        )
        return report

    async def disconnect_provider(self, user_id: str, provider: Provider) -> None:
        """Cancel any in-flight run for the user and drop the provider credential."""
        self.cancel_sync(user_id)
        await self._token_service.disconnect(user_id, Provider(provider))

    async def sync_status(self, user_id: str) -> dict[Provider, SyncCursor | None]:
        return {
            provider: await self._event_store.get_cursor(user_id, provider)
            for provider in await self.connected_providers(user_id)
        }

    async def unresolved_conflicts(self, user_id: str) -> list[ConflictRecord]:
        return await self._conflict_store.list_unresolved_conflicts(user_id)

    # ------------------------------------------------------------------
    # Availability queries over stored events
    # ------------------------------------------------------------------

    async def busy_periods(self, user_id: str, start: datetime, end: datetime) -> list[BusyPeriod]:
        """Free/busy view: busy periods overlapping ``[start, end)`` from stored events."""
        _validate_query_range(start, end)
        events: list[Event] = []
        for provider in await self.connected_providers(user_id):
            events.extend(await self._event_store.list_events(user_id, provider, start, end))
        return busy_periods_from_events(events)

    async def user_availability(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[AvailabilitySlot]:
        prefs = await self._preferences_store.get_availability_preferences(user_id)
        busy = await self.busy_periods(user_id, start, end)
        return compute_availability(user_id, busy, prefs, start, end)

    async def free_windows(
        self, user_id: str, start: datetime, end: datetime
    ) -> list[AvailabilitySlot]:
        prefs = await self._preferences_store.get_availability_preferences(user_id)
        busy = await self.busy_periods(user_id, start, end)
        return compute_free_windows(user_id, busy, prefs, start, end)

    async def mutual_availability(
        self,
        user_ids: Sequence[str],
        start: datetime,
        end: datetime,
        *,
        granularity_minutes: int | None = None,
    ) -> list[AvailabilitySlot]:
        _validate_query_range(start, end)
        users = list(dict.fromkeys(user_ids))
        prefs_by_user = {
            user_id: await self._preferences_store.get_availability_preferences(user_id)
            for user_id in users
        }
        busy_by_user = {user_id: await self.busy_periods(user_id, start, end) for user_id in users}
        return compute_mutual_availability(
            users,
            prefs_by_user,
            busy_by_user,
            start,
            end,
            granularity_minutes=granularity_minutes,
        )


class PeriodicSyncScheduler:
    """Syncs a set of users on a fixed interval, with an on-demand trigger."""

    def __init__(
        self,
        service: CalendarSyncService,
        user_ids: Sequence[str] | Callable[[], Sequence[str]],
        *,
        interval_seconds: float = DEFAULT_SYNC_INTERVAL_HOURS * 3600,
        logger: logging.Logger | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._service = service
        self._user_ids = user_ids
        self._interval_seconds = interval_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._force_sync_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _current_users(self) -> list[str]:
        users = self._user_ids() if callable(self._user_ids) else self._user_ids
        return list(dict.fromkeys(users))

    async def run_once(self) -> list[SyncRunReport]:
        reports: list[SyncRunReport] = []
        for user_id in self._current_users():
            try:
                reports.append(await self._service.sync_user(user_id))
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                # The user's run was cancelled (e.g. a provider disconnect); keep going.
                self._logger.info("Calendar sync run cancelled (user_id=%s)", user_id)
            except Exception as exc:
                self._logger.error(
                    "Calendar sync poller error (user_id=%s): %s", user_id, exc, exc_info=True
                )
        return reports

    def force_sync(self) -> None:
        """Trigger an immediate sync cycle."""
        self._force_sync_event.set()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        self._logger.debug("Calendar sync scheduler stopped")

    async def _run_loop(self) -> None:
        self._logger.debug(
            "Calendar sync scheduler loop started (interval=%ds)", int(self._interval_seconds)
        )
        while True:
            await self.run_once()
            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=self._interval_seconds,
                )
                self._force_sync_event.clear()
                self._logger.debug("Calendar sync scheduler: immediate sync triggered")
            except TimeoutError:
                pass
