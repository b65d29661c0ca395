"""Reconcile freshly fetched events with the stored set for one provider window.

The algorithm per (user, provider, window):

1. Load stored events overlapping the window.
2. Index stored and fetched events by ``provider_event_id``.
3. Fetched but not stored: insert. Stored and fetched with any differing
   field (``last_synced_at`` excluded): update. Identical: no-op.
4. Stored but not fetched: tombstone-delete. Only events starting inside the
   window are candidates, so events outside the queried range are never touched.
5. On success, advance the provider's ``SyncCursor`` to the window end. A window
   that touches the range the cursor already covers extends that range.

Every operation is keyed by the deterministic event id, so a reconcile that
fails partway through can simply be retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from rendezvous.calendar.errors import sanitize_error_message
from rendezvous.calendar.models import Event, Provider, SyncCursor, SyncResult, TimeWindow
from rendezvous.calendar.stores import EventStore

# Fields compared when deciding whether a stored event needs an update.
_DIFF_FIELDS = tuple(name for name in Event.model_fields if name != "last_synced_at")


def changed_fields(stored: Event, fetched: Event) -> list[str]:
    """Return the names of canonical fields that differ between two events."""
    return [name for name in _DIFF_FIELDS if getattr(stored, name) != getattr(fetched, name)]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SynchronizationEngine:
    """Applies create/update/delete operations for one provider at a time.

    Reconciles for the same (user, provider) are serialized; different
    providers of the same user may reconcile concurrently.
    """

    def __init__(
        self,
        *,
        store: EventStore,
        clock: Callable[[], datetime] = _utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._locks: defaultdict[tuple[str, Provider], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def reconcile(
        self,
        user_id: str,
        provider: Provider,
        window: TimeWindow,
        fetched_events: Sequence[Event],
    ) -> SyncResult:
        provider = Provider(provider)
        async with self._locks[(user_id, provider)]:
            return await self._reconcile_locked(user_id, provider, window, fetched_events)

    async def _reconcile_locked(
        self,
        user_id: str,
        provider: Provider,
        window: TimeWindow,
        fetched_events: Sequence[Event],
    ) -> SyncResult:
        now = self._clock()
        result = SyncResult(provider=provider)

        try:
            stored_events = await self._store.list_events(
                user_id, provider, window.start, window.end
            )
        except Exception as exc:
            return await self._fail(user_id, provider, result, exc)

        stored_by_pid: dict[str, Event] = {}
        duplicates: list[Event] = []
        for event in stored_events:
            if not window.contains(event.start):
                continue
            if event.provider_event_id in stored_by_pid:
                duplicates.append(event)
            else:
                stored_by_pid[event.provider_event_id] = event

        fetched_by_pid: dict[str, Event] = {}
        for event in fetched_events:
            if event.user_id != user_id or event.provider != provider:
                self._logger.warning(
                    "Ignoring fetched event for another user/provider "
                    "(event_id=%s, user_id=%s, provider=%s)",
                    event.id,
                    event.user_id,
                    event.provider.value,
                )
                continue
            fetched_by_pid[event.provider_event_id] = event

        try:
            for provider_event_id, fetched in fetched_by_pid.items():
                stored = stored_by_pid.get(provider_event_id)
                if stored is None and not window.contains(fetched.start):
                    # Began before the window; it may already be stored outside the range.
                    stored = await self._store.get_event(user_id, fetched.id)

                if stored is None:
                    await self._store.upsert(fetched.model_copy(update={"last_synced_at": now}))
                    result.created += 1
                    continue

                diff = changed_fields(stored, fetched)
                if not diff:
                    result.unchanged += 1
                    continue
                if stored.id != fetched.id:
                    await self._store.delete(stored.id)
                await self._store.upsert(fetched.model_copy(update={"last_synced_at": now}))
                result.updated += 1
                self._logger.debug(
                    "Calendar event updated (event_id=%s, fields=%s)", fetched.id, ",".join(diff)
                )

            for provider_event_id, stored in stored_by_pid.items():
                if provider_event_id not in fetched_by_pid:
                    await self._store.delete(stored.id)
                    result.deleted += 1

            for duplicate in duplicates:
                if duplicate.id != stored_by_pid[duplicate.provider_event_id].id:
                    await self._store.delete(duplicate.id)
        except Exception as exc:
            return await self._fail(user_id, provider, result, exc)

        await self._advance_cursor(user_id, provider, window, result, now)
        self._logger.info(
            "Calendar sync completed (user_id=%s, provider=%s, created=%d, updated=%d, "
            "deleted=%d, unchanged=%d)",
            user_id,
            provider.value,
            result.created,
            result.updated,
            result.deleted,
            result.unchanged,
        )
        return result

    async def _advance_cursor(
        self,
        user_id: str,
        provider: Provider,
        window: TimeWindow,
        result: SyncResult,
        now: datetime,
    ) -> None:
        previous = await self._store.get_cursor(user_id, provider)
        window_start = window.start
        window_end = window.end
        if previous is not None and previous.window_end is not None:
            # The cursor never moves backwards.
            window_end = max(window_end, previous.window_end)
            if (
                previous.window_start is not None
                and window.start <= previous.window_end
                and window.end >= previous.window_start
            ):
                window_start = min(window_start, previous.window_start)
        await self._store.set_cursor(
            SyncCursor(
                user_id=user_id,
                provider=provider,
                window_start=window_start,
                window_end=window_end,
                last_synced_at=now,
                last_error=previous.last_error if previous is not None else None,
                last_error_at=previous.last_error_at if previous is not None else None,
                created=result.created,
                updated=result.updated,
                deleted=result.deleted,
            )
        )

    async def _fail(
        self,
        user_id: str,
        provider: Provider,
        result: SyncResult,
        exc: Exception,
    ) -> SyncResult:
        message = sanitize_error_message(f"{type(exc).__name__}: {exc}")
        self._logger.error(
            "Calendar sync failed partway (user_id=%s, provider=%s, created=%d, updated=%d, "
            "deleted=%d): %s",
            user_id,
            provider.value,
            result.created,
            result.updated,
            result.deleted,
            message,
            exc_info=exc,
        )
        result.error = message
        await self.record_failure(user_id, provider, message)
        return result

    async def record_failure(self, user_id: str, provider: Provider, message: str) -> None:
        """Record a failed cycle on the cursor without moving its window."""
        try:
            previous = await self._store.get_cursor(user_id, provider)
            cursor = previous or SyncCursor(user_id=user_id, provider=provider)
            await self._store.set_cursor(
                cursor.model_copy(
                    update={
                        "last_error": sanitize_error_message(message),
                        "last_error_at": self._clock(),
                    }
                )
            )
        except Exception:
            self._logger.warning(
                "Could not record sync failure on cursor (user_id=%s, provider=%s)",
                user_id,
                provider.value,
                exc_info=True,
            )
