"""Cross-provider overlap detection.

Two events conflict when they come from different providers, both are busy
(and not cancelled), and their intervals overlap:
``max(start_a, start_b) < min(end_a, end_b)``. Conflicts are only recorded
for manual review; events are never edited or cancelled here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from rendezvous.calendar.models import ConflictRecord, Event, EventStatus
from rendezvous.calendar.stores import ConflictStore


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    return max(start_a, start_b) < min(end_a, end_b)


def _eligible(event: Event) -> bool:
    return event.is_busy and event.status != EventStatus.CANCELLED


def events_conflict(a: Event, b: Event) -> bool:
    """Symmetric conflict test for a pair of events."""
    if a.provider == b.provider:
        return False
    if not (_eligible(a) and _eligible(b)):
        return False
    return intervals_overlap(a.start, a.end, b.start, b.end)


def detect_overlaps(events: Iterable[Event]) -> list[tuple[Event, Event]]:
    """Return conflicting pairs, each ordered by start time.

    Candidates are swept in start order; once a later event starts at or
    after the current event's end, no further event can overlap it.
    """
    ordered = sorted((e for e in events if _eligible(e)), key=lambda e: (e.start, e.end, e.id))
    pairs: list[tuple[Event, Event]] = []
    for index, current in enumerate(ordered):
        for candidate in ordered[index + 1 :]:
            if candidate.start >= current.end:
                break
            if events_conflict(current, candidate):
                pairs.append((current, candidate))
    return pairs


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConflictResolver:
    """Persists a ``ConflictRecord`` for each newly detected overlap."""

    def __init__(
        self,
        *,
        store: ConflictStore,
        clock: Callable[[], datetime] = _utcnow,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)

    async def find_conflicts(self, user_id: str, events: Iterable[Event]) -> list[ConflictRecord]:
        """Record overlaps not seen before and return only the new records."""
        user_events = [event for event in events if event.user_id == user_id]
        known = {record.pair for record in await self._store.list_conflicts(user_id)}

        detected_at = self._clock()
        new_records: list[ConflictRecord] = []
        for first, second in detect_overlaps(user_events):
            record = ConflictRecord.for_pair(user_id, first.id, second.id, detected_at=detected_at)
            if record.pair in known:
                continue
            await self._store.save_conflict(record)
            known.add(record.pair)
            new_records.append(record)
            self._logger.info(
                "Calendar conflict detected (user_id=%s, %s:%s overlaps %s:%s)",
                user_id,
                first.provider.value,
                first.provider_event_id,
                second.provider.value,
                second.provider_event_id,
            )

        return new_records
