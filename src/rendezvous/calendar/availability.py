"""Free-slot computation for one user and mutual availability across users.

Slots are laid on a grid of ``slot_granularity_minutes`` starting at
``daily_window_start`` on each preferred weekday, interpreted in the user's
``timezone``, and returned in UTC. A slot is kept iff no busy period
or weekly recurring commitment overlaps it
(``max(slot.start, busy.start) < min(slot.end, busy.end)``).

Mutual availability intersects per-user slot sets by exact ``(start, end)``
equality, which only lines up when every user shares one grid. Differing
granularities are logged; callers can pass ``granularity_minutes`` to put
everyone on the same grid first.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import UTC, date, datetime, timedelta
from itertools import accumulate, chain
from zoneinfo import ZoneInfo

from rendezvous.calendar.models import (
    AvailabilityPreferences,
    AvailabilitySlot,
    BusyPeriod,
    Event,
    EventAvailability,
    EventStatus,
)

logger = logging.getLogger(__name__)


def weekday_number(day: date) -> int:
    """Return 1 (Sunday) through 7 (Saturday)."""
    return day.isoweekday() % 7 + 1


def busy_periods_from_events(events: Iterable[Event]) -> list[BusyPeriod]:
    """Busy periods for every non-free, non-cancelled event, ordered by start."""
    periods = [
        BusyPeriod(start=event.start, end=event.end, source_event_id=event.id)
        for event in events
        if event.availability != EventAvailability.FREE and event.status != EventStatus.CANCELLED
    ]
    return sorted(periods, key=lambda period: (period.start, period.end))


def commitment_periods(
    prefs: AvailabilityPreferences, start: datetime, end: datetime
) -> list[BusyPeriod]:
    """Expand the weekly recurring commitments into busy periods overlapping ``[start, end)``."""
    if not prefs.recurring_commitments or end <= start:
        return []
    zone = prefs.zone
    day = start.astimezone(zone).date()
    last_day = (end - timedelta(microseconds=1)).astimezone(zone).date()

    periods: list[BusyPeriod] = []
    while day <= last_day:
        midnight = datetime(day.year, day.month, day.day, tzinfo=zone)
        for commitment in prefs.recurring_commitments:
            if commitment.weekday != weekday_number(day):
                continue
            period_start = (midnight + timedelta(minutes=commitment.start_minute)).astimezone(UTC)
            period_end = (midnight + timedelta(minutes=commitment.end_minute)).astimezone(UTC)
            if period_start < end and period_end > start and period_end > period_start:
                periods.append(BusyPeriod(start=period_start, end=period_end))
        day += timedelta(days=1)
    return sorted(periods, key=lambda period: (period.start, period.end))


class _BusyIndex:
    """Answers "does anything overlap [start, end)?" in O(log n)."""

    def __init__(self, periods: Iterable[BusyPeriod]) -> None:
        ordered = sorted(periods, key=lambda period: period.start)
        self._starts = [period.start for period in ordered]
        self._max_ends = list(accumulate((period.end for period in ordered), max))

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # Periods before ``index`` start strictly before ``end``.
        index = bisect.bisect_left(self._starts, end)
        return index > 0 and self._max_ends[index - 1] > start


def _day_grid(
    day: date, prefs: AvailabilityPreferences, zone: ZoneInfo
) -> Iterator[tuple[datetime, datetime]]:
    midnight = datetime(day.year, day.month, day.day, tzinfo=zone)
    step = prefs.slot_granularity_minutes
    offset = prefs.daily_window_start
    while offset + step <= prefs.daily_window_end:
        slot_start = (midnight + timedelta(minutes=offset)).astimezone(UTC)
        slot_end = (midnight + timedelta(minutes=offset + step)).astimezone(UTC)
        offset += step
        if slot_end <= slot_start:
            # Wall-clock slot swallowed by a DST transition.
            continue
        yield slot_start, slot_end


def compute_availability(
    user_id: str,
    busy_periods: Iterable[BusyPeriod],
    prefs: AvailabilityPreferences,
    start: datetime,
    end: datetime,
) -> list[AvailabilitySlot]:
    """Return the user's free slots within ``[start, end)`` in chronological order.

    Days are taken from the user's timezone; only slots lying entirely inside
    ``[start, end)`` are returned. Recurring commitments block slots exactly
    like busy periods. An empty list means no free time.
    """
    start = start.astimezone(UTC)
    end = end.astimezone(UTC)
    if end <= start:
        return []

    zone = prefs.zone
    busy = _BusyIndex(chain(busy_periods, commitment_periods(prefs, start, end)))
    day = start.astimezone(zone).date()
    last_day = (end - timedelta(microseconds=1)).astimezone(zone).date()

    slots: list[AvailabilitySlot] = []
    while day <= last_day:
        if weekday_number(day) in prefs.preferred_weekdays:
            for slot_start, slot_end in _day_grid(day, prefs, zone):
                if slot_start < start or slot_end > end:
                    continue
                if busy.overlaps(slot_start, slot_end):
                    continue
                slots.append(AvailabilitySlot(start=slot_start, end=slot_end))
        day += timedelta(days=1)

    logger.debug(
        "Computed availability (user_id=%s, slots=%d, days=%d)",
        user_id,
        len(slots),
        (last_day - start.astimezone(zone).date()).days + 1,
    )
    return slots


def _runs(slots: Iterable[AvailabilitySlot]) -> list[list[AvailabilitySlot]]:
    """Group chronologically ordered slots into runs of back-to-back slots."""
    runs: list[list[AvailabilitySlot]] = []
    for slot in sorted(slots, key=lambda item: item.start):
        if runs and runs[-1][-1].end == slot.start:
            runs[-1].append(slot)
        else:
            runs.append([slot])
    return runs


def filter_short_runs(
    slots: Iterable[AvailabilitySlot], min_minutes: int
) -> list[AvailabilitySlot]:
    """Drop slots whose contiguous free run is shorter than ``min_minutes``."""
    kept: list[AvailabilitySlot] = []
    for run in _runs(slots):
        run_minutes = (run[-1].end - run[0].start).total_seconds() / 60
        if run_minutes >= min_minutes:
            kept.extend(run)
    return kept


def merge_slots(
    slots: Iterable[AvailabilitySlot], *, max_minutes: int | None = None
) -> list[AvailabilitySlot]:
    """Merge back-to-back slots into free windows.

    With ``max_minutes`` set, windows longer than that are split into
    consecutive windows of at most ``max_minutes``.
    """
    windows: list[AvailabilitySlot] = []
    for run in _runs(slots):
        window_start, window_end = run[0].start, run[-1].end
        if max_minutes is None:
            windows.append(AvailabilitySlot(start=window_start, end=window_end))
            continue
        step = timedelta(minutes=max_minutes)
        cursor = window_start
        while cursor < window_end:
            piece_end = min(cursor + step, window_end)
            windows.append(AvailabilitySlot(start=cursor, end=piece_end))
            cursor = piece_end
    return windows


def compute_free_windows(
    user_id: str,
    busy_periods: Iterable[BusyPeriod],
    prefs: AvailabilityPreferences,
    start: datetime,
    end: datetime,
) -> list[AvailabilitySlot]:
    """Free windows of at least ``min_slot_minutes`` and at most ``max_slot_minutes``."""
    slots = compute_availability(user_id, busy_periods, prefs, start, end)
    return merge_slots(
        filter_short_runs(slots, prefs.min_slot_minutes), max_minutes=prefs.max_slot_minutes
    )


def compute_mutual_availability(
    user_ids: Sequence[str],
    prefs_by_user: Mapping[str, AvailabilityPreferences],
    busy_by_user: Mapping[str, Iterable[BusyPeriod]],
    start: datetime,
    end: datetime,
    *,
    granularity_minutes: int | None = None,
) -> list[AvailabilitySlot]:
    """Return the slots every user has free.

    Each user's slots come from ``compute_availability`` with their own
    preferences (defaults when absent); runs shorter than the user's
    ``min_slot_minutes`` are dropped before intersecting. Users without busy
    periods are fully free within their preferences.
    """
    users = list(dict.fromkeys(user_ids))
    if not users:
        return []
    if granularity_minutes is not None and granularity_minutes < 1:
        raise ValueError("granularity_minutes must be at least 1")

    prefs_for: dict[str, AvailabilityPreferences] = {}
    for user_id in users:
        prefs = prefs_by_user.get(user_id) or AvailabilityPreferences()
        if granularity_minutes is not None:
            prefs = prefs.model_copy(update={"slot_granularity_minutes": granularity_minutes})
        prefs_for[user_id] = prefs

    grids = {
        (p.slot_granularity_minutes, p.daily_window_start % p.slot_granularity_minutes)
        for p in prefs_for.values()
    }
    if len(grids) > 1:
        logger.warning(
            "Mutual availability across differing slot grids (%s); exact-match intersection "
            "may miss shared free time. Pass granularity_minutes to align users.",
            sorted(grids),
        )

    common: set[AvailabilitySlot] | None = None
    for user_id in users:
        prefs = prefs_for[user_id]
        slots = compute_availability(user_id, busy_by_user.get(user_id, ()), prefs, start, end)
        user_slots = set(filter_short_runs(slots, prefs.min_slot_minutes))
        common = user_slots if common is None else common & user_slots
        if not common:
            return []

    return sorted(common or (), key=lambda slot: slot.start)
