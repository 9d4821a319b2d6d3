from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable

from campuscal.models import DEFAULT_DURATION, CalendarItem, ScheduleConflict, to_instant


def _query_end(start: datetime, end: datetime | None, default_duration: timedelta) -> datetime:
    if end is None:
        return start + default_duration
    return max(start, end)


def overlaps(
    items: Iterable[CalendarItem],
    query_start: datetime,
    query_end: datetime | None = None,
    default_duration: timedelta = DEFAULT_DURATION,
) -> list[CalendarItem]:
    """Items whose interval intersects ``[query_start, query_end)``.

    Both sides are half-open, so an event ending at 14:00 does not conflict
    with one starting at 14:00. A missing end means ``default_duration``.
    """
    query_start = to_instant(query_start)
    if query_end is not None:
        query_end = to_instant(query_end)
    effective_end = _query_end(query_start, query_end, default_duration)
    return [
        item
        for item in items
        if item.start < effective_end and item.effective_end(default_duration) > query_start
    ]


def has_conflict(
    items: Iterable[CalendarItem],
    start: datetime,
    end: datetime | None = None,
    default_duration: timedelta = DEFAULT_DURATION,
) -> bool:
    return len(overlaps(items, start, end, default_duration)) > 0


def find_conflict(
    items: Iterable[CalendarItem],
    start: datetime,
    end: datetime | None = None,
    default_duration: timedelta = DEFAULT_DURATION,
) -> ScheduleConflict | None:
    conflicting = overlaps(items, start, end, default_duration)
    if not conflicting:
        return None
    titles = ", ".join(item.title or item.id for item in conflicting)
    noun = "event" if len(conflicting) == 1 else "events"
    return ScheduleConflict(
        conflicting_items=conflicting,
        message=f"Conflicts with {len(conflicting)} {noun}: {titles}",
    )
