from __future__ import annotations

from datetime import date, datetime, tzinfo
from typing import Iterable, NamedTuple

from campuscal.models import CalendarItem, to_instant


class DateKey(NamedTuple):
    year: int
    month: int
    day: int

    def to_date(self) -> date:
        return date(self.year, self.month, self.day)


DateIndex = dict[DateKey, list[CalendarItem]]


def date_key(value: datetime | date | DateKey, tz: tzinfo | None = None) -> DateKey:
    """Bucket key for a moment or a calendar day.

    Datetimes are converted to ``tz`` first; ``None`` means the host's local
    zone, the same calendar the user is looking at. Naive datetimes are UTC.
    """
    if isinstance(value, DateKey):
        return value
    if isinstance(value, datetime):
        instant = to_instant(value)
        local = instant.astimezone(tz) if tz is not None else instant.astimezone()
        return DateKey(local.year, local.month, local.day)
    return DateKey(value.year, value.month, value.day)


def build_index(items: Iterable[CalendarItem], tz: tzinfo | None = None) -> DateIndex:
    index: DateIndex = {}
    for item in items:
        index.setdefault(date_key(item.start, tz), []).append(item)
    return index


def items_on_date(index: DateIndex, day: datetime | date | DateKey, tz: tzinfo | None = None) -> list[CalendarItem]:
    return list(index.get(date_key(day, tz), []))


def dates_with_items(index: DateIndex) -> set[DateKey]:
    return set(index.keys())
