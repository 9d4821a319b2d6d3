from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Protocol

from campuscal.aggregator import EventAggregator
from campuscal.conflicts import find_conflict, has_conflict, overlaps
from campuscal.date_index import DateIndex, DateKey, build_index, date_key, dates_with_items, items_on_date
from campuscal.errors import CalendarError, EventNotFoundError, require_user_id
from campuscal.models import (
    DEFAULT_DURATION,
    DEFAULT_IMPORT_SOURCE_TAG,
    MANUAL_SOURCE_TAG,
    CalendarItem,
    ImportResult,
    LoadResult,
    PersonalCalendarRecord,
    ScheduleConflict,
    to_instant,
)
from campuscal.reconciler import ImportDeduplicator
from campuscal.stores import ImportParser

logger = logging.getLogger(__name__)


class ImportRunLog(Protocol):
    def record_import_run(
        self,
        *,
        user_id: str,
        source_tag: str,
        status: str,
        message: str,
        imported: int,
        replaced: int,
        failed_deletions: int,
        duration_ms: int,
    ) -> int:
        ...


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class PersonalCalendarService:
    """Calendar state of one signed-in user.

    Holds the last aggregated items, the date index built from them and the
    currently selected day. ``import_calendar`` keeps the lock from the
    reconcile step through the reload, so a concurrent ``load`` never sees
    the store between deletion and insertion.
    """

    def __init__(
        self,
        user_id: str,
        aggregator: EventAggregator,
        deduplicator: ImportDeduplicator,
        parser: ImportParser,
        *,
        tz: tzinfo | None = None,
        default_duration: timedelta = DEFAULT_DURATION,
        import_source_tag: str = DEFAULT_IMPORT_SOURCE_TAG,
        import_log: ImportRunLog | None = None,
    ) -> None:
        self.user_id = require_user_id(user_id)
        self.aggregator = aggregator
        self.deduplicator = deduplicator
        self.parser = parser
        self.tz = tz
        self.default_duration = default_duration
        self.import_source_tag = import_source_tag
        self.import_log = import_log
        self._lock = threading.RLock()
        self._items: list[CalendarItem] = []
        self._index: DateIndex = {}
        self._selected_date: date = datetime.now(tz or timezone.utc).date()
        self._error: str | None = None

    @property
    def items(self) -> list[CalendarItem]:
        with self._lock:
            return list(self._items)

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def selected_date(self) -> date:
        return self._selected_date

    @property
    def selected_date_items(self) -> list[CalendarItem]:
        with self._lock:
            return items_on_date(self._index, self._selected_date, self.tz)

    def clear_error(self) -> None:
        self._error = None

    def load(self) -> LoadResult:
        started_at = datetime.now(timezone.utc)
        with self._lock:
            self._error = None
            try:
                items = self.aggregator.aggregate(self.user_id)
            except CalendarError as exc:
                logger.exception("Error loading calendar for user %s", self.user_id)
                self._error = f"{type(exc).__name__}: {exc}"
                return LoadResult(
                    status="error",
                    message=self._error,
                    item_count=len(self._items),
                    duration_ms=_elapsed_ms(started_at),
                )
            self._items = items
            self._index = build_index(items, self.tz)
        message = f"Loaded {len(items)} calendar items."
        logger.info("%s user=%s", message, self.user_id)
        return LoadResult(
            status="success",
            message=message,
            item_count=len(items),
            duration_ms=_elapsed_ms(started_at),
        )

    def select_date(self, day: datetime | date | DateKey) -> list[CalendarItem]:
        key = date_key(day, self.tz)
        with self._lock:
            self._selected_date = key.to_date()
            return items_on_date(self._index, key)

    def items_on(self, day: datetime | date | DateKey) -> list[CalendarItem]:
        with self._lock:
            return items_on_date(self._index, day, self.tz)

    def dates_with_events(self) -> set[DateKey]:
        with self._lock:
            return dates_with_items(self._index)

    def import_calendar(self, raw: bytes | str, source_tag: str | None = None) -> ImportResult:
        started_at = datetime.now(timezone.utc)
        tag = (source_tag or "").strip() or self.import_source_tag
        with self._lock:
            try:
                records = self.parser.parse(raw, self.user_id, tag)
                outcome = self.deduplicator.reconcile(self.user_id, records)
            except CalendarError as exc:
                logger.exception("Error importing calendar for user %s", self.user_id)
                self._error = f"{type(exc).__name__}: {exc}"
                return self._finish_import(
                    ImportResult(
                        status="error",
                        message=self._error,
                        imported=0,
                        replaced=0,
                        failed_deletions=0,
                        duration_ms=_elapsed_ms(started_at),
                    ),
                    tag,
                )
            self.load()

        message = f"Imported {outcome.inserted} events, replaced {len(outcome.deleted)}."
        if outcome.failed_deletions:
            message += f" {len(outcome.failed_deletions)} stale events could not be removed."
        logger.info("%s user=%s source=%s", message, self.user_id, tag)
        return self._finish_import(
            ImportResult(
                status="success",
                message=message,
                imported=outcome.inserted,
                replaced=len(outcome.deleted),
                failed_deletions=len(outcome.failed_deletions),
                duration_ms=_elapsed_ms(started_at),
            ),
            tag,
        )

    def _finish_import(self, result: ImportResult, source_tag: str) -> ImportResult:
        if self.import_log is None:
            return result
        try:
            self.import_log.record_import_run(
                user_id=self.user_id,
                source_tag=source_tag,
                status=result.status,
                message=result.message,
                imported=result.imported,
                replaced=result.replaced,
                failed_deletions=result.failed_deletions,
                duration_ms=result.duration_ms,
            )
        except Exception as exc:
            logger.warning("Could not record import run for user %s: %s", self.user_id, exc)
        return result

    def add_event(
        self,
        *,
        title: str,
        start: datetime,
        end: datetime | None = None,
        location: str | None = None,
        color_hint: str | None = None,
        description: str | None = None,
    ) -> PersonalCalendarRecord:
        record = PersonalCalendarRecord(
            id=str(uuid.uuid4()),
            user_id=self.user_id,
            title=title,
            start=to_instant(start),
            end=to_instant(end) if end is not None else None,
            location=location,
            color_hint=color_hint,
            source_tag=MANUAL_SOURCE_TAG,
            description=description,
        )
        with self._lock:
            self.aggregator.personal_store.save([record])
            self.load()
        return record

    def update_event(
        self,
        record_id: str,
        *,
        title: str,
        start: datetime,
        end: datetime | None = None,
        location: str | None = None,
        color_hint: str | None = None,
        description: str | None = None,
    ) -> PersonalCalendarRecord:
        """Replace the editable fields of one of the user's records.

        Source tag, external id and the all-day flag are kept, so an edited
        imported event is still replaced by the next import of its feed.
        """
        with self._lock:
            personal_store = self.aggregator.personal_store
            existing = next(
                (record for record in personal_store.get_for_user(self.user_id) if record.id == record_id),
                None,
            )
            if existing is None:
                raise EventNotFoundError(f"no event {record_id!r} for user {self.user_id}")
            record = replace(
                existing,
                title=title,
                start=to_instant(start),
                end=to_instant(end) if end is not None else None,
                location=location,
                color_hint=color_hint,
                description=description,
            )
            personal_store.save([record])
            self.load()
        return record

    def delete_event(self, record_id: str) -> None:
        with self._lock:
            self.aggregator.personal_store.delete(record_id, self.user_id)
            self.load()

    def conflicts_for(self, start: datetime, end: datetime | None = None) -> list[CalendarItem]:
        with self._lock:
            return overlaps(self._items, start, end, self.default_duration)

    def has_conflict_at(self, start: datetime, end: datetime | None = None) -> bool:
        with self._lock:
            return has_conflict(self._items, start, end, self.default_duration)

    def find_conflict(self, start: datetime, end: datetime | None = None) -> ScheduleConflict | None:
        with self._lock:
            return find_conflict(self._items, start, end, self.default_duration)

