"""Store protocols consumed by the calendar core, plus SQLite implementations.

The aggregator and reconciler only rely on the protocols; the SQLite classes
are what the session service and the web API wire in by default.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Protocol

from campuscal.models import (
    AppEventRecord,
    PersonalCalendarRecord,
    parse_iso_datetime,
    serialize_datetime,
)

logger = logging.getLogger(__name__)


class PersonalEventStore(Protocol):
    def get_for_user(self, user_id: str) -> list[PersonalCalendarRecord]:
        ...

    def save(self, records: list[PersonalCalendarRecord]) -> None:
        ...

    def delete(self, record_id: str, user_id: str) -> None:
        ...


class AppEventStore(Protocol):
    def get_joined_ids(self, user_id: str) -> list[str]:
        ...

    def get_all_visible(self) -> list[AppEventRecord]:
        ...

    def get_by_id(self, event_id: str) -> AppEventRecord | None:
        ...


class ImportParser(Protocol):
    def parse(self, raw: bytes | str, user_id: str, source_tag: str) -> list[PersonalCalendarRecord]:
        ...


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _required_datetime(value: str) -> datetime:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError("stored event has no start")
    return parsed


class _SqliteStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS personal_events (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT,
            location TEXT,
            color_hint TEXT,
            source_tag TEXT NOT NULL,
            external_id TEXT,
            description TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_personal_events_user ON personal_events(user_id);

        CREATE TABLE IF NOT EXISTS app_events (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT,
            location_name TEXT,
            owner_id TEXT NOT NULL,
            visible INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS event_participants (
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            joined_at TEXT NOT NULL,
            PRIMARY KEY (user_id, event_id)
        );

        CREATE TABLE IF NOT EXISTS import_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            user_id TEXT NOT NULL,
            source_tag TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            imported INTEGER NOT NULL,
            replaced INTEGER NOT NULL,
            failed_deletions INTEGER NOT NULL,
            duration_ms INTEGER NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)


class SqlitePersonalEventStore(_SqliteStore):
    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PersonalCalendarRecord:
        return PersonalCalendarRecord(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            start=_required_datetime(row["start_at"]),
            end=parse_iso_datetime(row["end_at"]),
            location=row["location"],
            color_hint=row["color_hint"],
            source_tag=row["source_tag"],
            external_id=row["external_id"],
            description=row["description"],
            all_day=bool(row["all_day"]),
        )

    def get_for_user(self, user_id: str) -> list[PersonalCalendarRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM personal_events
                    WHERE user_id = ?
                    ORDER BY start_at, id
                    """,
                    (user_id,),
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_in_range(self, user_id: str, start: datetime, end: datetime) -> list[PersonalCalendarRecord]:
        return [record for record in self.get_for_user(user_id) if start <= record.start <= end]

    def save(self, records: Iterable[PersonalCalendarRecord]) -> None:
        rows = [
            (
                record.id,
                record.user_id,
                record.title,
                serialize_datetime(record.start),
                serialize_datetime(record.end),
                record.location,
                record.color_hint,
                record.source_tag,
                record.external_id,
                record.description,
                int(record.all_day),
                _utc_now(),
            )
            for record in records
        ]
        if not rows:
            return
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO personal_events(
                        id, user_id, title, start_at, end_at, location, color_hint,
                        source_tag, external_id, description, all_day, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        user_id = excluded.user_id,
                        title = excluded.title,
                        start_at = excluded.start_at,
                        end_at = excluded.end_at,
                        location = excluded.location,
                        color_hint = excluded.color_hint,
                        source_tag = excluded.source_tag,
                        external_id = excluded.external_id,
                        description = excluded.description,
                        all_day = excluded.all_day,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
                conn.commit()
        logger.debug("Saved %d personal events", len(rows))

    def delete(self, record_id: str, user_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM personal_events WHERE id = ? AND user_id = ?",
                    (record_id, user_id),
                )
                conn.commit()

    def delete_by_source(self, user_id: str, source_tag: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM personal_events WHERE user_id = ? AND source_tag = ?",
                    (user_id, source_tag),
                )
                conn.commit()
                return int(cursor.rowcount)

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
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO import_runs(
                        run_at, user_id, source_tag, status, message,
                        imported, replaced, failed_deletions, duration_ms
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        user_id,
                        source_tag,
                        status,
                        message,
                        int(imported),
                        int(replaced),
                        int(failed_deletions),
                        int(duration_ms),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_import_runs(self, limit: int = 20, user_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute(
                        """
                        SELECT * FROM import_runs
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT * FROM import_runs
                        WHERE user_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (user_id, max(1, limit)),
                    ).fetchall()
        return [dict(row) for row in rows]


class SqliteAppEventStore(_SqliteStore):
    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> AppEventRecord:
        return AppEventRecord(
            id=row["id"],
            title=row["title"],
            start=_required_datetime(row["start_at"]),
            end=parse_iso_datetime(row["end_at"]),
            location_name=row["location_name"],
            owner_id=row["owner_id"],
        )

    def upsert_event(self, record: AppEventRecord, *, visible: bool = True) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_events(id, title, start_at, end_at, location_name, owner_id, visible, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        title = excluded.title,
                        start_at = excluded.start_at,
                        end_at = excluded.end_at,
                        location_name = excluded.location_name,
                        owner_id = excluded.owner_id,
                        visible = excluded.visible,
                        updated_at = excluded.updated_at
                    """,
                    (
                        record.id,
                        record.title,
                        serialize_datetime(record.start),
                        serialize_datetime(record.end),
                        record.location_name,
                        record.owner_id,
                        int(visible),
                        _utc_now(),
                    ),
                )
                conn.commit()

    def join(self, user_id: str, event_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO event_participants(user_id, event_id, joined_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(user_id, event_id) DO NOTHING
                    """,
                    (user_id, event_id, _utc_now()),
                )
                conn.commit()

    def get_joined_ids(self, user_id: str) -> list[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT event_id FROM event_participants
                    WHERE user_id = ?
                    ORDER BY joined_at, event_id
                    """,
                    (user_id,),
                ).fetchall()
        return [str(row["event_id"]) for row in rows]

    def get_all_visible(self) -> list[AppEventRecord]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM app_events WHERE visible = 1 ORDER BY start_at, id"
                ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_by_id(self, event_id: str) -> AppEventRecord | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM app_events WHERE id = ?",
                    (event_id,),
                ).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)
