from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import date, datetime
from typing import Any, Callable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from campuscal.errors import ImportParseError
from campuscal.models import PersonalCalendarRecord, date_to_datetime, to_instant

logger = logging.getLogger(__name__)


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace").lstrip("\ufeff")
    return str(raw_data).lstrip("\ufeff")


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, (datetime, date)):
        return to_instant(date_to_datetime(value))
    return None


def _text(vevent: ICEvent, key: str) -> str | None:
    value = vevent.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def stable_record_id(user_id: str, external_id: str) -> str:
    """Name-based UUID of ``user_id + external_id``.

    Re-importing the same external event for the same user always yields the
    same record id.
    """
    digest = hashlib.md5((user_id + external_id).encode("utf-8")).hexdigest()  # nosec B324
    return str(uuid.UUID(digest, version=3))


class IcsImportParser:
    def __init__(self, generate_uid: Callable[[], str] | None = None) -> None:
        self.generate_uid = generate_uid or (lambda: str(uuid.uuid4()))

    def parse(self, raw: bytes | str, user_id: str, source_tag: str) -> list[PersonalCalendarRecord]:
        raw_ical = _decode_raw_ical(raw)
        try:
            calendar_obj = ICalendar.from_ical(raw_ical)
        except Exception as exc:
            raise ImportParseError(f"not a readable iCalendar payload: {exc}") from exc

        records: list[PersonalCalendarRecord] = []
        skipped = 0
        for component in calendar_obj.walk("VEVENT"):
            record = self._parse_event(component, user_id, source_tag)
            if record is None:
                skipped += 1
                continue
            records.append(record)
        if skipped:
            logger.warning("Skipped %d VEVENTs without a usable SUMMARY or DTSTART", skipped)
        return records

    def _parse_event(self, vevent: ICEvent, user_id: str, source_tag: str) -> PersonalCalendarRecord | None:
        title = _text(vevent, "SUMMARY")
        if title is None or vevent.get("DTSTART") is None:
            return None
        try:
            dtstart_raw = vevent.decoded("DTSTART")
            dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
        except Exception as exc:
            logger.warning("Skipping VEVENT %r: bad date value (%s)", title, exc)
            return None

        start = _coerce_datetime(dtstart_raw)
        if start is None:
            return None
        end = _coerce_datetime(dtend_raw)
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)

        external_id = _text(vevent, "UID")
        record_id = stable_record_id(user_id, external_id) if external_id else self.generate_uid()
        return PersonalCalendarRecord(
            id=record_id,
            user_id=user_id,
            title=title,
            start=start,
            end=end,
            location=_text(vevent, "LOCATION"),
            source_tag=source_tag,
            external_id=external_id,
            description=_text(vevent, "DESCRIPTION"),
            all_day=all_day,
        )
