from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, ClassVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


DEFAULT_DURATION = timedelta(hours=1)
DEFAULT_IMPORT_SOURCE_TAG = "Imported"
MANUAL_SOURCE_TAG = "manual"

PERSONAL_COLOR = "#2196F3"
IMPORTED_COLOR = "#9C27B0"
OWNER_COLOR = "#FF9800"
PARTICIPANT_COLOR = "#4CAF50"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_instant(dt: datetime) -> datetime:
    return _ensure_tz(dt).replace(microsecond=0)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def resolve_timezone(name: str | None) -> tzinfo:
    text = str(name or "").strip()
    if not text or text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


@dataclass
class StorageConfig:
    db_path: str = "data/campuscal.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StorageConfig":
        data = data or {}
        return cls(db_path=str(data.get("db_path", "data/campuscal.db")).strip() or "data/campuscal.db")


@dataclass
class CalendarConfig:
    timezone: str = "UTC"
    default_duration_minutes: int = 60
    import_source_tag: str = DEFAULT_IMPORT_SOURCE_TAG

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            default_duration_minutes=max(1, int(data.get("default_duration_minutes", 60))),
            import_source_tag=str(data.get("import_source_tag", DEFAULT_IMPORT_SOURCE_TAG)).strip()
            or DEFAULT_IMPORT_SOURCE_TAG,
        )

    @property
    def default_duration(self) -> timedelta:
        return timedelta(minutes=self.default_duration_minutes)

    @property
    def tzinfo(self) -> tzinfo:
        return resolve_timezone(self.timezone)


@dataclass
class CalendarPalette:
    personal: str = PERSONAL_COLOR
    imported: str = IMPORTED_COLOR
    owner: str = OWNER_COLOR
    participant: str = PARTICIPANT_COLOR

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarPalette":
        data = data or {}
        return cls(
            personal=str(data.get("personal", PERSONAL_COLOR)).strip() or PERSONAL_COLOR,
            imported=str(data.get("imported", IMPORTED_COLOR)).strip() or IMPORTED_COLOR,
            owner=str(data.get("owner", OWNER_COLOR)).strip() or OWNER_COLOR,
            participant=str(data.get("participant", PARTICIPANT_COLOR)).strip() or PARTICIPANT_COLOR,
        )


@dataclass
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    colors: CalendarPalette = field(default_factory=CalendarPalette)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            storage=StorageConfig.from_dict(data.get("storage")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            colors=CalendarPalette.from_dict(data.get("colors")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class PersonalCalendarRecord:
    id: str
    user_id: str
    title: str
    start: datetime
    end: datetime | None = None
    location: str | None = None
    color_hint: str | None = None
    source_tag: str = MANUAL_SOURCE_TAG
    external_id: str | None = None
    description: str | None = None
    all_day: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PersonalCalendarRecord":
        start = parse_iso_datetime(data.get("start"))
        if start is None:
            raise ValueError("personal calendar record requires a start")
        return cls(
            id=str(data.get("id", "")).strip(),
            user_id=str(data.get("user_id", "")).strip(),
            title=str(data.get("title", "") or ""),
            start=start,
            end=parse_iso_datetime(data.get("end")),
            location=_optional_text(data.get("location")),
            color_hint=_optional_text(data.get("color_hint")),
            source_tag=str(data.get("source_tag", MANUAL_SOURCE_TAG) or MANUAL_SOURCE_TAG),
            external_id=_optional_text(data.get("external_id")),
            description=_optional_text(data.get("description")),
            all_day=bool(data.get("all_day", False)),
        )


@dataclass
class AppEventRecord:
    id: str
    title: str
    start: datetime
    owner_id: str
    end: datetime | None = None
    location_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass(frozen=True)
class CalendarItem:
    """Read-only view of one event, whatever store it came from.

    Only the three subclasses below are ever instantiated; ``kind`` tells
    them apart without isinstance checks.
    """

    kind: ClassVar[str] = ""

    id: str
    title: str
    start: datetime
    end: datetime | None = None
    location: str | None = None
    color_hint: str | None = None

    def effective_end(self, default_duration: timedelta = DEFAULT_DURATION) -> datetime:
        if self.end is None:
            return self.start + default_duration
        if self.end < self.start:
            return self.start
        return self.end

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass(frozen=True)
class PersonalItem(CalendarItem):
    kind: ClassVar[str] = "personal"


@dataclass(frozen=True)
class ImportedItem(CalendarItem):
    kind: ClassVar[str] = "imported"

    external_id: str = ""


@dataclass(frozen=True)
class AppEventItem(CalendarItem):
    kind: ClassVar[str] = "app_event"

    is_owner: bool = False


@dataclass
class ReconcileOutcome:
    inserted: int
    deleted: list[str] = field(default_factory=list)
    failed_deletions: list[str] = field(default_factory=list)
    skipped_delete_phase: bool = False


@dataclass
class ScheduleConflict:
    conflicting_items: list[CalendarItem]
    message: str


@dataclass
class LoadResult:
    status: str
    message: str
    item_count: int
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImportResult:
    status: str
    message: str
    imported: int
    replaced: int
    failed_deletions: int
    duration_ms: int
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "imported": self.imported,
            "replaced": self.replaced,
            "failed_deletions": self.failed_deletions,
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }
