from __future__ import annotations

from campuscal.models import (
    AppEventItem,
    AppEventRecord,
    CalendarPalette,
    ImportedItem,
    PersonalCalendarRecord,
    PersonalItem,
    to_instant,
)


_DEFAULT_PALETTE = CalendarPalette()


def personal_to_item(
    record: PersonalCalendarRecord,
    palette: CalendarPalette | None = None,
) -> PersonalItem | ImportedItem:
    palette = palette or _DEFAULT_PALETTE
    start = to_instant(record.start)
    end = to_instant(record.end) if record.end is not None else None
    if record.external_id is not None:
        return ImportedItem(
            id=record.id,
            title=record.title,
            start=start,
            end=end,
            location=record.location,
            color_hint=record.color_hint or palette.imported,
            external_id=record.external_id,
        )
    return PersonalItem(
        id=record.id,
        title=record.title,
        start=start,
        end=end,
        location=record.location,
        color_hint=record.color_hint or palette.personal,
    )


def app_event_to_item(
    record: AppEventRecord,
    current_user_id: str,
    palette: CalendarPalette | None = None,
) -> AppEventItem:
    palette = palette or _DEFAULT_PALETTE
    is_owner = record.owner_id == current_user_id
    return AppEventItem(
        id=record.id,
        title=record.title,
        start=to_instant(record.start),
        end=to_instant(record.end) if record.end is not None else None,
        location=record.location_name,
        color_hint=palette.owner if is_owner else palette.participant,
        is_owner=is_owner,
    )
