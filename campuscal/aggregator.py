from __future__ import annotations

import logging

from campuscal.conversion import app_event_to_item, personal_to_item
from campuscal.errors import AggregationError, require_user_id
from campuscal.models import AppEventRecord, CalendarItem, CalendarPalette
from campuscal.stores import AppEventStore, PersonalEventStore

logger = logging.getLogger(__name__)


class EventAggregator:
    """Merges personal, imported and application events into one sorted list."""

    def __init__(
        self,
        personal_store: PersonalEventStore,
        app_event_store: AppEventStore,
        palette: CalendarPalette | None = None,
    ) -> None:
        self.personal_store = personal_store
        self.app_event_store = app_event_store
        self.palette = palette

    def aggregate(self, user_id: str) -> list[CalendarItem]:
        """Return every calendar item of ``user_id`` ordered by start.

        Failing to read either store raises ``AggregationError``. A joined
        event id that cannot be resolved is logged and left out.
        """
        user_id = require_user_id(user_id)

        try:
            personal_records = self.personal_store.get_for_user(user_id)
        except Exception as exc:
            raise AggregationError(f"failed to load personal events for {user_id}: {exc}") from exc

        app_records = self._collect_app_events(user_id)

        personal_items = [personal_to_item(record, self.palette) for record in personal_records]
        app_items = [app_event_to_item(record, user_id, self.palette) for record in app_records]

        # sorted() is stable, so personal items stay ahead of app events at equal starts.
        items = sorted(personal_items + app_items, key=lambda item: item.start)
        logger.debug(
            "Aggregated %d personal and %d app events for user %s",
            len(personal_items),
            len(app_items),
            user_id,
        )
        return items

    def _collect_app_events(self, user_id: str) -> list[AppEventRecord]:
        try:
            joined_ids = list(self.app_event_store.get_joined_ids(user_id))
            visible = self.app_event_store.get_all_visible()
        except Exception as exc:
            raise AggregationError(f"failed to load app events for {user_id}: {exc}") from exc

        combined: dict[str, AppEventRecord] = {}
        for record in visible:
            if record.owner_id == user_id and record.id not in combined:
                combined[record.id] = record

        for event_id in joined_ids:
            if event_id in combined:
                continue
            resolved = self._resolve(event_id)
            if resolved is not None:
                combined[event_id] = resolved
        return list(combined.values())

    def _resolve(self, event_id: str) -> AppEventRecord | None:
        try:
            record = self.app_event_store.get_by_id(event_id)
        except Exception as exc:
            logger.warning("Skipping joined event %s: lookup failed (%s: %s)", event_id, type(exc).__name__, exc)
            return None
        if record is None:
            logger.warning("Skipping joined event %s: not found", event_id)
        return record
