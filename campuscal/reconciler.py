from __future__ import annotations

import logging
from typing import Iterable

from campuscal.errors import ReconcileError, require_user_id
from campuscal.models import PersonalCalendarRecord, ReconcileOutcome
from campuscal.stores import PersonalEventStore

logger = logging.getLogger(__name__)


def _collapse_batch(records: Iterable[PersonalCalendarRecord]) -> list[PersonalCalendarRecord]:
    # Later occurrences of an external id replace earlier ones in place.
    output: list[PersonalCalendarRecord] = []
    positions: dict[str, int] = {}
    for record in records:
        if record.external_id is None:
            output.append(record)
            continue
        if record.external_id in positions:
            output[positions[record.external_id]] = record
            continue
        positions[record.external_id] = len(output)
        output.append(record)
    return output


class ImportDeduplicator:
    def __init__(self, personal_store: PersonalEventStore) -> None:
        self.personal_store = personal_store

    def reconcile(self, user_id: str, new_records: Iterable[PersonalCalendarRecord]) -> ReconcileOutcome:
        """Replace earlier imports of the same external events, then insert the batch.

        Records without an external id are inserted as-is and never cause a
        deletion. A deletion that fails is logged and reported in the outcome;
        failing to read or write the store raises ``ReconcileError``.
        """
        user_id = require_user_id(user_id)
        batch = _collapse_batch(new_records)
        external_ids = {record.external_id for record in batch if record.external_id is not None}

        outcome = ReconcileOutcome(inserted=0, skipped_delete_phase=not external_ids)
        if external_ids:
            try:
                existing = self.personal_store.get_for_user(user_id)
            except Exception as exc:
                raise ReconcileError(f"failed to load existing events for {user_id}: {exc}") from exc

            stale = [
                record
                for record in existing
                if record.external_id is not None and record.external_id in external_ids
            ]
            for record in stale:
                try:
                    self.personal_store.delete(record.id, user_id)
                except Exception as exc:
                    logger.warning(
                        "Failed to delete duplicate event %s for user %s: %s: %s",
                        record.id,
                        user_id,
                        type(exc).__name__,
                        exc,
                    )
                    outcome.failed_deletions.append(record.id)
                    continue
                outcome.deleted.append(record.id)
            if stale:
                logger.debug("Deleted %d duplicate events for user %s", len(outcome.deleted), user_id)

        try:
            self.personal_store.save(batch)
        except Exception as exc:
            raise ReconcileError(f"failed to save {len(batch)} events for {user_id}: {exc}") from exc
        outcome.inserted = len(batch)
        return outcome
