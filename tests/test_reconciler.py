import unittest
from datetime import datetime, timezone
from unittest import mock

from campuscal.aggregator import EventAggregator
from campuscal.errors import InvalidUserIdError, ReconcileError
from campuscal.models import PersonalCalendarRecord
from campuscal.reconciler import ImportDeduplicator


class _MemoryPersonalStore:
    def __init__(self, records: list[PersonalCalendarRecord] | None = None) -> None:
        self.records: dict[str, PersonalCalendarRecord] = {record.id: record for record in records or []}
        self.failing_deletes: set[str] = set()
        self.save_calls = 0

    def get_for_user(self, user_id: str) -> list[PersonalCalendarRecord]:
        return [record for record in self.records.values() if record.user_id == user_id]

    def save(self, records: list[PersonalCalendarRecord]) -> None:
        self.save_calls += 1
        for record in records:
            self.records[record.id] = record

    def delete(self, record_id: str, user_id: str) -> None:
        if record_id in self.failing_deletes:
            raise RuntimeError("delete rejected")
        record = self.records.get(record_id)
        if record is not None and record.user_id == user_id:
            del self.records[record_id]


def _record(
    record_id: str,
    title: str,
    start: datetime,
    external_id: str | None = None,
    end: datetime | None = None,
    user_id: str = "u1",
) -> PersonalCalendarRecord:
    return PersonalCalendarRecord(
        id=record_id,
        user_id=user_id,
        title=title,
        start=start,
        end=end,
        source_tag="Imported" if external_id else "manual",
        external_id=external_id,
    )


MON_0700 = datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)
MON_0800 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
MON_0900 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
MON_0930 = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _snapshot(store: _MemoryPersonalStore) -> list[tuple[str, str | None, str]]:
    return sorted((record.id, record.external_id, record.title) for record in store.records.values())


class ImportDeduplicatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = _MemoryPersonalStore([_record("gym", "Gym", MON_0700, end=MON_0800)])
        self.deduplicator = ImportDeduplicator(self.store)

    def test_reimport_replaces_previous_occurrence(self) -> None:
        first = self.deduplicator.reconcile("u1", [_record("imp-1", "Lecture", MON_0900, "ext1")])
        self.assertEqual(first.inserted, 1)
        self.assertEqual(first.deleted, [])
        self.assertEqual(len(self.store.records), 2)

        second = self.deduplicator.reconcile(
            "u1", [_record("imp-2", "Lecture (updated)", MON_0930, "ext1")]
        )

        self.assertEqual(second.deleted, ["imp-1"])
        app_store = mock.Mock()
        app_store.get_joined_ids.return_value = []
        app_store.get_all_visible.return_value = []
        items = EventAggregator(self.store, app_store).aggregate("u1")
        self.assertEqual(len(items), 2)
        self.assertEqual([item.title for item in items], ["Gym", "Lecture (updated)"])
        self.assertEqual(items[1].start, MON_0930)
        self.assertEqual(items[1].kind, "imported")

    def test_reconciling_same_batch_twice_is_idempotent(self) -> None:
        batch = [
            _record("imp-1", "Lecture", MON_0900, "ext1"),
            _record("imp-2", "Lab", MON_0930, "ext2"),
        ]
        once = _MemoryPersonalStore()
        ImportDeduplicator(once).reconcile("u1", batch)

        twice = _MemoryPersonalStore()
        ImportDeduplicator(twice).reconcile("u1", batch)
        ImportDeduplicator(twice).reconcile("u1", batch)

        self.assertEqual(_snapshot(once), _snapshot(twice))
        external_ids = [record.external_id for record in twice.records.values()]
        self.assertEqual(len(external_ids), len(set(external_ids)))

    def test_batch_without_external_ids_skips_delete_phase(self) -> None:
        store = mock.Mock()
        outcome = ImportDeduplicator(store).reconcile("u1", [_record("m1", "Study", MON_0900)])

        self.assertTrue(outcome.skipped_delete_phase)
        self.assertEqual(outcome.inserted, 1)
        store.get_for_user.assert_not_called()
        store.delete.assert_not_called()
        store.save.assert_called_once()

    def test_manual_records_are_never_deleted(self) -> None:
        self.store.save([_record("manual-lecture", "Lecture", MON_0900)])

        self.deduplicator.reconcile("u1", [_record("imp-1", "Lecture", MON_0900, "ext1")])

        self.assertIn("manual-lecture", self.store.records)
        self.assertIn("gym", self.store.records)

    def test_other_users_imports_are_untouched(self) -> None:
        self.store.save([_record("theirs", "Lecture", MON_0900, "ext1", user_id="u2")])

        outcome = self.deduplicator.reconcile("u1", [_record("imp-1", "Lecture", MON_0900, "ext1")])

        self.assertEqual(outcome.deleted, [])
        self.assertIn("theirs", self.store.records)

    def test_failed_deletion_does_not_abort_batch(self) -> None:
        self.store.save(
            [
                _record("old-1", "Lecture", MON_0900, "ext1"),
                _record("old-2", "Lab", MON_0930, "ext2"),
            ]
        )
        self.store.failing_deletes.add("old-1")

        with self.assertLogs("campuscal.reconciler", level="WARNING"):
            outcome = self.deduplicator.reconcile(
                "u1",
                [_record("new-1", "Lecture", MON_0900, "ext1"), _record("new-2", "Lab", MON_0930, "ext2")],
            )

        self.assertEqual(outcome.failed_deletions, ["old-1"])
        self.assertEqual(outcome.deleted, ["old-2"])
        self.assertEqual(outcome.inserted, 2)
        self.assertIn("new-1", self.store.records)
        self.assertNotIn("old-2", self.store.records)

    def test_duplicate_external_ids_in_batch_keep_last(self) -> None:
        outcome = self.deduplicator.reconcile(
            "u1",
            [
                _record("a", "Lecture v1", MON_0900, "ext1"),
                _record("m", "Manual", MON_0800),
                _record("b", "Lecture v2", MON_0930, "ext1"),
            ],
        )

        self.assertEqual(outcome.inserted, 2)
        imported = [record for record in self.store.records.values() if record.external_id == "ext1"]
        self.assertEqual([record.title for record in imported], ["Lecture v2"])

    def test_save_failure_raises(self) -> None:
        store = mock.Mock()
        store.get_for_user.return_value = []
        store.save.side_effect = ConnectionError("offline")

        with self.assertRaises(ReconcileError):
            ImportDeduplicator(store).reconcile("u1", [_record("imp-1", "Lecture", MON_0900, "ext1")])

    def test_existing_fetch_failure_raises(self) -> None:
        store = mock.Mock()
        store.get_for_user.side_effect = ConnectionError("offline")

        with self.assertRaises(ReconcileError):
            ImportDeduplicator(store).reconcile("u1", [_record("imp-1", "Lecture", MON_0900, "ext1")])
        store.save.assert_not_called()

    def test_rejects_blank_user_id(self) -> None:
        with self.assertRaises(InvalidUserIdError):
            self.deduplicator.reconcile("", [])


if __name__ == "__main__":
    unittest.main()
