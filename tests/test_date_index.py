import unittest
from datetime import date, datetime, timedelta, timezone
from unittest import mock

from campuscal.aggregator import EventAggregator
from campuscal.date_index import DateKey, build_index, date_key, dates_with_items, items_on_date
from campuscal.models import AppEventItem, AppEventRecord, PersonalCalendarRecord, PersonalItem


UTC_PLUS_2 = timezone(timedelta(hours=2))


def _item(item_id: str, start: datetime) -> PersonalItem:
    return PersonalItem(id=item_id, title=item_id, start=start)


class DateIndexTests(unittest.TestCase):
    def setUp(self) -> None:
        self.items = [
            _item("a", datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)),
            AppEventItem(id="b", title="b", start=datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)),
            _item("c", datetime(2026, 3, 3, 12, 0, tzinfo=timezone.utc)),
            _item("d", datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)),
        ]

    def test_groups_by_day_preserving_input_order(self) -> None:
        index = build_index(self.items, timezone.utc)

        monday = items_on_date(index, date(2026, 3, 2), timezone.utc)
        self.assertEqual([item.id for item in monday], ["a", "b", "d"])
        self.assertEqual([item.id for item in items_on_date(index, DateKey(2026, 3, 3))], ["c"])

    def test_every_item_is_found_exactly_once_on_its_day(self) -> None:
        index = build_index(self.items, timezone.utc)

        for item in self.items:
            found = items_on_date(index, item.start, timezone.utc)
            self.assertEqual(found.count(item), 1)
        self.assertEqual(sum(len(bucket) for bucket in index.values()), len(self.items))

    def test_missing_date_returns_empty_list(self) -> None:
        index = build_index(self.items, timezone.utc)
        self.assertEqual(items_on_date(index, date(2030, 1, 1)), [])
        self.assertEqual(items_on_date({}, date(2026, 3, 2)), [])

    def test_naive_datetimes_are_bucketed_as_utc(self) -> None:
        naive_late = datetime(2026, 3, 2, 23, 30)

        self.assertEqual(date_key(naive_late, timezone.utc), DateKey(2026, 3, 2))
        self.assertEqual(date_key(naive_late, UTC_PLUS_2), DateKey(2026, 3, 3))
        index = build_index(self.items, timezone.utc)
        self.assertEqual([item.id for item in items_on_date(index, naive_late, timezone.utc)], ["a", "b", "d"])

    def test_every_aggregated_item_is_bucketed(self) -> None:
        personal_store = mock.Mock()
        personal_store.get_for_user.return_value = [
            PersonalCalendarRecord(id="gym", user_id="u1", title="Gym", start=datetime(2026, 3, 2, 7, 0)),
            PersonalCalendarRecord(
                id="lecture",
                user_id="u1",
                title="Lecture",
                start=datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc),
                external_id="ext1",
            ),
        ]
        app_store = mock.Mock()
        app_store.get_all_visible.return_value = [
            AppEventRecord(
                id="fair",
                title="Career fair",
                start=datetime(2026, 3, 4, 10, 0, tzinfo=timezone.utc),
                owner_id="u1",
            )
        ]
        app_store.get_joined_ids.return_value = ["talk"]
        app_store.get_by_id.return_value = AppEventRecord(
            id="talk",
            title="Guest talk",
            start=datetime(2026, 3, 3, 0, 15, tzinfo=timezone.utc),
            owner_id="org-1",
        )
        items = EventAggregator(personal_store, app_store).aggregate("u1")

        for tz in (timezone.utc, UTC_PLUS_2):
            index = build_index(items, tz)
            with self.subTest(tz=tz):
                for item in items:
                    self.assertEqual(items_on_date(index, item.start, tz).count(item), 1)
                self.assertEqual(sum(len(bucket) for bucket in index.values()), len(items))

    def test_dates_with_items(self) -> None:
        index = build_index(self.items, timezone.utc)
        self.assertEqual(dates_with_items(index), {DateKey(2026, 3, 2), DateKey(2026, 3, 3)})

    def test_buckets_use_the_callers_local_calendar(self) -> None:
        late = _item("late", datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc))

        self.assertEqual(date_key(late.start, timezone.utc), DateKey(2026, 3, 2))
        self.assertEqual(date_key(late.start, UTC_PLUS_2), DateKey(2026, 3, 3))

        index = build_index([late], UTC_PLUS_2)
        self.assertEqual(items_on_date(index, date(2026, 3, 3)), [late])
        self.assertEqual(items_on_date(index, date(2026, 3, 2)), [])

    def test_returned_list_is_a_copy(self) -> None:
        index = build_index(self.items, timezone.utc)
        items_on_date(index, date(2026, 3, 2)).clear()
        self.assertEqual(len(items_on_date(index, date(2026, 3, 2))), 3)

    def test_date_key_to_date(self) -> None:
        self.assertEqual(DateKey(2026, 3, 2).to_date(), date(2026, 3, 2))


if __name__ == "__main__":
    unittest.main()
