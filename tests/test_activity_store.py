import json
import tempfile
import unittest
from datetime import date, datetime, timezone
from pathlib import Path

import yaml

from plannersync.activity_store import ActivityStore, activity_from_dict, parse_instant, resolve_timezone
from plannersync.errors import ConfigurationError


class ParseInstantTests(unittest.TestCase):
    def test_clock_time_uses_day_and_zone(self) -> None:
        tz = resolve_timezone("Europe/Berlin")
        parsed = parse_instant("09:30", date(2026, 1, 5), tz)
        self.assertEqual(parsed, datetime(2026, 1, 5, 8, 30, tzinfo=timezone.utc))

    def test_iso_instants(self) -> None:
        utc = timezone.utc
        self.assertEqual(
            parse_instant("2026-01-05T09:00:00.000Z", None, utc),
            datetime(2026, 1, 5, 9, 0, tzinfo=utc),
        )
        self.assertEqual(
            parse_instant("2026-01-05T11:00:00+02:00", None, utc),
            datetime(2026, 1, 5, 9, 0, tzinfo=utc),
        )

    def test_unusable_values(self) -> None:
        utc = timezone.utc
        self.assertIsNone(parse_instant("09:30", None, utc))
        self.assertIsNone(parse_instant("25:00", date(2026, 1, 5), utc))
        self.assertIsNone(parse_instant("tomorrow-ish", None, utc))
        self.assertIsNone(parse_instant("", None, utc))
        self.assertIsNone(parse_instant(None, None, utc))

    def test_unknown_timezone(self) -> None:
        with self.assertRaises(ConfigurationError):
            resolve_timezone("Mars/Olympus_Mons")


class ActivityFromDictTests(unittest.TestCase):
    def test_planner_field_names(self) -> None:
        activity = activity_from_dict(
            {
                "id": "t1",
                "title": "Design review",
                "description": "Bring notes",
                "date": "2026-01-05",
                "startTime": "09:00",
                "endTime": "10:00",
                "hasTime": True,
            }
        )
        self.assertEqual(activity.activity_id, "t1")
        self.assertEqual(activity.day, date(2026, 1, 5))
        self.assertEqual(activity.start, datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))
        self.assertEqual(activity.end, datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc))
        self.assertTrue(activity.is_timed)

    def test_snake_case_and_untimed(self) -> None:
        activity = activity_from_dict({"id": "t2", "start": "2026-01-05T09:00:00Z", "has_time": False})
        self.assertFalse(activity.is_timed)

    def test_bad_time_is_dropped(self) -> None:
        activity = activity_from_dict({"id": "t3", "date": "2026-01-05", "startTime": "soon"})
        self.assertIsNone(activity.start)
        self.assertFalse(activity.is_timed)

    def test_missing_id(self) -> None:
        self.assertIsNone(activity_from_dict({"title": "orphan"}))


class ActivityStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_reads_persisted_store_shape_in_order(self) -> None:
        path = self.root / "planner.json"
        payload = {
            "state": {
                "tasks": [
                    {"id": "b", "title": "Second", "date": "2026-01-05", "startTime": "14:00"},
                    {"title": "no id"},
                    "not a task",
                    {"id": "a", "title": "First", "date": "2026-01-05", "startTime": "09:00"},
                ]
            },
            "version": 0,
        }
        path.write_text(json.dumps(payload), encoding="utf-8")

        activities = ActivityStore(path).load()

        self.assertEqual([activity.activity_id for activity in activities], ["b", "a"])

    def test_reads_yaml_task_list(self) -> None:
        path = self.root / "tasks.yaml"
        path.write_text(
            yaml.safe_dump({"tasks": [{"id": "t1", "date": "2026-07-01", "startTime": "09:00"}]}),
            encoding="utf-8",
        )
        (activity,) = ActivityStore(path).load("America/New_York")
        self.assertEqual(activity.start, datetime(2026, 7, 1, 13, 0, tzinfo=timezone.utc))

    def test_bare_list(self) -> None:
        path = self.root / "tasks.json"
        path.write_text(json.dumps([{"id": "x"}]), encoding="utf-8")
        self.assertEqual(len(ActivityStore(path).load()), 1)

    def test_missing_file_is_empty(self) -> None:
        self.assertEqual(ActivityStore(self.root / "absent.json").load(), [])


if __name__ == "__main__":
    unittest.main()
