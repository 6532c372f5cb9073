import unittest

from plannersync.collection_selector import select_target_collection
from plannersync.errors import DiscoveryError
from plannersync.models import CalendarInfo


def _cal(name: str, components: list[str] | None = None, read_only: bool = False) -> CalendarInfo:
    url = f"https://dav.example.com/cal/{name}/"
    return CalendarInfo(calendar_id=url, name=name, url=url, components=components, read_only=read_only)


class SelectTargetCollectionTests(unittest.TestCase):
    def test_prefers_first_writable_event_calendar(self) -> None:
        calendars = [
            _cal("holidays", ["VEVENT"], read_only=True),
            _cal("todo", ["VTODO"]),
            _cal("work", ["VEVENT", "VTODO"]),
            _cal("home", ["VEVENT"]),
        ]
        self.assertEqual(select_target_collection(calendars).name, "work")

    def test_missing_component_set_counts_as_event_capable(self) -> None:
        calendars = [_cal("todo", ["VTODO"]), _cal("plain")]
        self.assertEqual(select_target_collection(calendars).name, "plain")

    def test_falls_back_to_any_writable(self) -> None:
        calendars = [_cal("shared", ["VEVENT"], read_only=True), _cal("todo", ["VTODO"])]
        self.assertEqual(select_target_collection(calendars).name, "todo")

    def test_falls_back_to_first_when_all_read_only(self) -> None:
        calendars = [_cal("a", read_only=True), _cal("b", read_only=True)]
        self.assertEqual(select_target_collection(calendars).name, "a")

    def test_no_calendars_is_fatal(self) -> None:
        with self.assertRaises(DiscoveryError):
            select_target_collection([])


if __name__ == "__main__":
    unittest.main()
