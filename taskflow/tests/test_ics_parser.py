import unittest
from datetime import date, datetime, timezone

from taskflow.date_utils import datetime_to_ms, local_midnight_ms
from taskflow.models import IcsSourceRef
from taskflow.parsers.ics import IcsParseError, parse_ics, parse_ics_datetime, unescape_text, unfold_lines
from taskflow.parsers.webcal import convert_webcal_url

CALENDAR = "\r\n".join([
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "BEGIN:VEVENT",
    "UID:evt-1",
    "SUMMARY:Team sync\\, weekly",
    "DESCRIPTION:Line one\\nLine two that is",
    "  folded",
    "DTSTART:20240115T090000Z",
    "DTEND:20240115T100000Z",
    "STATUS:confirmed",
    "PRIORITY:1",
    "CATEGORIES:Work,Meetings",
    "RRULE:FREQ=WEEKLY",
    "BEGIN:VALARM",
    "TRIGGER:-PT15M",
    "DESCRIPTION:Reminder",
    "END:VALARM",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "SUMMARY:Holiday",
    "DTSTART;VALUE=DATE:20240120",
    "END:VEVENT",
    "BEGIN:VEVENT",
    "SUMMARY:Broken",
    "DTSTART:tomorrow",
    "END:VEVENT",
    "END:VCALENDAR",
])


class IcsParserTests(unittest.TestCase):
    def test_events_are_read(self) -> None:
        source = IcsSourceRef(id="s", name="Work")
        with self.assertLogs("taskflow.parsers.ics", level="WARNING"):
            events = parse_ics(CALENDAR, source)
        self.assertEqual(len(events), 2)

        sync = events[0]
        self.assertEqual(sync.uid, "evt-1")
        self.assertEqual(sync.summary, "Team sync, weekly")
        self.assertEqual(sync.description, "Line one\nLine two that is folded")
        self.assertEqual(sync.dtstart, int(datetime(2024, 1, 15, 9, tzinfo=timezone.utc).timestamp() * 1000))
        self.assertEqual(sync.dtend - sync.dtstart, 3600 * 1000)
        self.assertEqual(sync.status, "CONFIRMED")
        self.assertEqual(sync.priority, 1)
        self.assertEqual(sync.categories, ["Work", "Meetings"])
        self.assertEqual(sync.rrule, "FREQ=WEEKLY")
        self.assertEqual(sync.source, source)
        self.assertFalse(sync.allDay)

    def test_all_day_event_gets_stable_uid(self) -> None:
        with self.assertLogs("taskflow.parsers.ics", level="WARNING"):
            first = parse_ics(CALENDAR)[1]
            second = parse_ics(CALENDAR)[1]
        self.assertTrue(first.allDay)
        self.assertEqual(first.dtstart, local_midnight_ms(date(2024, 1, 20)))
        self.assertEqual(first.uid, second.uid)
        self.assertEqual(len(first.uid), 16)

    def test_rejects_non_calendar_payload(self) -> None:
        with self.assertRaises(IcsParseError):
            parse_ics("<html>not a calendar</html>")

    def test_helpers(self) -> None:
        self.assertEqual(unfold_lines("A:1\r\n B\r\nC:2"), ["A:1B", "C:2"])
        self.assertEqual(unescape_text("a\\;b\\\\c"), "a;b\\c")
        self.assertEqual(
            parse_ics_datetime("20240115T090000", {"TZID": "Europe/Paris"}),
            (datetime_to_ms(datetime(2024, 1, 15, 9)), False),
        )
        self.assertIsNone(parse_ics_datetime("20241340", {}))


class WebcalTests(unittest.TestCase):
    def test_webcal_becomes_https(self) -> None:
        result = convert_webcal_url("webcal://example.com/cal.ics")
        self.assertTrue(result["success"])
        self.assertTrue(result["wasWebcal"])
        self.assertEqual(result["convertedUrl"], "https://example.com/cal.ics")

    def test_loopback_uses_http(self) -> None:
        result = convert_webcal_url("WEBCAL://localhost:8080/cal.ics")
        self.assertEqual(result["convertedUrl"], "http://localhost:8080/cal.ics")

    def test_http_passes_through_and_bad_urls_fail(self) -> None:
        self.assertEqual(convert_webcal_url(" https://x.org/a.ics ")["convertedUrl"], "https://x.org/a.ics")
        self.assertFalse(convert_webcal_url("")["success"])
        self.assertFalse(convert_webcal_url("ftp://x.org/a.ics")["success"])
        self.assertFalse(convert_webcal_url("webcal://")["success"])


if __name__ == "__main__":
    unittest.main()
