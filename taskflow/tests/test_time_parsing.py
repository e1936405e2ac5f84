import unittest
from datetime import date

from taskflow.services.time_parsing import (
    TimeParsingService,
    classify_time_context,
    parse_dates,
    parse_time_component,
)


class ParseTimeComponentTests(unittest.TestCase):
    def test_meridiem_conversion(self) -> None:
        afternoon = parse_time_component("2:30 pm")
        self.assertEqual((afternoon.hour, afternoon.minute), (14, 30))
        self.assertEqual(parse_time_component("12:00 am").hour, 0)
        self.assertEqual(parse_time_component("12:15 PM").hour, 12)
        self.assertEqual(parse_time_component("9:00", meridiem="pm").hour, 21)

    def test_invalid_values(self) -> None:
        self.assertIsNone(parse_time_component("13:00 pm"))
        self.assertIsNone(parse_time_component("24:00"))
        self.assertIsNone(parse_time_component("noon"))

    def test_seconds_are_kept(self) -> None:
        component = parse_time_component("08:05:09")
        self.assertEqual((component.hour, component.minute, component.second), (8, 5, 9))


class ClassifyTimeContextTests(unittest.TestCase):
    def test_keywords(self) -> None:
        text = "start at 9:00"
        self.assertEqual(classify_time_context(text, "9:00", text.index("9:00")), "start")
        text = "Meeting at 14:30"
        self.assertEqual(classify_time_context(text, "14:30", text.index("14:30")), "scheduled")
        text = "Report due 17:00"
        self.assertEqual(classify_time_context(text, "17:00", text.index("17:00")), "due")
        text = "Lunch @ 12:00"
        self.assertEqual(classify_time_context(text, "12:00", text.index("12:00")), "scheduled")

    def test_keywords_match_whole_words_only(self) -> None:
        text = "Bonus 10:00"
        self.assertEqual(classify_time_context(text, "10:00", text.index("10:00")), "due")


class TimeParsingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = TimeParsingService(cache_size=2)

    def test_single_times_by_context(self) -> None:
        scheduled = self.service.extract_time_components("Meeting at 14:30")
        self.assertEqual(scheduled.scheduledTime.hour, 14)
        self.assertIsNone(scheduled.dueTime)

        due = self.service.extract_time_components("Call 3:00 PM")
        self.assertEqual((due.dueTime.hour, due.dueTime.minute), (15, 0))

    def test_24h_range(self) -> None:
        components = self.service.extract_time_components("Workshop 9:00-11:00")
        self.assertEqual(components.startTime.hour, 9)
        self.assertEqual(components.endTime.hour, 11)
        self.assertTrue(components.startTime.isRange)
        self.assertEqual(components.startTime.rangePartner.hour, 11)
        self.assertIsNone(components.dueTime)

    def test_12h_range_shares_or_crosses_meridiem(self) -> None:
        morning = self.service.extract_time_components("Call 9:00-11:00 am")
        self.assertEqual((morning.startTime.hour, morning.endTime.hour), (9, 11))

        lunch = self.service.extract_time_components("Lunch 11:00-1:00 pm")
        self.assertEqual((lunch.startTime.hour, lunch.endTime.hour), (11, 13))

    def test_cache_returns_copies(self) -> None:
        first = self.service.extract_time_components("Meeting at 14:30")
        first.scheduledTime.hour = 3
        second = self.service.extract_time_components("Meeting at 14:30")
        self.assertEqual(second.scheduledTime.hour, 14)
        self.assertEqual(self.service.cache_size_used, 1)

        self.service.extract_time_components("a 1:00")
        self.service.extract_time_components("b 2:00")
        self.assertEqual(self.service.cache_size_used, 2)
        self.service.clear_cache()
        self.assertEqual(self.service.cache_size_used, 0)

    def test_has_time_components(self) -> None:
        self.assertTrue(self.service.has_time_components("due 17:00"))
        self.assertFalse(self.service.has_time_components("plain text"))


class ParseDatesTests(unittest.TestCase):
    # A Wednesday
    REFERENCE = date(2024, 1, 10)

    def test_explicit_formats(self) -> None:
        hits = parse_dates("2024-01-15, 01/16/2024 or 17.01.2024", self.REFERENCE)
        self.assertEqual([h["date"] for h in hits], [date(2024, 1, 15), date(2024, 1, 16), date(2024, 1, 17)])
        self.assertEqual(hits[0]["index"], 0)

    def test_relative_and_weekday(self) -> None:
        hits = parse_dates("tomorrow or friday", self.REFERENCE)
        self.assertEqual([h["date"] for h in hits], [date(2024, 1, 11), date(2024, 1, 12)])
        # Same weekday resolves to the following week
        self.assertEqual(parse_dates("wednesday", self.REFERENCE)[0]["date"], date(2024, 1, 17))

    def test_invalid_calendar_dates_are_skipped(self) -> None:
        self.assertEqual(parse_dates("2024-02-30", self.REFERENCE), [])


if __name__ == "__main__":
    unittest.main()
