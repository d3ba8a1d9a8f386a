"""Tests for RepeatScheduleEngine."""

import unittest
from datetime import time
import sys
from pathlib import Path

# Add src to path so we can import trainalert
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from trainalert.models import AlertConfig, RepeatPattern, RouteResult, RouteSection, Weekday
from trainalert.repeat_schedule import RepeatScheduleEngine

from fakes import MONDAY, at


class TestRepeatScheduleEngine(unittest.TestCase):
    """Test next-occurrence computation for repeating alerts."""

    def setUp(self):
        self.engine = RepeatScheduleEngine()
        self.tuesday = MONDAY.replace(day=20)
        self.wednesday = MONDAY.replace(day=21)

    def test_next_occurrence_skips_to_next_selected_day(self):
        """Monday/Wednesday at 07:55, asked on Tuesday 09:00, gives Wednesday 07:55."""
        config = AlertConfig(repeat_days=Weekday.MONDAY | Weekday.WEDNESDAY)
        result = self.engine.next_occurrence(config, time(7, 55), at("09:00", self.tuesday))
        self.assertEqual(result, at("07:55", self.wednesday))

    def test_later_today_is_next(self):
        result = self.engine.next_occurrence(Weekday.MONDAY, time(7, 55), at("06:00"))
        self.assertEqual(result, at("07:55"))

    def test_time_passed_today_wraps_a_full_week(self):
        """Only Monday selected, asked Monday after the time: next Monday."""
        result = self.engine.next_occurrence(Weekday.MONDAY, time(7, 55), at("08:00"))
        self.assertEqual(result, at("07:55", MONDAY.replace(day=26)))

    def test_exactly_now_is_not_next(self):
        result = self.engine.next_occurrence(Weekday.MONDAY, time(7, 55), at("07:55"))
        self.assertEqual(result.day, 26)

    def test_empty_mask_returns_none(self):
        self.assertIsNone(self.engine.next_occurrence(Weekday.NONE, time(7, 55), at("06:00")))
        self.assertIsNone(self.engine.next_occurrence(AlertConfig(), time(7, 55), at("06:00")))

    def test_inactive_alert_returns_none(self):
        config = AlertConfig(repeat_days=RepeatPattern.DAILY.days(), active=False)
        self.assertIsNone(self.engine.next_occurrence(config, time(7, 55), at("06:00")))

    def test_integer_mask(self):
        result = self.engine.next_occurrence(int(Weekday.WEDNESDAY), time(7, 55), at("06:00"))
        self.assertEqual(result, at("07:55", self.wednesday))

    def test_result_keeps_timezone(self):
        result = self.engine.next_occurrence(Weekday.MONDAY, time(7, 55), at("06:00"))
        self.assertEqual(result.tzinfo, MONDAY.tzinfo)

    def test_rearm_after_firing(self):
        config = AlertConfig(repeat_days=RepeatPattern.WEEKDAYS.days())
        result = self.engine.rearm(config, time(7, 55), at("07:55"))
        self.assertEqual(result, at("07:55", self.tuesday))

    def test_reference_time_of_day(self):
        route = RouteResult([RouteSection("a", "d", "red", at("07:30"), at("08:00"))])
        self.assertEqual(
            RepeatScheduleEngine.reference_time_of_day(route, AlertConfig(lead_minutes=5)),
            time(7, 55),
        )

    def test_repeat_patterns(self):
        self.assertEqual(RepeatPattern.WEEKENDS.days(), Weekday.SATURDAY | Weekday.SUNDAY)
        self.assertEqual(RepeatPattern.CUSTOM.days(Weekday.FRIDAY), Weekday.FRIDAY)
        self.assertEqual(RepeatPattern.NONE.days(), Weekday.NONE)


if __name__ == "__main__":
    unittest.main()
