import unittest
from datetime import date, timedelta

from budget_planner.errors import ProjectionCancelled, ValidationError
from budget_planner.recurrence import Frequency, RecurrencePattern

MONDAY = 0
THURSDAY = 3


class RecurrencePatternTests(unittest.TestCase):
    def test_biweekly_thursdays_in_january(self) -> None:
        pattern = RecurrencePattern(Frequency.BIWEEKLY, 2, day_of_week=THURSDAY)

        occurrences = list(
            pattern.occurrences(date(2026, 1, 1), date(2026, 1, 1), date(2026, 1, 31))
        )

        self.assertEqual(
            occurrences,
            [date(2026, 1, 1), date(2026, 1, 15), date(2026, 1, 29)],
        )

    def test_monthly_day_31_clamps_to_end_of_february(self) -> None:
        pattern = RecurrencePattern.monthly(31)

        non_leap = list(
            pattern.occurrences(date(2025, 1, 31), date(2025, 2, 1), date(2025, 2, 28))
        )
        leap = list(
            pattern.occurrences(date(2024, 1, 31), date(2024, 2, 1), date(2024, 2, 29))
        )

        self.assertEqual(non_leap, [date(2025, 2, 28)])
        self.assertEqual(leap, [date(2024, 2, 29)])

    def test_monthly_clamp_does_not_drift_into_later_months(self) -> None:
        pattern = RecurrencePattern.monthly(31)

        occurrences = list(
            pattern.occurrences(date(2025, 1, 31), date(2025, 1, 1), date(2025, 4, 30))
        )

        self.assertEqual(
            occurrences,
            [date(2025, 1, 31), date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)],
        )

    def test_weekly_aligns_to_day_of_week_after_anchor(self) -> None:
        pattern = RecurrencePattern.weekly(MONDAY)
        anchor = date(2026, 1, 1)

        self.assertEqual(pattern.next_on_or_after(anchor, anchor), date(2026, 1, 5))
        self.assertEqual(pattern.next_on_or_after(anchor, date(2026, 1, 6)), date(2026, 1, 12))

    def test_daily_interval_steps_from_anchor(self) -> None:
        pattern = RecurrencePattern.daily(3)

        self.assertEqual(
            pattern.next_on_or_after(date(2026, 1, 1), date(2026, 1, 5)),
            date(2026, 1, 7),
        )

    def test_quarterly_steps_three_months(self) -> None:
        pattern = RecurrencePattern.quarterly(15)

        occurrences = list(
            pattern.occurrences(date(2026, 1, 10), date(2026, 1, 1), date(2026, 12, 31))
        )

        self.assertEqual(
            occurrences,
            [date(2026, 1, 15), date(2026, 4, 15), date(2026, 7, 15), date(2026, 10, 15)],
        )

    def test_yearly_anchors_to_month_and_clamps_leap_day(self) -> None:
        pattern = RecurrencePattern.yearly(2, 29)

        occurrences = list(
            pattern.occurrences(date(2024, 1, 1), date(2024, 1, 1), date(2026, 12, 31))
        )

        self.assertEqual(
            occurrences,
            [date(2024, 2, 29), date(2025, 2, 28), date(2026, 2, 28)],
        )

    def test_yearly_month_before_anchor_starts_next_year(self) -> None:
        pattern = RecurrencePattern.yearly(3, 15)
        anchor = date(2024, 6, 1)

        self.assertEqual(pattern.next_on_or_after(anchor, anchor), date(2025, 3, 15))

    def test_monthly_interval_skips_anchor_month_when_day_already_passed(self) -> None:
        pattern = RecurrencePattern.monthly(5, interval=2)
        anchor = date(2026, 1, 20)

        self.assertEqual(pattern.next_on_or_after(anchor, anchor), date(2026, 3, 5))
        self.assertEqual(pattern.next_on_or_after(anchor, date(2026, 3, 6)), date(2026, 5, 5))

    def test_next_on_or_after_never_returns_earlier_date(self) -> None:
        anchor = date(2024, 1, 31)
        patterns = [
            RecurrencePattern.daily(),
            RecurrencePattern.daily(5),
            RecurrencePattern.weekly(THURSDAY, interval=3),
            RecurrencePattern.biweekly(MONDAY),
            RecurrencePattern.monthly(31),
            RecurrencePattern.monthly(30, interval=5),
            RecurrencePattern.quarterly(29),
            RecurrencePattern.yearly(2, 29, interval=2),
        ]
        for pattern in patterns:
            probe = date(2023, 12, 1)
            while probe < date(2027, 1, 1):
                result = pattern.next_on_or_after(anchor, probe)
                self.assertGreaterEqual(result, probe, msg=str(pattern))
                self.assertGreaterEqual(result, anchor, msg=str(pattern))
                probe += timedelta(days=11)

    def test_rejects_invalid_interval(self) -> None:
        with self.assertRaises(ValidationError):
            RecurrencePattern.daily(0)
        with self.assertRaises(ValidationError):
            RecurrencePattern(Frequency.BIWEEKLY, 1, day_of_week=THURSDAY)

    def test_rejects_out_of_range_anchors(self) -> None:
        with self.assertRaises(ValidationError):
            RecurrencePattern.monthly(32)
        with self.assertRaises(ValidationError):
            RecurrencePattern.monthly(0)
        with self.assertRaises(ValidationError):
            RecurrencePattern.weekly(7)
        with self.assertRaises(ValidationError):
            RecurrencePattern.yearly(13, 1)

    def test_rejects_inconsistent_anchor_combinations(self) -> None:
        with self.assertRaises(ValidationError):
            RecurrencePattern(Frequency.WEEKLY)
        with self.assertRaises(ValidationError):
            RecurrencePattern(Frequency.MONTHLY, day_of_month=1, day_of_week=MONDAY)
        with self.assertRaises(ValidationError):
            RecurrencePattern(Frequency.YEARLY, day_of_month=1)

    def test_parses_frequency_strings(self) -> None:
        pattern = RecurrencePattern("Bi-Weekly", 2, day_of_week=THURSDAY)

        self.assertEqual(pattern.frequency, Frequency.BIWEEKLY)
        with self.assertRaises(ValidationError):
            RecurrencePattern("hourly")

    def test_describe(self) -> None:
        self.assertEqual(RecurrencePattern.biweekly(THURSDAY).describe(), "Every 2 weeks on Thursday")
        self.assertEqual(str(RecurrencePattern.monthly(31)), "Monthly on day 31")
        self.assertEqual(RecurrencePattern.daily(3).describe(), "Every 3 days")
        self.assertEqual(RecurrencePattern.yearly(4, 15).describe(), "Yearly on 4/15")

    def test_occurrence_walk_honours_abort_callback(self) -> None:
        pattern = RecurrencePattern.daily()

        with self.assertRaises(ProjectionCancelled):
            list(
                pattern.occurrences(
                    date(2026, 1, 1),
                    date(2026, 1, 1),
                    date(2030, 1, 1),
                    should_abort=lambda: True,
                )
            )


if __name__ == "__main__":
    unittest.main()
