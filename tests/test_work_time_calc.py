from datetime import date, timedelta
from decimal import Decimal
import unittest
from zoneinfo import ZoneInfo

from app.models import OvertimeReportStatus
from app.services.work_time_calc import (
    WorkInterval,
    calculate_daily_hours,
    classify_overtime_status,
    late_night_seconds,
    month_bounds,
    pair_punches,
    round_hours,
    seconds_to_hours,
    sum_hour_totals,
)
from app.settings import OvertimeThresholds
from batch_fakes import daily_row, punch, utc


class WorkTimeCalcTests(unittest.TestCase):
    def test_wednesday_nine_to_six_is_one_hour_overtime(self) -> None:
        intervals = [WorkInterval(start=utc(2026, 10, 21, 9), end=utc(2026, 10, 21, 18))]

        hours = calculate_daily_hours(intervals, is_holiday=False, tz=ZoneInfo("UTC"))

        self.assertEqual(hours.total_hours, Decimal("9.00"))
        self.assertEqual(hours.overtime_hours, Decimal("1.00"))
        self.assertEqual(hours.late_night_hours, Decimal("0.00"))
        self.assertEqual(hours.holiday_hours, Decimal("0.00"))

    def test_short_day_has_no_overtime(self) -> None:
        intervals = [WorkInterval(start=utc(2026, 10, 21, 9), end=utc(2026, 10, 21, 15, 30))]

        hours = calculate_daily_hours(intervals, is_holiday=False, tz=ZoneInfo("UTC"))

        self.assertEqual(hours.total_hours, Decimal("6.50"))
        self.assertEqual(hours.overtime_hours, Decimal("0.00"))

    def test_holiday_hours_equal_total(self) -> None:
        intervals = [WorkInterval(start=utc(2026, 10, 24, 10), end=utc(2026, 10, 24, 14))]

        hours = calculate_daily_hours(intervals, is_holiday=True, tz=ZoneInfo("UTC"))

        self.assertEqual(hours.holiday_hours, hours.total_hours)
        self.assertEqual(hours.holiday_hours, Decimal("4.00"))

    def test_custom_standard_daily_hours(self) -> None:
        intervals = [WorkInterval(start=utc(2026, 10, 21, 9), end=utc(2026, 10, 21, 18))]

        hours = calculate_daily_hours(
            intervals,
            is_holiday=False,
            standard_daily_hours=Decimal("7.50"),
            tz=ZoneInfo("UTC"),
        )

        self.assertEqual(hours.overtime_hours, Decimal("1.50"))

    def test_total_rounds_half_up_to_two_decimals(self) -> None:
        # 20 minutes and 18 seconds = 0.338333 h; 0.005 h = 18 seconds exactly.
        self.assertEqual(seconds_to_hours(20 * 60 + 18), Decimal("0.34"))
        self.assertEqual(seconds_to_hours(18), Decimal("0.01"))
        self.assertEqual(seconds_to_hours(17), Decimal("0.00"))
        self.assertEqual(round_hours(Decimal("2.345")), Decimal("2.35"))

    def test_pair_punches_skips_unmatched_events(self) -> None:
        events = [
            punch(1, 7, "out", utc(2026, 10, 21, 1)),
            punch(2, 7, "in", utc(2026, 10, 21, 9)),
            punch(3, 7, "in", utc(2026, 10, 21, 9, 5)),
            punch(4, 7, "out", utc(2026, 10, 21, 12)),
            punch(5, 7, "in", utc(2026, 10, 21, 13)),
            punch(6, 7, "out", utc(2026, 10, 21, 17)),
        ]

        intervals = pair_punches(list(reversed(events)))

        self.assertEqual(
            intervals,
            [
                WorkInterval(start=utc(2026, 10, 21, 9, 5), end=utc(2026, 10, 21, 12)),
                WorkInterval(start=utc(2026, 10, 21, 13), end=utc(2026, 10, 21, 17)),
            ],
        )

    def test_pair_punches_lone_in_gives_nothing(self) -> None:
        self.assertEqual(pair_punches([punch(1, 7, "in", utc(2026, 10, 21, 9))]), [])

    def test_late_night_zero_outside_windows(self) -> None:
        self.assertEqual(late_night_seconds(utc(2026, 10, 21, 5), utc(2026, 10, 21, 22), ZoneInfo("UTC")), 0)

    def test_late_night_window_boundaries_are_exact(self) -> None:
        tz = ZoneInfo("UTC")
        self.assertEqual(late_night_seconds(utc(2026, 10, 21, 21), utc(2026, 10, 21, 22, 1), tz), 60)
        self.assertEqual(late_night_seconds(utc(2026, 10, 21, 4, 59), utc(2026, 10, 21, 6), tz), 60)

    def test_late_night_across_midnight(self) -> None:
        seconds = late_night_seconds(utc(2026, 10, 21, 20), utc(2026, 10, 22, 6), ZoneInfo("UTC"))

        # 22:00-24:00 plus 00:00-05:00
        self.assertEqual(seconds, 7 * 3600)

    def test_late_night_uses_local_wall_clock(self) -> None:
        # 13:00-15:00 UTC is 22:00-24:00 in Tokyo.
        seconds = late_night_seconds(utc(2026, 10, 21, 13), utc(2026, 10, 21, 15), ZoneInfo("Asia/Tokyo"))

        self.assertEqual(seconds, 2 * 3600)

    def test_late_night_follows_wall_clock_on_fall_back_night(self) -> None:
        # New York leaves DST at 06:00 UTC: 00:30 EDT to 04:30 EST is five real hours.
        start = utc(2026, 11, 1, 4, 30)
        end = utc(2026, 11, 1, 9, 30)
        tz = ZoneInfo("America/New_York")

        hours = calculate_daily_hours([WorkInterval(start=start, end=end)], is_holiday=False, tz=tz)

        self.assertEqual(late_night_seconds(start, end, tz), 4 * 3600)
        self.assertEqual(hours.total_hours, Decimal("5.00"))
        self.assertEqual(hours.late_night_hours, Decimal("4.00"))

    def test_late_night_multi_day_span(self) -> None:
        start = utc(2026, 10, 21, 0)
        seconds = late_night_seconds(start, start + timedelta(days=2), ZoneInfo("UTC"))

        self.assertEqual(seconds, 2 * 7 * 3600)

    def test_cross_midnight_interval_counts_full_span(self) -> None:
        intervals = [WorkInterval(start=utc(2026, 10, 21, 21), end=utc(2026, 10, 22, 3))]

        hours = calculate_daily_hours(intervals, is_holiday=False, tz=ZoneInfo("UTC"))

        self.assertEqual(hours.total_hours, Decimal("6.00"))
        self.assertEqual(hours.late_night_hours, Decimal("5.00"))

    def test_monthly_totals_from_two_daily_rows(self) -> None:
        rows = [
            daily_row(7, date(2026, 10, 1), total_hours=Decimal("8.00"), overtime_hours=Decimal("1.00")),
            daily_row(7, date(2026, 10, 2), total_hours=Decimal("7.50"), overtime_hours=Decimal("0.00")),
        ]

        totals = sum_hour_totals(rows)

        self.assertEqual(totals.total_hours, Decimal("15.50"))
        self.assertEqual(totals.overtime_hours, Decimal("1.00"))
        self.assertEqual(totals.late_night_hours, Decimal("0.00"))
        self.assertEqual(totals.holiday_hours, Decimal("0.00"))

    def test_classification_thresholds(self) -> None:
        zero = Decimal("0")
        self.assertEqual(classify_overtime_status(Decimal("46"), zero, zero), OvertimeReportStatus.CONFIRMED)
        self.assertEqual(classify_overtime_status(Decimal("5"), zero, zero), OvertimeReportStatus.DRAFT)
        self.assertEqual(classify_overtime_status(zero, zero, zero), OvertimeReportStatus.APPROVED)

    def test_classification_boundaries_are_strict(self) -> None:
        zero = Decimal("0")
        self.assertEqual(classify_overtime_status(Decimal("45.00"), zero, zero), OvertimeReportStatus.DRAFT)
        self.assertEqual(classify_overtime_status(zero, Decimal("20.01"), zero), OvertimeReportStatus.CONFIRMED)
        self.assertEqual(classify_overtime_status(zero, zero, Decimal("15.01")), OvertimeReportStatus.CONFIRMED)
        self.assertEqual(classify_overtime_status(zero, zero, Decimal("0.01")), OvertimeReportStatus.DRAFT)

    def test_classification_uses_configured_thresholds(self) -> None:
        thresholds = OvertimeThresholds(overtime_hours=Decimal("10.00"))

        status = classify_overtime_status(Decimal("11"), Decimal("0"), Decimal("0"), thresholds)

        self.assertEqual(status, OvertimeReportStatus.CONFIRMED)

    def test_month_bounds(self) -> None:
        self.assertEqual(month_bounds(date(2026, 2, 14)), (date(2026, 2, 1), date(2026, 2, 28)))
        self.assertEqual(month_bounds(date(2028, 2, 29)), (date(2028, 2, 1), date(2028, 2, 29)))
        self.assertEqual(month_bounds(date(2026, 12, 31)), (date(2026, 12, 1), date(2026, 12, 31)))


if __name__ == "__main__":
    unittest.main()
