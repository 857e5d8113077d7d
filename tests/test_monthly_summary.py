from datetime import date, datetime, timezone
from decimal import Decimal
import unittest

from app.services.daily_summary import AttendanceSummaryWriter
from app.services.monthly_summary import (
    MonthlyWorkTimeProcessor,
    build_month_event_reader,
    month_bounds_utc,
    verify_monthly_integrity,
)
from app.services.pipeline import ChunkStep, Failed, Produced, Skipped, StepStatus
from app.settings import BatchSettings
from batch_fakes import (
    FakePunchEventStore,
    FakeSummaryStore,
    daily_row,
    fixed_clock,
    punch,
    utc,
    utc_settings,
)


def _october_dailies() -> list:
    return [
        daily_row(
            7,
            date(2026, 10, 1),
            total_hours=Decimal("8.00"),
            overtime_hours=Decimal("1.00"),
            late_night_hours=None,
            holiday_hours=Decimal("0.00"),
        ),
        daily_row(
            7,
            date(2026, 10, 2),
            total_hours=Decimal("7.50"),
            overtime_hours=Decimal("0.00"),
            late_night_hours=Decimal("0.25"),
            holiday_hours=None,
        ),
        daily_row(7, date(2026, 9, 30), total_hours=Decimal("12.00"), overtime_hours=Decimal("4.00")),
        daily_row(8, date(2026, 10, 1), total_hours=Decimal("3.00")),
    ]


class MonthlyWorkTimeProcessorTests(unittest.TestCase):
    def _processor(self, store: FakeSummaryStore, settings: BatchSettings | None = None) -> MonthlyWorkTimeProcessor:
        return MonthlyWorkTimeProcessor(summary_store=store, settings=settings or utc_settings(), clock=fixed_clock)

    def test_monthly_summary_sums_daily_rows_of_the_month(self) -> None:
        store = FakeSummaryStore(_october_dailies())

        result = self._processor(store).process(punch(1, 7, "in", utc(2026, 10, 15, 9)))

        self.assertIsInstance(result, Produced)
        monthly = result.output
        self.assertEqual(monthly.summary_type, "monthly")
        self.assertEqual(monthly.target_date, date(2026, 10, 1))
        self.assertEqual(monthly.total_hours, Decimal("15.50"))
        self.assertEqual(monthly.overtime_hours, Decimal("1.00"))
        self.assertEqual(monthly.late_night_hours, Decimal("0.25"))
        self.assertEqual(monthly.holiday_hours, Decimal("0.00"))

    def test_existing_monthly_summary_is_skipped(self) -> None:
        rows = _october_dailies() + [daily_row(7, date(2026, 10, 1), summary_type="monthly")]
        store = FakeSummaryStore(rows)

        result = self._processor(store).process(punch(1, 7, "in", utc(2026, 10, 15, 9)))

        self.assertIsInstance(result, Skipped)

    def test_no_daily_rows_is_skipped(self) -> None:
        result = self._processor(FakeSummaryStore()).process(punch(1, 7, "in", utc(2026, 10, 15, 9)))

        self.assertIsInstance(result, Skipped)

    def test_out_event_is_skipped(self) -> None:
        store = FakeSummaryStore(_october_dailies())

        result = self._processor(store).process(punch(1, 7, "out", utc(2026, 10, 15, 18)))

        self.assertIsInstance(result, Skipped)

    def test_invalid_event_fails(self) -> None:
        result = self._processor(FakeSummaryStore()).process(punch(1, 7, "in", datetime(2026, 10, 15, 9)))

        self.assertIsInstance(result, Failed)

    def test_month_key_uses_local_timestamp(self) -> None:
        store = FakeSummaryStore(_october_dailies())
        settings = utc_settings(timezone_name="Asia/Tokyo")

        # 30 Sep 16:00 UTC is 1 Oct 01:00 in Tokyo.
        result = self._processor(store, settings).process(punch(1, 7, "in", utc(2026, 9, 30, 16)))

        self.assertEqual(result.output.target_date, date(2026, 10, 1))


class MonthlyStepIdempotenceTests(unittest.TestCase):
    def _run(self, punch_store: FakePunchEventStore, summary_store: FakeSummaryStore, chunk_size: int = 2):
        settings = utc_settings(chunk_size=chunk_size)
        step = ChunkStep(
            "monthly_summary_step",
            job_name="monthly_attendance_summary",
            reader=build_month_event_reader(
                punch_store,
                date(2026, 10, 1),
                tz=settings.timezone,
                page_size=settings.chunk_size,
            ),
            processor=MonthlyWorkTimeProcessor(summary_store=summary_store, settings=settings, clock=fixed_clock),
            writer=AttendanceSummaryWriter(summary_store, name="monthly_summary_writer"),
            settings=settings,
        )
        return step.execute()

    def test_running_twice_creates_exactly_one_monthly_row_per_user(self) -> None:
        events = [
            punch(1, 7, "in", utc(2026, 10, 1, 9)),
            punch(2, 7, "out", utc(2026, 10, 1, 17)),
            punch(3, 7, "in", utc(2026, 10, 2, 9)),
            punch(4, 7, "out", utc(2026, 10, 2, 16, 30)),
            punch(5, 8, "in", utc(2026, 10, 1, 9)),
            punch(6, 8, "in", utc(2026, 11, 1, 9)),
        ]
        punch_store = FakePunchEventStore(events)
        summary_store = FakeSummaryStore(_october_dailies())

        first = self._run(punch_store, summary_store)
        second = self._run(punch_store, summary_store)

        monthly_rows = summary_store.rows_of_type("monthly")
        self.assertEqual(first.status, StepStatus.COMPLETED)
        self.assertEqual(first.read_count, 3)
        self.assertEqual(first.write_count, 2)
        self.assertEqual(second.write_count, 0)
        self.assertEqual(second.filter_count, 3)
        self.assertEqual(sorted(row.user_id for row in monthly_rows), [7, 8])
        self.assertEqual(
            next(row for row in monthly_rows if row.user_id == 7).total_hours,
            Decimal("15.50"),
        )

    def test_integrity_check_passes_after_roll_up(self) -> None:
        events = [punch(1, 7, "in", utc(2026, 10, 1, 9)), punch(2, 8, "in", utc(2026, 10, 1, 9))]
        summary_store = FakeSummaryStore(_october_dailies())
        self._run(FakePunchEventStore(events), summary_store)

        self.assertEqual(verify_monthly_integrity(summary_store, date(2026, 10, 1), page_size=1), [])

    def test_integrity_check_reports_stale_monthly_row(self) -> None:
        rows = _october_dailies() + [
            daily_row(7, date(2026, 10, 1), summary_type="monthly", total_hours=Decimal("8.00")),
        ]
        summary_store = FakeSummaryStore(rows)

        mismatches = verify_monthly_integrity(summary_store, date(2026, 10, 1))

        fields = {item.field for item in mismatches}
        self.assertIn("total_hours", fields)
        self.assertIn("overtime_hours", fields)
        self.assertTrue(all(item.user_id == 7 for item in mismatches))
        self.assertIn("monthly=8.00 daily_sum=15.50", next(m.describe() for m in mismatches if m.field == "total_hours"))


class MonthBoundsTests(unittest.TestCase):
    def test_month_bounds_utc_in_tokyo(self) -> None:
        start_utc, end_utc = month_bounds_utc(date(2026, 10, 1), BatchSettings().timezone)

        self.assertEqual(start_utc, datetime(2026, 9, 30, 15, 0, tzinfo=timezone.utc))
        self.assertEqual(end_utc, datetime(2026, 10, 31, 15, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
