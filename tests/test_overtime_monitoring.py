from datetime import date, datetime, timezone
from decimal import Decimal
import unittest

from app.models import OvertimeReport
from app.services.overtime_monitoring import (
    OvertimeMonitoringProcessor,
    OvertimeReportWriter,
    build_monthly_summary_reader,
)
from app.services.pipeline import ChunkStep, Produced, Skipped, StepStatus
from batch_fakes import (
    FIXED_NOW,
    FakeReportStore,
    FakeSummaryStore,
    daily_row,
    fixed_clock,
    utc_settings,
)

OCTOBER = date(2026, 10, 1)


def _monthly(user_id: int, *, overtime: str | None, late_night: str | None = "0.00", holiday: str | None = "0.00"):
    return daily_row(
        user_id,
        OCTOBER,
        summary_type="monthly",
        total_hours=Decimal("160.00"),
        overtime_hours=Decimal(overtime) if overtime is not None else None,
        late_night_hours=Decimal(late_night) if late_night is not None else None,
        holiday_hours=Decimal(holiday) if holiday is not None else None,
    )


class OvertimeMonitoringProcessorTests(unittest.TestCase):
    def _processor(self, store: FakeReportStore) -> OvertimeMonitoringProcessor:
        return OvertimeMonitoringProcessor(report_store=store, settings=utc_settings(), clock=fixed_clock)

    def test_status_classification(self) -> None:
        cases = [("46.00", "confirmed"), ("5.00", "draft"), ("0.00", "approved")]
        for overtime, expected in cases:
            with self.subTest(overtime=overtime):
                result = self._processor(FakeReportStore()).process(_monthly(7, overtime=overtime))

                self.assertIsInstance(result, Produced)
                self.assertEqual(result.output.status, expected)

    def test_late_night_over_threshold_is_confirmed(self) -> None:
        result = self._processor(FakeReportStore()).process(_monthly(7, overtime="0.00", late_night="20.50"))

        self.assertEqual(result.output.status, "confirmed")

    def test_null_totals_are_zero(self) -> None:
        result = self._processor(FakeReportStore()).process(
            _monthly(7, overtime=None, late_night=None, holiday=None)
        )

        report = result.output
        self.assertEqual(report.total_overtime, Decimal("0.00"))
        self.assertEqual(report.total_late_night, Decimal("0.00"))
        self.assertEqual(report.total_holiday, Decimal("0.00"))
        self.assertEqual(report.status, "approved")

    def test_new_report_gets_both_timestamps(self) -> None:
        result = self._processor(FakeReportStore()).process(_monthly(7, overtime="3.00"))

        report = result.output
        self.assertIsNone(report.id)
        self.assertEqual(report.target_month, OCTOBER)
        self.assertEqual(report.created_at, FIXED_NOW)
        self.assertEqual(report.updated_at, FIXED_NOW)

    def test_existing_report_keeps_identity_and_created_at(self) -> None:
        created_at = datetime(2026, 10, 2, tzinfo=timezone.utc)
        existing = OvertimeReport(
            id=41,
            user_id=7,
            target_month=OCTOBER,
            total_overtime=Decimal("3.00"),
            total_late_night=Decimal("0.00"),
            total_holiday=Decimal("0.00"),
            status="draft",
            created_at=created_at,
            updated_at=created_at,
        )
        store = FakeReportStore([existing])

        result = self._processor(store).process(_monthly(7, overtime="50.00"))

        report = result.output
        self.assertEqual(report.id, 41)
        self.assertEqual(report.created_at, created_at)
        self.assertEqual(report.updated_at, FIXED_NOW)
        self.assertEqual(report.status, "confirmed")

    def test_daily_summary_is_skipped(self) -> None:
        row = daily_row(7, date(2026, 10, 21), total_hours=Decimal("9.00"), overtime_hours=Decimal("1.00"))

        result = self._processor(FakeReportStore()).process(row)

        self.assertIsInstance(result, Skipped)


class OvertimeReportWriterTests(unittest.TestCase):
    def test_last_report_per_key_wins(self) -> None:
        store = FakeReportStore()
        processor = OvertimeMonitoringProcessor(report_store=store, settings=utc_settings(), clock=fixed_clock)
        first = processor.process(_monthly(7, overtime="1.00")).output
        second = processor.process(_monthly(7, overtime="2.00")).output

        written = OvertimeReportWriter(store).write([first, second])

        self.assertEqual(written, 1)
        self.assertEqual(store.find_report(7, OCTOBER).total_overtime, Decimal("2.00"))


class OvertimeStepRerunTests(unittest.TestCase):
    def _run(self, summary_store: FakeSummaryStore, report_store: FakeReportStore):
        settings = utc_settings(chunk_size=1)
        return ChunkStep(
            "overtime_monitoring_step",
            job_name="overtime_monitoring",
            reader=build_monthly_summary_reader(summary_store, OCTOBER, page_size=settings.chunk_size),
            processor=OvertimeMonitoringProcessor(report_store=report_store, settings=settings, clock=fixed_clock),
            writer=OvertimeReportWriter(report_store),
            settings=settings,
        ).execute()

    def test_rerun_updates_the_same_report_row(self) -> None:
        summary_store = FakeSummaryStore([_monthly(7, overtime="5.00"), _monthly(8, overtime="46.00")])
        report_store = FakeReportStore()

        first = self._run(summary_store, report_store)
        first_ids = {key: report.id for key, report in report_store.reports.items()}
        summary_store.rows[0].overtime_hours = Decimal("47.00")
        second = self._run(summary_store, report_store)

        self.assertEqual(first.status, StepStatus.COMPLETED)
        self.assertEqual(second.status, StepStatus.COMPLETED)
        self.assertEqual(first.write_count, 2)
        self.assertEqual(len(report_store.reports), 2)
        self.assertEqual({key: report.id for key, report in report_store.reports.items()}, first_ids)
        self.assertEqual(report_store.find_report(7, OCTOBER).status, "confirmed")
        self.assertEqual(report_store.find_report(8, OCTOBER).status, "confirmed")


if __name__ == "__main__":
    unittest.main()
