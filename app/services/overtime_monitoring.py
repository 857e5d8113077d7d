from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable

from app.models import AttendanceSummary, OvertimeReport, SummaryType
from app.services.pipeline import PagedReader, ProcessResult, Produced, Skipped
from app.services.stores import ReportStore, SummaryKey, SummaryStore
from app.services.work_time_calc import ZERO_HOURS, classify_overtime_status, round_hours
from app.settings import BatchSettings

logger = logging.getLogger("app.batch.overtime")

MONTHLY_SUMMARY_READER_NAME = "monthly_summary_reader"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _hours(value: Decimal | None) -> Decimal:
    return round_hours(value) if value is not None else ZERO_HOURS


def build_monthly_summary_reader(
    summary_store: SummaryStore,
    month_start: date,
    *,
    page_size: int,
) -> PagedReader[AttendanceSummary, SummaryKey]:
    return PagedReader(
        lambda after_key, limit: summary_store.fetch_summaries_page(
            after_key,
            limit,
            summary_type=SummaryType.MONTHLY.value,
            start_date=month_start,
            end_date=month_start,
        ),
        key_of=lambda row: (row.user_id, row.target_date, row.id),
        page_size=page_size,
        name=MONTHLY_SUMMARY_READER_NAME,
    )


class OvertimeMonitoringProcessor:
    def __init__(
        self,
        *,
        report_store: ReportStore,
        settings: BatchSettings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._report_store = report_store
        self._thresholds = settings.thresholds
        self._clock = clock

    def process(self, summary: AttendanceSummary) -> ProcessResult[OvertimeReport]:
        if summary.summary_type != SummaryType.MONTHLY.value:
            return Skipped("not a monthly summary")

        target_month = summary.target_date.replace(day=1)
        now_utc = self._clock()
        existing = self._report_store.find_report(summary.user_id, target_month)

        total_overtime = _hours(summary.overtime_hours)
        total_late_night = _hours(summary.late_night_hours)
        total_holiday = _hours(summary.holiday_hours)
        status = classify_overtime_status(total_overtime, total_late_night, total_holiday, self._thresholds)

        report = OvertimeReport(
            user_id=summary.user_id,
            target_month=target_month,
            total_overtime=total_overtime,
            total_late_night=total_late_night,
            total_holiday=total_holiday,
            status=status.value,
            created_at=existing.created_at if existing is not None else now_utc,
            updated_at=now_utc,
        )
        if existing is not None:
            report.id = existing.id
            if existing.status != status.value:
                logger.info(
                    "overtime_status_changed",
                    extra={
                        "user_id": summary.user_id,
                        "target_month": target_month.isoformat(),
                        "previous_status": existing.status,
                        "status": status.value,
                    },
                )
        return Produced(report)


class OvertimeReportWriter:
    """Upserts one chunk of reports, last row per (user, month) wins."""

    def __init__(self, report_store: ReportStore) -> None:
        self._report_store = report_store

    def write(self, items: list[OvertimeReport]) -> int:
        latest: dict[tuple[int, date], OvertimeReport] = {}
        for report in items:
            latest[report.natural_key()] = report
        return self._report_store.upsert_reports(list(latest.values()))
