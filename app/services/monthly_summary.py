from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Callable
from zoneinfo import ZoneInfo

from app.errors import ValidationError
from app.models import AttendanceSummary, PunchEvent, PunchType, SummaryType
from app.services.daily_summary import validate_punch_event
from app.services.pipeline import Failed, PagedReader, ProcessResult, Produced, Skipped
from app.services.stores import MonthlyEventKey, PunchEventStore, SummaryKey, SummaryStore
from app.services.work_time_calc import month_bounds, sum_hour_totals
from app.settings import BatchSettings

logger = logging.getLogger("app.batch.monthly")

MONTH_EVENT_READER_NAME = "monthly_punch_event_reader"
INTEGRITY_PAGE_SIZE = 500
HOUR_FIELDS = ("total_hours", "overtime_hours", "late_night_hours", "holiday_hours")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_bounds_utc(month_start: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    _, month_end = month_bounds(month_start)
    start_local = datetime.combine(month_start, time.min, tzinfo=tz)
    end_local = datetime.combine(month_end + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def build_month_event_reader(
    punch_store: PunchEventStore,
    month_start: date,
    *,
    tz: ZoneInfo,
    page_size: int,
) -> PagedReader[PunchEvent, MonthlyEventKey]:
    start_utc, end_utc = month_bounds_utc(month_start, tz)
    return PagedReader(
        lambda after_key, limit: punch_store.fetch_in_events_page(
            after_key,
            limit,
            start_utc=start_utc,
            end_utc=end_utc,
        ),
        key_of=lambda event: (event.user_id, event.ts_utc, event.id),
        page_size=page_size,
        name=MONTH_EVENT_READER_NAME,
    )


class MonthlyWorkTimeProcessor:
    """Rolls the daily rows of a user's month into one monthly row, once."""

    def __init__(
        self,
        *,
        summary_store: SummaryStore,
        settings: BatchSettings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._summary_store = summary_store
        self._tz = settings.timezone
        self._clock = clock

    def process(self, event: PunchEvent) -> ProcessResult[AttendanceSummary]:
        try:
            validate_punch_event(event)
        except ValidationError as exc:
            return Failed(exc)
        if event.type != PunchType.IN.value:
            return Skipped("not a clock-in event")

        month_start = event.ts_utc.astimezone(self._tz).date().replace(day=1)
        existing = self._summary_store.find_summary(event.user_id, month_start, SummaryType.MONTHLY.value)
        if existing is not None:
            return Skipped(f"monthly summary already exists for user {event.user_id} in {month_start:%Y-%m}")

        _, month_end = month_bounds(month_start)
        daily_rows = self._summary_store.list_summaries(
            event.user_id,
            SummaryType.DAILY.value,
            month_start,
            month_end,
        )
        if not daily_rows:
            return Skipped(f"no daily summaries for user {event.user_id} in {month_start:%Y-%m}")

        totals = sum_hour_totals(daily_rows)
        return Produced(
            AttendanceSummary(
                user_id=event.user_id,
                target_date=month_start,
                total_hours=totals.total_hours,
                overtime_hours=totals.overtime_hours,
                late_night_hours=totals.late_night_hours,
                holiday_hours=totals.holiday_hours,
                summary_type=SummaryType.MONTHLY.value,
                created_at=self._clock(),
            )
        )


@dataclass(frozen=True, slots=True)
class IntegrityMismatch:
    user_id: int
    target_month: date
    field: str
    monthly_value: Decimal
    daily_sum: Decimal

    def describe(self) -> str:
        return (
            f"user {self.user_id} {self.target_month:%Y-%m} {self.field}: "
            f"monthly={self.monthly_value} daily_sum={self.daily_sum}"
        )


def verify_monthly_integrity(
    summary_store: SummaryStore,
    month_start: date,
    *,
    page_size: int = INTEGRITY_PAGE_SIZE,
) -> list[IntegrityMismatch]:
    """Compare each monthly row of the month with the sum of its daily rows."""
    _, month_end = month_bounds(month_start)
    reader: PagedReader[AttendanceSummary, SummaryKey] = PagedReader(
        lambda after_key, limit: summary_store.fetch_summaries_page(
            after_key,
            limit,
            summary_type=SummaryType.MONTHLY.value,
            start_date=month_start,
            end_date=month_start,
        ),
        key_of=lambda row: (row.user_id, row.target_date, row.id),
        page_size=page_size,
        name="monthly_integrity_reader",
    )

    mismatches: list[IntegrityMismatch] = []
    checked = 0
    while (monthly := reader.read()) is not None:
        checked += 1
        daily_rows = summary_store.list_summaries(
            monthly.user_id,
            SummaryType.DAILY.value,
            month_start,
            month_end,
        )
        totals = sum_hour_totals(daily_rows)
        for field_name in HOUR_FIELDS:
            monthly_value = getattr(monthly, field_name) or Decimal("0.00")
            daily_sum = getattr(totals, field_name)
            if monthly_value != daily_sum:
                mismatches.append(
                    IntegrityMismatch(
                        user_id=monthly.user_id,
                        target_month=month_start,
                        field=field_name,
                        monthly_value=monthly_value,
                        daily_sum=daily_sum,
                    )
                )

    for mismatch in mismatches:
        logger.warning(
            "monthly_integrity_mismatch",
            extra={
                "user_id": mismatch.user_id,
                "target_month": mismatch.target_month.isoformat(),
                "field": mismatch.field,
                "monthly_value": str(mismatch.monthly_value),
                "daily_sum": str(mismatch.daily_sum),
            },
        )
    logger.info(
        "monthly_integrity_checked",
        extra={"target_month": month_start.isoformat(), "checked": checked, "mismatches": len(mismatches)},
    )
    return mismatches
