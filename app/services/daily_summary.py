from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from app.errors import ValidationError
from app.models import AttendanceSummary, PunchEvent, PunchType, SummaryType
from app.services.pipeline import Failed, PagedReader, ProcessResult, Produced, Skipped
from app.services.stores import HolidayCalendar, PunchEventStore, SummaryStore
from app.services.work_time_calc import calculate_daily_hours, is_weekend, pair_punches
from app.settings import BatchSettings

logger = logging.getLogger("app.batch.daily")

PUNCH_READER_NAME = "punch_event_reader"
VALID_PUNCH_TYPES = {item.value for item in PunchType}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_punch_event(event: PunchEvent) -> None:
    if event.user_id is None or event.user_id <= 0:
        raise ValidationError(f"punch event {event.id} has no user id")
    if event.type not in VALID_PUNCH_TYPES:
        raise ValidationError(f"punch event {event.id} has unknown type {event.type!r}")
    if event.ts_utc is None:
        raise ValidationError(f"punch event {event.id} has no timestamp")
    if event.ts_utc.tzinfo is None:
        raise ValidationError(f"punch event {event.id} timestamp is not timezone-aware")


def local_day_bounds_utc(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def build_punch_event_reader(
    punch_store: PunchEventStore,
    *,
    page_size: int,
    start_utc: datetime | None = None,
    end_utc: datetime | None = None,
) -> PagedReader[PunchEvent, int]:
    return PagedReader(
        lambda after_id, limit: punch_store.fetch_page(after_id, limit, start_utc=start_utc, end_utc=end_utc),
        key_of=lambda event: event.id,
        page_size=page_size,
        name=PUNCH_READER_NAME,
    )


class DailyWorkTimeProcessor:
    """Turns the ``in`` punch of a local work day into that day's summary."""

    def __init__(
        self,
        *,
        punch_store: PunchEventStore,
        summary_store: SummaryStore,
        holiday_calendar: HolidayCalendar,
        settings: BatchSettings,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._punch_store = punch_store
        self._summary_store = summary_store
        self._holiday_calendar = holiday_calendar
        self._settings = settings
        self._tz = settings.timezone
        self._clock = clock

    def process(self, event: PunchEvent) -> ProcessResult[AttendanceSummary]:
        try:
            validate_punch_event(event)
        except ValidationError as exc:
            return Failed(exc)

        if event.type != PunchType.IN.value:
            return Skipped("not a clock-in event")

        work_date = event.ts_utc.astimezone(self._tz).date()
        existing = self._summary_store.find_summary(event.user_id, work_date, SummaryType.DAILY.value)
        if existing is not None:
            return Skipped(f"daily summary already exists for user {event.user_id} on {work_date}")

        events = self._load_day_events(event.user_id, work_date)
        if len(events) < 2:
            return Skipped(f"fewer than two punches for user {event.user_id} on {work_date}")

        intervals = pair_punches(events)
        if not intervals:
            return Skipped(f"no matched in/out pair for user {event.user_id} on {work_date}")

        max_shift_seconds = self._settings.max_shift_hours * 3600
        for interval in intervals:
            if interval.seconds > max_shift_seconds:
                return Failed(
                    ValidationError(
                        f"shift from {interval.start.isoformat()} to {interval.end.isoformat()} "
                        f"exceeds {self._settings.max_shift_hours}h for user {event.user_id}"
                    )
                )

        is_holiday = is_weekend(work_date) or self._holiday_calendar.is_holiday(work_date)
        hours = calculate_daily_hours(
            intervals,
            is_holiday=is_holiday,
            standard_daily_hours=self._settings.standard_daily_hours,
            tz=self._tz,
        )
        return Produced(
            AttendanceSummary(
                user_id=event.user_id,
                target_date=work_date,
                total_hours=hours.total_hours,
                overtime_hours=hours.overtime_hours,
                late_night_hours=hours.late_night_hours,
                holiday_hours=hours.holiday_hours,
                summary_type=SummaryType.DAILY.value,
                created_at=self._clock(),
            )
        )

    def _load_day_events(self, user_id: int, work_date: date) -> list[PunchEvent]:
        start_utc, end_utc = local_day_bounds_utc(work_date, self._tz)
        events = list(self._punch_store.list_user_events_between(user_id, start_utc, end_utc))
        if events and events[-1].type == PunchType.IN.value:
            # Night shift: the matching clock-out can land on the next day.
            following = self._punch_store.find_next_event(user_id, events[-1].ts_utc)
            if following is not None and following.type == PunchType.OUT.value:
                events.append(following)
        return events


class AttendanceSummaryWriter:
    """Writes one chunk of summaries, first row per natural key wins."""

    def __init__(self, summary_store: SummaryStore, *, name: str = "attendance_summary_writer") -> None:
        self._summary_store = summary_store
        self.name = name

    def write(self, items: list[AttendanceSummary]) -> int:
        unique: dict[tuple[int, date, str], AttendanceSummary] = {}
        for row in items:
            unique.setdefault(row.natural_key(), row)
        collapsed = len(items) - len(unique)
        if collapsed:
            logger.info("duplicate_summaries_collapsed", extra={"writer": self.name, "collapsed": collapsed})
        return self._summary_store.insert_summaries(list(unique.values()))
