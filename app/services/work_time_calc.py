from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol, Sequence
from zoneinfo import ZoneInfo

from app.models import OvertimeReportStatus, PunchType
from app.settings import OvertimeThresholds

HOURS_QUANTUM = Decimal("0.01")
ZERO_HOURS = Decimal("0.00")
SECONDS_PER_HOUR = Decimal(3600)
DEFAULT_STANDARD_DAILY_HOURS = Decimal("8.00")
LATE_NIGHT_START = time(22, 0)
LATE_NIGHT_END = time(5, 0)
WEEKEND_WEEKDAYS = {5, 6}


class PunchLike(Protocol):
    type: str
    ts_utc: datetime


class HourRow(Protocol):
    total_hours: Decimal | None
    overtime_hours: Decimal | None
    late_night_hours: Decimal | None
    holiday_hours: Decimal | None


@dataclass(frozen=True, slots=True)
class WorkInterval:
    start: datetime
    end: datetime

    @property
    def seconds(self) -> int:
        return max(0, int((self.end - self.start).total_seconds()))


@dataclass(frozen=True, slots=True)
class DailyHours:
    total_hours: Decimal
    overtime_hours: Decimal
    late_night_hours: Decimal
    holiday_hours: Decimal


@dataclass(frozen=True, slots=True)
class HourTotals:
    total_hours: Decimal
    overtime_hours: Decimal
    late_night_hours: Decimal
    holiday_hours: Decimal


def round_hours(value: Decimal) -> Decimal:
    return value.quantize(HOURS_QUANTUM, rounding=ROUND_HALF_UP)


def seconds_to_hours(seconds: int) -> Decimal:
    return round_hours(Decimal(max(0, seconds)) / SECONDS_PER_HOUR)


def pair_punches(events: Sequence[PunchLike]) -> list[WorkInterval]:
    ordered = sorted(events, key=lambda item: item.ts_utc)
    intervals: list[WorkInterval] = []
    index = 0
    while index < len(ordered) - 1:
        current = ordered[index]
        following = ordered[index + 1]
        if current.type == PunchType.IN.value and following.type == PunchType.OUT.value:
            intervals.append(WorkInterval(start=current.ts_utc, end=following.ts_utc))
            index += 2
            continue
        index += 1
    return intervals


def _overlap_seconds(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> int:
    overlap_start = max(start, window_start)
    overlap_end = min(end, window_end)
    if overlap_start >= overlap_end:
        return 0
    return int((overlap_end - overlap_start).total_seconds())


def late_night_seconds(start: datetime, end: datetime, tz: ZoneInfo | None = None) -> int:
    """Seconds of [start, end) inside [22:00, 24:00) or [00:00, 05:00) local time.

    Measured on the local wall clock, so across a DST switch the result follows
    the clock face rather than elapsed time: a fall-back night counts its
    repeated hour once, and a spring-forward night skips the missing hour.
    """
    if end <= start:
        return 0
    if tz is not None:
        start = start.astimezone(tz)
        end = end.astimezone(tz)
    # Wall-clock comparison: both ends lose tzinfo after conversion.
    local_start = start.replace(tzinfo=None)
    local_end = end.replace(tzinfo=None)

    total = 0
    day = local_start.date()
    while day <= local_end.date():
        midnight = datetime.combine(day, time.min)
        early_window_end = datetime.combine(day, LATE_NIGHT_END)
        late_window_start = datetime.combine(day, LATE_NIGHT_START)
        next_midnight = midnight + timedelta(days=1)
        total += _overlap_seconds(local_start, local_end, midnight, early_window_end)
        total += _overlap_seconds(local_start, local_end, late_window_start, next_midnight)
        day += timedelta(days=1)
    return total


def is_weekend(day: date) -> bool:
    return day.weekday() in WEEKEND_WEEKDAYS


def calculate_daily_hours(
    intervals: Iterable[WorkInterval],
    *,
    is_holiday: bool,
    standard_daily_hours: Decimal = DEFAULT_STANDARD_DAILY_HOURS,
    tz: ZoneInfo | None = None,
) -> DailyHours:
    total_seconds = 0
    night_seconds = 0
    for interval in intervals:
        total_seconds += interval.seconds
        night_seconds += late_night_seconds(interval.start, interval.end, tz)

    total_hours = seconds_to_hours(total_seconds)
    overtime_hours = round_hours(max(ZERO_HOURS, total_hours - standard_daily_hours))
    late_night_hours = seconds_to_hours(night_seconds)
    holiday_hours = total_hours if is_holiday else ZERO_HOURS
    return DailyHours(
        total_hours=total_hours,
        overtime_hours=overtime_hours,
        late_night_hours=late_night_hours,
        holiday_hours=holiday_hours,
    )


def _or_zero(value: Decimal | None) -> Decimal:
    return value if value is not None else ZERO_HOURS


def sum_hour_totals(rows: Iterable[HourRow]) -> HourTotals:
    total = overtime = late_night = holiday = ZERO_HOURS
    for row in rows:
        total += _or_zero(row.total_hours)
        overtime += _or_zero(row.overtime_hours)
        late_night += _or_zero(row.late_night_hours)
        holiday += _or_zero(row.holiday_hours)
    return HourTotals(
        total_hours=round_hours(total),
        overtime_hours=round_hours(overtime),
        late_night_hours=round_hours(late_night),
        holiday_hours=round_hours(holiday),
    )


def classify_overtime_status(
    overtime_hours: Decimal,
    late_night_hours: Decimal,
    holiday_hours: Decimal,
    thresholds: OvertimeThresholds | None = None,
) -> OvertimeReportStatus:
    limits = thresholds or OvertimeThresholds()
    if (
        overtime_hours > limits.overtime_hours
        or late_night_hours > limits.late_night_hours
        or holiday_hours > limits.holiday_hours
    ):
        return OvertimeReportStatus.CONFIRMED
    if overtime_hours > 0 or late_night_hours > 0 or holiday_hours > 0:
        return OvertimeReportStatus.DRAFT
    return OvertimeReportStatus.APPROVED


def month_bounds(day: date) -> tuple[date, date]:
    month_start = day.replace(day=1)
    next_month = (month_start + timedelta(days=32)).replace(day=1)
    return month_start, next_month - timedelta(days=1)
