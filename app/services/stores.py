from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Iterator, Protocol

from sqlalchemy import func, select, text, tuple_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.db import chunk_transaction, read_session
from app.models import (
    AttendanceSummary,
    BatchJobExecution,
    Holiday,
    JobStatus,
    OvertimeReport,
    PunchEvent,
    PunchType,
)

logger = logging.getLogger("app.batch.stores")

MonthlyEventKey = tuple[int, datetime, int]
SummaryKey = tuple[int, date, int]
RUN_ID_ALLOCATION_ATTEMPTS = 3
# PostgreSQL caps one statement at 65535 bind parameters.
MAX_BIND_PARAMETERS = 65535


class PunchEventStore(Protocol):
    def fetch_page(
        self,
        after_id: int | None,
        limit: int,
        *,
        start_utc: datetime | None = None,
        end_utc: datetime | None = None,
    ) -> list[PunchEvent]:
        ...

    def fetch_in_events_page(
        self,
        after_key: MonthlyEventKey | None,
        limit: int,
        *,
        start_utc: datetime,
        end_utc: datetime,
    ) -> list[PunchEvent]:
        ...

    def list_user_events_between(self, user_id: int, start_utc: datetime, end_utc: datetime) -> list[PunchEvent]:
        ...

    def find_next_event(self, user_id: int, after_utc: datetime) -> PunchEvent | None:
        ...


class HolidayCalendar(Protocol):
    def is_holiday(self, day: date) -> bool:
        ...


class SummaryStore(Protocol):
    def find_summary(self, user_id: int, target_date: date, summary_type: str) -> AttendanceSummary | None:
        ...

    def list_summaries(
        self,
        user_id: int,
        summary_type: str,
        start_date: date,
        end_date: date,
    ) -> list[AttendanceSummary]:
        ...

    def fetch_summaries_page(
        self,
        after_key: SummaryKey | None,
        limit: int,
        *,
        summary_type: str,
        start_date: date,
        end_date: date,
    ) -> list[AttendanceSummary]:
        ...

    def insert_summaries(self, rows: list[AttendanceSummary]) -> int:
        ...


class ReportStore(Protocol):
    def find_report(self, user_id: int, target_month: date) -> OvertimeReport | None:
        ...

    def upsert_reports(self, rows: list[OvertimeReport]) -> int:
        ...


class JobRepository(Protocol):
    def create_execution(self, job_name: str, parameters: dict[str, Any]) -> BatchJobExecution:
        ...

    def save_execution(self, execution: BatchJobExecution) -> None:
        ...

    def get_execution(self, execution_id: int) -> BatchJobExecution | None:
        ...

    def list_executions(self, job_name: str | None = None, limit: int = 50) -> list[BatchJobExecution]:
        ...

    def count_by_status(self) -> dict[str, int]:
        ...

    def fail_abandoned_executions(self, job_name: str) -> int:
        ...


@dataclass(frozen=True, slots=True)
class HolidayRules:
    one_off: frozenset[date] = frozenset()
    recurring: frozenset[tuple[int, int]] = frozenset()

    @classmethod
    def from_holidays(cls, holidays: Iterable[Holiday]) -> HolidayRules:
        one_off: set[date] = set()
        recurring: set[tuple[int, int]] = set()
        for holiday in holidays:
            if holiday.is_recurring:
                recurring.add((holiday.holiday_date.month, holiday.holiday_date.day))
            else:
                one_off.add(holiday.holiday_date)
        return cls(one_off=frozenset(one_off), recurring=frozenset(recurring))

    def matches(self, day: date) -> bool:
        return day in self.one_off or (day.month, day.day) in self.recurring


class SqlAlchemyPunchEventStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def fetch_page(
        self,
        after_id: int | None,
        limit: int,
        *,
        start_utc: datetime | None = None,
        end_utc: datetime | None = None,
    ) -> list[PunchEvent]:
        stmt = select(PunchEvent).order_by(PunchEvent.id.asc()).limit(limit)
        if after_id is not None:
            stmt = stmt.where(PunchEvent.id > after_id)
        if start_utc is not None:
            stmt = stmt.where(PunchEvent.ts_utc >= start_utc)
        if end_utc is not None:
            stmt = stmt.where(PunchEvent.ts_utc < end_utc)
        with read_session(self._session_factory) as session:
            return list(session.scalars(stmt).all())

    def fetch_in_events_page(
        self,
        after_key: MonthlyEventKey | None,
        limit: int,
        *,
        start_utc: datetime,
        end_utc: datetime,
    ) -> list[PunchEvent]:
        stmt = (
            select(PunchEvent)
            .where(
                PunchEvent.type == PunchType.IN.value,
                PunchEvent.ts_utc >= start_utc,
                PunchEvent.ts_utc < end_utc,
            )
            .order_by(PunchEvent.user_id.asc(), PunchEvent.ts_utc.asc(), PunchEvent.id.asc())
            .limit(limit)
        )
        if after_key is not None:
            stmt = stmt.where(tuple_(PunchEvent.user_id, PunchEvent.ts_utc, PunchEvent.id) > tuple_(*after_key))
        with read_session(self._session_factory) as session:
            return list(session.scalars(stmt).all())

    def list_user_events_between(self, user_id: int, start_utc: datetime, end_utc: datetime) -> list[PunchEvent]:
        stmt = (
            select(PunchEvent)
            .where(
                PunchEvent.user_id == user_id,
                PunchEvent.ts_utc >= start_utc,
                PunchEvent.ts_utc < end_utc,
            )
            .order_by(PunchEvent.ts_utc.asc(), PunchEvent.id.asc())
        )
        with read_session(self._session_factory) as session:
            return list(session.scalars(stmt).all())

    def find_next_event(self, user_id: int, after_utc: datetime) -> PunchEvent | None:
        stmt = (
            select(PunchEvent)
            .where(PunchEvent.user_id == user_id, PunchEvent.ts_utc > after_utc)
            .order_by(PunchEvent.ts_utc.asc(), PunchEvent.id.asc())
            .limit(1)
        )
        with read_session(self._session_factory) as session:
            return session.scalar(stmt)


class SqlAlchemyHolidayCalendar:
    """Holiday lookups backed by the ``holidays`` table, loaded once per instance."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory
        self._rules: HolidayRules | None = None
        self._lock = threading.Lock()

    def _load_rules(self) -> HolidayRules:
        with self._lock:
            if self._rules is None:
                with read_session(self._session_factory) as session:
                    holidays = list(session.scalars(select(Holiday)).all())
                self._rules = HolidayRules.from_holidays(holidays)
                logger.info(
                    "holiday_calendar_loaded",
                    extra={
                        "one_off_count": len(self._rules.one_off),
                        "recurring_count": len(self._rules.recurring),
                    },
                )
            return self._rules

    def is_holiday(self, day: date) -> bool:
        return self._load_rules().matches(day)


def _summary_values(row: AttendanceSummary) -> dict[str, Any]:
    return {
        "user_id": row.user_id,
        "target_date": row.target_date,
        "total_hours": row.total_hours,
        "overtime_hours": row.overtime_hours,
        "late_night_hours": row.late_night_hours,
        "holiday_hours": row.holiday_hours,
        "summary_type": row.summary_type,
        "created_at": row.created_at or datetime.now(timezone.utc),
    }


def _report_values(row: OvertimeReport) -> dict[str, Any]:
    now_utc = datetime.now(timezone.utc)
    return {
        "user_id": row.user_id,
        "target_month": row.target_month,
        "total_overtime": row.total_overtime,
        "total_late_night": row.total_late_night,
        "total_holiday": row.total_holiday,
        "status": row.status,
        "created_at": row.created_at or now_utc,
        "updated_at": row.updated_at or now_utc,
    }


def _value_batches(values: list[dict[str, Any]]) -> Iterator[list[dict[str, Any]]]:
    rows_per_statement = MAX_BIND_PARAMETERS // len(values[0])
    for offset in range(0, len(values), rows_per_statement):
        yield values[offset : offset + rows_per_statement]


class SqlAlchemySummaryStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def find_summary(self, user_id: int, target_date: date, summary_type: str) -> AttendanceSummary | None:
        stmt = select(AttendanceSummary).where(
            AttendanceSummary.user_id == user_id,
            AttendanceSummary.target_date == target_date,
            AttendanceSummary.summary_type == summary_type,
        )
        with read_session(self._session_factory) as session:
            return session.scalar(stmt)

    def list_summaries(
        self,
        user_id: int,
        summary_type: str,
        start_date: date,
        end_date: date,
    ) -> list[AttendanceSummary]:
        stmt = (
            select(AttendanceSummary)
            .where(
                AttendanceSummary.user_id == user_id,
                AttendanceSummary.summary_type == summary_type,
                AttendanceSummary.target_date >= start_date,
                AttendanceSummary.target_date <= end_date,
            )
            .order_by(AttendanceSummary.target_date.asc(), AttendanceSummary.id.asc())
        )
        with read_session(self._session_factory) as session:
            return list(session.scalars(stmt).all())

    def fetch_summaries_page(
        self,
        after_key: SummaryKey | None,
        limit: int,
        *,
        summary_type: str,
        start_date: date,
        end_date: date,
    ) -> list[AttendanceSummary]:
        stmt = (
            select(AttendanceSummary)
            .where(
                AttendanceSummary.summary_type == summary_type,
                AttendanceSummary.target_date >= start_date,
                AttendanceSummary.target_date <= end_date,
            )
            .order_by(
                AttendanceSummary.user_id.asc(),
                AttendanceSummary.target_date.asc(),
                AttendanceSummary.id.asc(),
            )
            .limit(limit)
        )
        if after_key is not None:
            stmt = stmt.where(
                tuple_(AttendanceSummary.user_id, AttendanceSummary.target_date, AttendanceSummary.id)
                > tuple_(*after_key)
            )
        with read_session(self._session_factory) as session:
            return list(session.scalars(stmt).all())

    def insert_summaries(self, rows: list[AttendanceSummary]) -> int:
        if not rows:
            return 0
        inserted = 0
        with chunk_transaction(self._session_factory) as session:
            for batch in _value_batches([_summary_values(row) for row in rows]):
                stmt = (
                    pg_insert(AttendanceSummary)
                    .values(batch)
                    .on_conflict_do_nothing(constraint="uq_attendance_summaries_user_date_type")
                    .returning(AttendanceSummary.id)
                )
                inserted += len(session.scalars(stmt).all())
        return inserted


class SqlAlchemyReportStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def find_report(self, user_id: int, target_month: date) -> OvertimeReport | None:
        stmt = (
            select(OvertimeReport)
            .where(OvertimeReport.user_id == user_id, OvertimeReport.target_month == target_month)
            .order_by(OvertimeReport.id.asc())
            .limit(1)
        )
        with read_session(self._session_factory) as session:
            return session.scalar(stmt)

    def upsert_reports(self, rows: list[OvertimeReport]) -> int:
        if not rows:
            return 0
        upserted = 0
        with chunk_transaction(self._session_factory) as session:
            for batch in _value_batches([_report_values(row) for row in rows]):
                stmt = pg_insert(OvertimeReport).values(batch)
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_overtime_reports_user_month",
                    set_={
                        "total_overtime": stmt.excluded.total_overtime,
                        "total_late_night": stmt.excluded.total_late_night,
                        "total_holiday": stmt.excluded.total_holiday,
                        "status": stmt.excluded.status,
                        "updated_at": stmt.excluded.updated_at,
                    },
                ).returning(OvertimeReport.id)
                upserted += len(session.scalars(stmt).all())
        return upserted


class SqlAlchemyJobRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create_execution(self, job_name: str, parameters: dict[str, Any]) -> BatchJobExecution:
        last_error: IntegrityError | None = None
        for _ in range(RUN_ID_ALLOCATION_ATTEMPTS):
            try:
                with chunk_transaction(self._session_factory) as session:
                    current_max = session.scalar(
                        select(func.max(BatchJobExecution.run_id)).where(BatchJobExecution.job_name == job_name)
                    )
                    execution = BatchJobExecution(
                        job_name=job_name,
                        run_id=int(current_max or 0) + 1,
                        status=JobStatus.STARTING.value,
                        parameters=dict(parameters),
                        read_count=0,
                        write_count=0,
                        skip_count=0,
                        filter_count=0,
                        commit_count=0,
                        rollback_count=0,
                        created_at=datetime.now(timezone.utc),
                    )
                    session.add(execution)
                    session.flush()
                return execution
            except IntegrityError as exc:
                # Another process took the same run id; read the max again.
                last_error = exc
        raise RuntimeError(f"could not allocate run id for job {job_name}") from last_error

    def save_execution(self, execution: BatchJobExecution) -> None:
        with chunk_transaction(self._session_factory) as session:
            session.merge(execution)

    def get_execution(self, execution_id: int) -> BatchJobExecution | None:
        with read_session(self._session_factory) as session:
            return session.get(BatchJobExecution, execution_id)

    def list_executions(self, job_name: str | None = None, limit: int = 50) -> list[BatchJobExecution]:
        stmt = select(BatchJobExecution).order_by(BatchJobExecution.id.desc()).limit(max(1, limit))
        if job_name:
            stmt = stmt.where(BatchJobExecution.job_name == job_name)
        with read_session(self._session_factory) as session:
            return list(session.scalars(stmt).all())

    def count_by_status(self) -> dict[str, int]:
        stmt = select(BatchJobExecution.status, func.count(BatchJobExecution.id)).group_by(BatchJobExecution.status)
        with read_session(self._session_factory) as session:
            return {str(status): int(count) for status, count in session.execute(stmt).all()}

    def fail_abandoned_executions(self, job_name: str) -> int:
        now_utc = datetime.now(timezone.utc)
        with chunk_transaction(self._session_factory) as session:
            abandoned = list(
                session.scalars(
                    select(BatchJobExecution).where(
                        BatchJobExecution.job_name == job_name,
                        BatchJobExecution.status.in_([JobStatus.STARTING.value, JobStatus.STARTED.value]),
                    )
                ).all()
            )
            for execution in abandoned:
                execution.status = JobStatus.FAILED.value
                execution.exit_message = "abandoned: process ended before the run finished"
                execution.ended_at = now_utc
        return len(abandoned)


def check_store_connectivity(session_factory: sessionmaker[Session]) -> None:
    with read_session(session_factory) as session:
        session.execute(text("SELECT 1"))
