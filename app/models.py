from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class PunchType(str, enum.Enum):
    IN = "in"
    OUT = "out"


class SummaryType(str, enum.Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class OvertimeReportStatus(str, enum.Enum):
    APPROVED = "approved"
    DRAFT = "draft"
    CONFIRMED = "confirmed"


class JobStatus(str, enum.Enum):
    STARTING = "STARTING"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


HOURS_NUMERIC = Numeric(10, 2)


class PunchEvent(Base):
    __tablename__ = "punch_events"
    __table_args__ = (
        Index("ix_punch_events_user_id_ts_utc", "user_id", "ts_utc"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Kept as plain text: the clock-in UI owns the vocabulary, the batch validates it.
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def __repr__(self) -> str:
        return f"PunchEvent(id={self.id!r}, user_id={self.user_id!r}, type={self.type!r}, ts_utc={self.ts_utc!r})"


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    holiday_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AttendanceSummary(Base):
    __tablename__ = "attendance_summaries"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "target_date",
            "summary_type",
            name="uq_attendance_summaries_user_date_type",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    target_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_hours: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    overtime_hours: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    late_night_hours: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    holiday_hours: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    summary_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=text("CURRENT_TIMESTAMP"),
    )

    def natural_key(self) -> tuple[int, date, str]:
        return (self.user_id, self.target_date, self.summary_type)

    def __repr__(self) -> str:
        return (
            f"AttendanceSummary(user_id={self.user_id!r}, target_date={self.target_date!r}, "
            f"summary_type={self.summary_type!r}, total_hours={self.total_hours!r})"
        )


class OvertimeReport(Base):
    __tablename__ = "overtime_reports"
    __table_args__ = (
        UniqueConstraint("user_id", "target_month", name="uq_overtime_reports_user_month"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    target_month: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_overtime: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    total_late_night: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    total_holiday: Mapped[Decimal] = mapped_column(HOURS_NUMERIC, nullable=False, default=Decimal("0.00"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def natural_key(self) -> tuple[int, date]:
        return (self.user_id, self.target_month)

    def __repr__(self) -> str:
        return (
            f"OvertimeReport(id={self.id!r}, user_id={self.user_id!r}, target_month={self.target_month!r}, "
            f"status={self.status!r})"
        )


class BatchJobExecution(Base):
    __tablename__ = "batch_job_executions"
    __table_args__ = (
        UniqueConstraint("job_name", "run_id", name="uq_batch_job_executions_job_run"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    run_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=JobStatus.STARTING.value,
        server_default=text("'STARTING'"),
        index=True,
    )
    parameters: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    read_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    write_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    skip_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    filter_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    commit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    rollback_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    exit_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_log_path: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
