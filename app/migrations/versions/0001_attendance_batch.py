"""Attendance aggregation schema

Revision ID: 0001_attendance_batch
Revises:
Create Date: 2026-10-05 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "0001_attendance_batch"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _hours_column(name: str) -> sa.Column:
    return sa.Column(name, sa.Numeric(10, 2), nullable=False, server_default=sa.text("0.00"))


def _timestamp_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    op.create_table(
        "punch_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=10), nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lon", sa.Float(), nullable=True),
        _timestamp_column("created_at"),
    )
    op.create_index("ix_punch_events_ts_utc", "punch_events", ["ts_utc"], unique=False)
    op.create_index("ix_punch_events_user_id_ts_utc", "punch_events", ["user_id", "ts_utc"], unique=False)

    op.create_table(
        "holidays",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp_column("created_at"),
    )
    op.create_index("ix_holidays_date", "holidays", ["date"], unique=False)

    op.create_table(
        "attendance_summaries",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("target_date", sa.Date(), nullable=False),
        _hours_column("total_hours"),
        _hours_column("overtime_hours"),
        _hours_column("late_night_hours"),
        _hours_column("holiday_hours"),
        sa.Column("summary_type", sa.String(length=20), nullable=False),
        _timestamp_column("created_at"),
        sa.UniqueConstraint(
            "user_id",
            "target_date",
            "summary_type",
            name="uq_attendance_summaries_user_date_type",
        ),
    )
    op.create_index("ix_attendance_summaries_user_id", "attendance_summaries", ["user_id"], unique=False)
    op.create_index("ix_attendance_summaries_target_date", "attendance_summaries", ["target_date"], unique=False)
    op.create_index("ix_attendance_summaries_summary_type", "attendance_summaries", ["summary_type"], unique=False)

    op.create_table(
        "overtime_reports",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("target_month", sa.Date(), nullable=False),
        _hours_column("total_overtime"),
        _hours_column("total_late_night"),
        _hours_column("total_holiday"),
        sa.Column("status", sa.String(length=20), nullable=False),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.UniqueConstraint("user_id", "target_month", name="uq_overtime_reports_user_month"),
    )
    op.create_index("ix_overtime_reports_user_id", "overtime_reports", ["user_id"], unique=False)
    op.create_index("ix_overtime_reports_target_month", "overtime_reports", ["target_month"], unique=False)
    op.create_index("ix_overtime_reports_status", "overtime_reports", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_overtime_reports_status", table_name="overtime_reports")
    op.drop_index("ix_overtime_reports_target_month", table_name="overtime_reports")
    op.drop_index("ix_overtime_reports_user_id", table_name="overtime_reports")
    op.drop_table("overtime_reports")

    op.drop_index("ix_attendance_summaries_summary_type", table_name="attendance_summaries")
    op.drop_index("ix_attendance_summaries_target_date", table_name="attendance_summaries")
    op.drop_index("ix_attendance_summaries_user_id", table_name="attendance_summaries")
    op.drop_table("attendance_summaries")

    op.drop_index("ix_holidays_date", table_name="holidays")
    op.drop_table("holidays")

    op.drop_index("ix_punch_events_user_id_ts_utc", table_name="punch_events")
    op.drop_index("ix_punch_events_ts_utc", table_name="punch_events")
    op.drop_table("punch_events")
