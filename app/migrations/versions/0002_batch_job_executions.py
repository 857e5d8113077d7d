"""Add batch job execution history

Revision ID: 0002_batch_job_executions
Revises: 0001_attendance_batch
Create Date: 2026-10-09 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0002_batch_job_executions"
down_revision: Union[str, None] = "0001_attendance_batch"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

COUNT_COLUMNS = (
    "read_count",
    "write_count",
    "skip_count",
    "filter_count",
    "commit_count",
    "rollback_count",
)


def upgrade() -> None:
    op.create_table(
        "batch_job_executions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'STARTING'")),
        sa.Column(
            "parameters",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        *[
            sa.Column(name, sa.Integer(), nullable=False, server_default=sa.text("0"))
            for name in COUNT_COLUMNS
        ],
        sa.Column("exit_message", sa.Text(), nullable=True),
        sa.Column("error_log_path", sa.String(length=1024), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("job_name", "run_id", name="uq_batch_job_executions_job_run"),
    )
    op.create_index("ix_batch_job_executions_job_name", "batch_job_executions", ["job_name"], unique=False)
    op.create_index("ix_batch_job_executions_status", "batch_job_executions", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_batch_job_executions_status", table_name="batch_job_executions")
    op.drop_index("ix_batch_job_executions_job_name", table_name="batch_job_executions")
    op.drop_table("batch_job_executions")
