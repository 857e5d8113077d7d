from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


REQUIRED_TABLE_COLUMNS: dict[str, set[str]] = {
    "punch_events": {"id", "user_id", "type", "ts_utc"},
    "holidays": {"id", "date", "is_recurring"},
    "attendance_summaries": {
        "id",
        "user_id",
        "target_date",
        "total_hours",
        "overtime_hours",
        "late_night_hours",
        "holiday_hours",
        "summary_type",
    },
    "overtime_reports": {
        "id",
        "user_id",
        "target_month",
        "total_overtime",
        "total_late_night",
        "total_holiday",
        "status",
        "updated_at",
    },
    "batch_job_executions": {"id", "job_name", "run_id", "status", "parameters"},
    "alembic_version": {"version_num"},
}

# Natural-key upserts target these constraints by name.
REQUIRED_UNIQUE_CONSTRAINTS: dict[str, str] = {
    "attendance_summaries": "uq_attendance_summaries_user_date_type",
    "overtime_reports": "uq_overtime_reports_user_month",
    "batch_job_executions": "uq_batch_job_executions_job_run",
}


def verify_runtime_schema(engine: Engine) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    for table_name, required_columns in REQUIRED_TABLE_COLUMNS.items():
        try:
            column_names = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            issues.append(f"TABLE_UNREADABLE:{table_name}:{exc.__class__.__name__}")
            continue

        missing_columns = sorted(item for item in required_columns if item not in column_names)
        if missing_columns:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing_columns)}")

    for table_name, constraint_name in REQUIRED_UNIQUE_CONSTRAINTS.items():
        try:
            constraints = inspector.get_unique_constraints(table_name) or []
        except SQLAlchemyError as exc:
            warnings.append(f"UNIQUE_CONSTRAINT_INSPECTION_FAILED:{table_name}:{exc.__class__.__name__}")
            continue
        names = {str(item.get("name") or "") for item in constraints}
        if constraint_name not in names:
            issues.append(f"MISSING_UNIQUE_CONSTRAINT:{table_name}:{constraint_name}")

    try:
        with engine.connect() as connection:
            row = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).scalar()
            version = str(row).strip() if row is not None else ""
            if not version:
                issues.append("ALEMBIC_VERSION_EMPTY")
    except SQLAlchemyError as exc:
        issues.append(f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}")

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
