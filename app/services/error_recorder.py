from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Mapping, Protocol

logger = logging.getLogger("app.batch.errors")

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")
HIGH_ERROR_VOLUME = 1000
MEDIUM_ERROR_VOLUME = 100


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    job_name: str
    step_name: str
    error_kind: str
    message: str
    item: str | None
    occurred_at: datetime
    execution_id: int | None = None
    stack_trace: str | None = None


class ErrorRecorder(Protocol):
    def log_path(self, job_name: str, execution_id: int | None) -> Path:
        ...

    def record(self, record: ErrorRecord) -> str | None:
        ...

    def write_summary_report(
        self,
        *,
        job_name: str,
        execution_id: int | None,
        errors_by_step: Mapping[str, int],
    ) -> str | None:
        ...

    def cleanup_old_files(self, retention_days: int, *, now: datetime | None = None) -> int:
        ...

    def statistics(self) -> dict[str, Any]:
        ...


def _safe_name(value: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", value).strip("_") or "unknown"


def _recommendation(total_errors: int) -> list[str]:
    if total_errors > HIGH_ERROR_VOLUME:
        return [
            "High error volume: check punch data quality.",
            "Check database and worker resources.",
        ]
    if total_errors > MEDIUM_ERROR_VOLUME:
        return ["Moderate error volume: review skip/retry limits and thresholds."]
    return ["Few errors: review the listed items individually."]


class FileErrorRecorder:
    """Append-only, human-readable error log on the local filesystem.

    Every job execution gets its own ``<prefix>_<job>_<execution>.log`` file that
    item and chunk failures are appended to; the summary report for the same
    execution is written next to it with a ``_summary.txt`` suffix.
    """

    def __init__(self, error_dir: str | Path, *, prefix: str = "BATCH_ERR") -> None:
        self.error_dir = Path(error_dir)
        self.prefix = _safe_name(prefix)
        self._lock = threading.Lock()
        self._sequence = 0
        self.error_dir.mkdir(parents=True, exist_ok=True)

    def log_path(self, job_name: str, execution_id: int | None) -> Path:
        execution_part = str(execution_id) if execution_id is not None else "adhoc"
        return self.error_dir / f"{self.prefix}_{_safe_name(job_name)}_{execution_part}.log"

    def summary_path(self, job_name: str, execution_id: int | None) -> Path:
        execution_part = str(execution_id) if execution_id is not None else "adhoc"
        return self.error_dir / f"{self.prefix}_{_safe_name(job_name)}_{execution_part}_summary.txt"

    def record(self, record: ErrorRecord) -> str | None:
        path = self.log_path(record.job_name, record.execution_id)
        with self._lock:
            self._sequence += 1
            lines = [
                "=== batch error ===",
                f"occurred_at: {record.occurred_at.isoformat()}",
                f"job: {record.job_name}",
                f"execution_id: {record.execution_id if record.execution_id is not None else '-'}",
                f"step: {record.step_name}",
                f"kind: {record.error_kind}",
                f"message: {record.message}",
                f"sequence: {self._sequence}",
                "--- item ---",
                record.item if record.item is not None else "N/A",
                "--- stack trace ---",
                record.stack_trace.rstrip() if record.stack_trace else "N/A",
                "",
            ]
            try:
                with path.open("a", encoding="utf-8") as handle:
                    handle.write("\n".join(lines) + "\n")
            except OSError:
                logger.exception("error_log_write_failed", extra={"path": str(path)})
                return None

        logger.warning(
            "batch_error_recorded",
            extra={
                "job_name": record.job_name,
                "step_name": record.step_name,
                "error_kind": record.error_kind,
                "execution_id": record.execution_id,
                "path": str(path),
            },
        )
        return str(path)

    def write_summary_report(
        self,
        *,
        job_name: str,
        execution_id: int | None,
        errors_by_step: Mapping[str, int],
    ) -> str | None:
        total_errors = sum(errors_by_step.values())
        path = self.summary_path(job_name, execution_id)
        lines = [
            "=== batch error summary ===",
            f"job: {job_name}",
            f"execution_id: {execution_id if execution_id is not None else '-'}",
            f"generated_at: {datetime.now(timezone.utc).isoformat()}",
            f"total_errors: {total_errors}",
            "",
            "=== errors by step ===",
        ]
        lines.extend(f"{step_name}: {count} errors" for step_name, count in sorted(errors_by_step.items()))
        lines.extend(["", "=== recommendation ==="])
        lines.extend(f"- {line}" for line in _recommendation(total_errors))

        try:
            path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        except OSError:
            logger.exception("error_summary_write_failed", extra={"path": str(path)})
            return None

        logger.info(
            "batch_error_summary_written",
            extra={"job_name": job_name, "execution_id": execution_id, "total_errors": total_errors, "path": str(path)},
        )
        return str(path)

    def cleanup_old_files(self, retention_days: int, *, now: datetime | None = None) -> int:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max(0, retention_days))
        removed = 0
        for path in self.error_dir.glob(f"{self.prefix}_*"):
            try:
                modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if modified >= cutoff:
                    continue
                path.unlink()
            except OSError:
                logger.warning("error_file_cleanup_failed", extra={"path": str(path)})
                continue
            removed += 1
        if removed:
            logger.info("error_files_cleaned", extra={"removed": removed, "retention_days": retention_days})
        return removed

    def statistics(self) -> dict[str, Any]:
        files = [path for path in self.error_dir.glob(f"{self.prefix}_*") if path.is_file()]
        total_size = 0
        for path in files:
            try:
                total_size += path.stat().st_size
            except OSError:
                continue
        return {
            "error_dir": str(self.error_dir),
            "total_files": len(files),
            "total_size_bytes": total_size,
            "current_sequence": self._sequence,
        }
