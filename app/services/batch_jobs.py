"""Job registry and launcher for the attendance batch.

Each registered job is one chunk step wired from a ``BatchDependencies``
container. ``JobLauncher.run`` executes a job on the calling thread and
``JobLauncher.submit`` hands it to a bounded worker pool; both persist a
``BatchJobExecution`` row that carries the final counts.
"""

from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from functools import lru_cache, partial
from typing import Any, Callable, Mapping

from app.errors import ConfigurationError, JobAlreadyRunningError
from app.models import BatchJobExecution, JobStatus
from app.services.daily_summary import (
    AttendanceSummaryWriter,
    DailyWorkTimeProcessor,
    build_punch_event_reader,
    local_day_bounds_utc,
)
from app.services.error_recorder import ErrorRecord, ErrorRecorder, FileErrorRecorder
from app.services.monthly_summary import (
    MonthlyWorkTimeProcessor,
    build_month_event_reader,
    verify_monthly_integrity,
)
from app.services.overtime_monitoring import (
    OvertimeMonitoringProcessor,
    OvertimeReportWriter,
    build_monthly_summary_reader,
)
from app.services.pipeline import ChunkStep, StepExecution, StepStatus
from app.services.stores import (
    HolidayCalendar,
    JobRepository,
    PunchEventStore,
    ReportStore,
    SummaryStore,
)
from app.settings import TUNING_PARAMETER_KEYS, BatchSettings, Settings, build_batch_settings, get_settings

logger = logging.getLogger("app.batch.jobs")

DAILY_JOB = "daily_attendance_summary"
MONTHLY_JOB = "monthly_attendance_summary"
OVERTIME_JOB = "overtime_monitoring"
MONTH_PARAMETER_JOBS = {MONTHLY_JOB, OVERTIME_JOB}
DATE_RANGE_PARAMETER_JOBS = {DAILY_JOB}
MAX_REPORTED_MISMATCHES = 5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class BatchDependencies:
    punch_store: PunchEventStore
    summary_store: SummaryStore
    report_store: ReportStore
    holiday_calendar_factory: Callable[[], HolidayCalendar]
    job_repository: JobRepository
    error_recorder: ErrorRecorder
    connectivity_check: Callable[[], None] | None = None
    clock: Callable[[], datetime] = _utc_now


@dataclass(frozen=True, slots=True)
class JobParameters:
    target_month: date | None = None
    from_date: date | None = None
    to_date: date | None = None
    overrides: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.target_month is not None:
            payload["target_month"] = self.target_month.strftime("%Y-%m")
        if self.from_date is not None:
            payload["from_date"] = self.from_date.isoformat()
        if self.to_date is not None:
            payload["to_date"] = self.to_date.isoformat()
        payload.update(self.overrides)
        return payload


def _parse_month(value: Any) -> date:
    try:
        return datetime.strptime(str(value).strip(), "%Y-%m").date()
    except ValueError as exc:
        raise ConfigurationError(f"target_month must be YYYY-MM: {value!r}") from exc


def _parse_date(key: str, value: Any) -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be YYYY-MM-DD: {value!r}") from exc


def parse_job_parameters(job_name: str, raw: Mapping[str, Any] | None, *, today: date) -> JobParameters:
    values = {key: value for key, value in (raw or {}).items() if value is not None}
    allowed = set(TUNING_PARAMETER_KEYS)
    if job_name in MONTH_PARAMETER_JOBS:
        allowed.add("target_month")
    if job_name in DATE_RANGE_PARAMETER_JOBS:
        allowed.update({"from_date", "to_date"})
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ConfigurationError(f"unsupported parameters for {job_name}: {', '.join(unknown)}")

    target_month = None
    if job_name in MONTH_PARAMETER_JOBS:
        target_month = _parse_month(values["target_month"]) if "target_month" in values else today.replace(day=1)

    from_date = _parse_date("from_date", values["from_date"]) if "from_date" in values else None
    to_date = _parse_date("to_date", values["to_date"]) if "to_date" in values else None
    if from_date is not None and to_date is not None and from_date > to_date:
        raise ConfigurationError(f"from_date {from_date} is after to_date {to_date}")

    overrides = {key: values[key] for key in TUNING_PARAMETER_KEYS if key in values}
    return JobParameters(target_month=target_month, from_date=from_date, to_date=to_date, overrides=overrides)


@dataclass(frozen=True, slots=True)
class StepContext:
    job_name: str
    deps: BatchDependencies
    settings: BatchSettings
    parameters: JobParameters
    execution_id: int | None
    cancel_event: threading.Event


@dataclass(frozen=True, slots=True)
class JobDefinition:
    name: str
    description: str
    build_step: Callable[[StepContext], ChunkStep]
    post_validate: Callable[[StepContext], list[str]] | None = None


def _build_daily_step(ctx: StepContext) -> ChunkStep:
    tz = ctx.settings.timezone
    start_utc = local_day_bounds_utc(ctx.parameters.from_date, tz)[0] if ctx.parameters.from_date else None
    end_utc = local_day_bounds_utc(ctx.parameters.to_date, tz)[1] if ctx.parameters.to_date else None
    return ChunkStep(
        "daily_summary_step",
        job_name=ctx.job_name,
        reader=build_punch_event_reader(
            ctx.deps.punch_store,
            page_size=ctx.settings.chunk_size,
            start_utc=start_utc,
            end_utc=end_utc,
        ),
        processor=DailyWorkTimeProcessor(
            punch_store=ctx.deps.punch_store,
            summary_store=ctx.deps.summary_store,
            holiday_calendar=ctx.deps.holiday_calendar_factory(),
            settings=ctx.settings,
            clock=ctx.deps.clock,
        ),
        writer=AttendanceSummaryWriter(ctx.deps.summary_store, name="daily_summary_writer"),
        settings=ctx.settings,
        error_recorder=ctx.deps.error_recorder,
        execution_id=ctx.execution_id,
        cancel_event=ctx.cancel_event,
    )


def _build_monthly_step(ctx: StepContext) -> ChunkStep:
    assert ctx.parameters.target_month is not None
    return ChunkStep(
        "monthly_summary_step",
        job_name=ctx.job_name,
        reader=build_month_event_reader(
            ctx.deps.punch_store,
            ctx.parameters.target_month,
            tz=ctx.settings.timezone,
            page_size=ctx.settings.chunk_size,
        ),
        processor=MonthlyWorkTimeProcessor(
            summary_store=ctx.deps.summary_store,
            settings=ctx.settings,
            clock=ctx.deps.clock,
        ),
        writer=AttendanceSummaryWriter(ctx.deps.summary_store, name="monthly_summary_writer"),
        settings=ctx.settings,
        error_recorder=ctx.deps.error_recorder,
        execution_id=ctx.execution_id,
        cancel_event=ctx.cancel_event,
    )


def _verify_monthly_step(ctx: StepContext) -> list[str]:
    assert ctx.parameters.target_month is not None
    mismatches = verify_monthly_integrity(ctx.deps.summary_store, ctx.parameters.target_month)
    return [mismatch.describe() for mismatch in mismatches]


def _build_overtime_step(ctx: StepContext) -> ChunkStep:
    assert ctx.parameters.target_month is not None
    return ChunkStep(
        "overtime_monitoring_step",
        job_name=ctx.job_name,
        reader=build_monthly_summary_reader(
            ctx.deps.summary_store,
            ctx.parameters.target_month,
            page_size=ctx.settings.chunk_size,
        ),
        processor=OvertimeMonitoringProcessor(
            report_store=ctx.deps.report_store,
            settings=ctx.settings,
            clock=ctx.deps.clock,
        ),
        writer=OvertimeReportWriter(ctx.deps.report_store),
        settings=ctx.settings,
        error_recorder=ctx.deps.error_recorder,
        execution_id=ctx.execution_id,
        cancel_event=ctx.cancel_event,
    )


JOB_DEFINITIONS: dict[str, JobDefinition] = {
    DAILY_JOB: JobDefinition(
        name=DAILY_JOB,
        description="Aggregate punch events into one daily summary per user and work day.",
        build_step=_build_daily_step,
    ),
    MONTHLY_JOB: JobDefinition(
        name=MONTHLY_JOB,
        description="Roll daily summaries of the target month into monthly summaries.",
        build_step=_build_monthly_step,
        post_validate=_verify_monthly_step,
    ),
    OVERTIME_JOB: JobDefinition(
        name=OVERTIME_JOB,
        description="Classify monthly summaries of the target month into overtime reports.",
        build_step=_build_overtime_step,
    ),
}


@dataclass(frozen=True, slots=True)
class JobRunResult:
    job_name: str
    status: str
    items_read: int
    items_written: int
    items_skipped: int
    execution_id: int | None
    run_id: int | None
    error_log: str | None = None
    items_filtered: int = 0
    exit_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status,
            "items_read": self.items_read,
            "items_written": self.items_written,
            "items_skipped": self.items_skipped,
            "items_filtered": self.items_filtered,
            "execution_id": self.execution_id,
            "run_id": self.run_id,
            "error_log": self.error_log,
            "exit_message": self.exit_message,
        }


@dataclass
class _PreparedRun:
    definition: JobDefinition
    parameters: JobParameters
    settings: BatchSettings
    execution: BatchJobExecution
    cancel_event: threading.Event


def _join_messages(*parts: str | None) -> str | None:
    joined = "; ".join(part for part in parts if part)
    return joined or None


class JobLauncher:
    def __init__(
        self,
        deps: BatchDependencies,
        *,
        base_settings: BatchSettings,
        definitions: Mapping[str, JobDefinition] | None = None,
    ) -> None:
        self._deps = deps
        self._base_settings = base_settings
        self._definitions = dict(definitions if definitions is not None else JOB_DEFINITIONS)
        self._lock = threading.Lock()
        self._running: dict[str, int | None] = {}
        self._cancel_events: dict[int, threading.Event] = {}
        self._executor: ThreadPoolExecutor | None = None

    @property
    def base_settings(self) -> BatchSettings:
        return self._base_settings

    def job_names(self) -> list[str]:
        return sorted(self._definitions)

    def describe_jobs(self) -> list[dict[str, Any]]:
        running = self.running_executions()
        return [
            {
                "name": definition.name,
                "description": definition.description,
                "running_execution_id": running.get(definition.name),
            }
            for definition in sorted(self._definitions.values(), key=lambda item: item.name)
        ]

    def run(self, job_name: str, parameters: Mapping[str, Any] | None = None) -> JobRunResult:
        prepared = self._prepare(job_name, parameters)
        return self._execute(prepared)

    def submit(
        self,
        job_name: str,
        parameters: Mapping[str, Any] | None = None,
    ) -> tuple[BatchJobExecution, Future[JobRunResult]]:
        prepared = self._prepare(job_name, parameters)
        try:
            future = self._get_executor().submit(self._execute, prepared)
        except RuntimeError:
            self._release(prepared)
            raise
        return prepared.execution, future

    def stop(self, execution_id: int) -> bool:
        with self._lock:
            cancel_event = self._cancel_events.get(execution_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        logger.info("job_stop_requested", extra={"execution_id": execution_id})
        return True

    def get_execution(self, execution_id: int) -> BatchJobExecution | None:
        return self._deps.job_repository.get_execution(execution_id)

    def list_executions(self, job_name: str | None = None, limit: int = 50) -> list[BatchJobExecution]:
        return self._deps.job_repository.list_executions(job_name, limit)

    def running_executions(self) -> dict[str, int]:
        with self._lock:
            return {name: execution_id for name, execution_id in self._running.items() if execution_id is not None}

    def statistics(self) -> dict[str, Any]:
        counts = self._deps.job_repository.count_by_status()
        completed = counts.get(JobStatus.COMPLETED.value, 0)
        finished = completed + counts.get(JobStatus.FAILED.value, 0) + counts.get(JobStatus.STOPPED.value, 0)
        return {
            "total_executions": sum(counts.values()),
            "counts_by_status": counts,
            "success_rate": round(completed * 100 / finished, 2) if finished else 0.0,
            "running_executions": self.running_executions(),
            "error_files": self._deps.error_recorder.statistics(),
        }

    def cleanup_error_files(self, retention_days: int) -> int:
        return self._deps.error_recorder.cleanup_old_files(retention_days)

    def shutdown(self, *, wait: bool = True) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
            cancel_events = list(self._cancel_events.values())
        if not wait:
            for cancel_event in cancel_events:
                cancel_event.set()
        if executor is not None:
            executor.shutdown(wait=wait)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._base_settings.worker_pool_size,
                    thread_name_prefix="batch-job",
                )
            return self._executor

    def _today(self) -> date:
        return self._deps.clock().astimezone(self._base_settings.timezone).date()

    def _prepare(self, job_name: str, raw_parameters: Mapping[str, Any] | None) -> _PreparedRun:
        definition = self._definitions.get(job_name)
        if definition is None:
            raise ConfigurationError(f"unknown job: {job_name}")
        parameters = parse_job_parameters(job_name, raw_parameters, today=self._today())
        settings = self._base_settings.with_overrides(parameters.overrides)
        if self._deps.connectivity_check is not None:
            self._deps.connectivity_check()

        with self._lock:
            if job_name in self._running:
                raise JobAlreadyRunningError(f"job {job_name} is already running")
            self._running[job_name] = None

        try:
            abandoned = self._deps.job_repository.fail_abandoned_executions(job_name)
            if abandoned:
                logger.warning("abandoned_executions_failed", extra={"job_name": job_name, "count": abandoned})
            execution = self._deps.job_repository.create_execution(job_name, parameters.to_dict())
        except Exception:
            with self._lock:
                self._running.pop(job_name, None)
            raise

        cancel_event = threading.Event()
        with self._lock:
            self._running[job_name] = execution.id
            self._cancel_events[execution.id] = cancel_event
        logger.info(
            "job_prepared",
            extra={
                "job_name": job_name,
                "execution_id": execution.id,
                "run_id": execution.run_id,
                "parameters": parameters.to_dict(),
                "batch_settings": settings.to_dict(),
            },
        )
        return _PreparedRun(
            definition=definition,
            parameters=parameters,
            settings=settings,
            execution=execution,
            cancel_event=cancel_event,
        )

    def _release(self, prepared: _PreparedRun) -> None:
        with self._lock:
            if self._running.get(prepared.definition.name) == prepared.execution.id:
                self._running.pop(prepared.definition.name, None)
            self._cancel_events.pop(prepared.execution.id, None)

    def _execute(self, prepared: _PreparedRun) -> JobRunResult:
        definition = prepared.definition
        execution = prepared.execution
        try:
            execution.status = JobStatus.STARTED.value
            execution.started_at = self._deps.clock()
            self._deps.job_repository.save_execution(execution)
            logger.info(
                "job_started",
                extra={"job_name": definition.name, "execution_id": execution.id, "run_id": execution.run_id},
            )

            ctx = StepContext(
                job_name=definition.name,
                deps=self._deps,
                settings=prepared.settings,
                parameters=prepared.parameters,
                execution_id=execution.id,
                cancel_event=prepared.cancel_event,
            )
            step_execution = self._run_step(definition, ctx)
            error_log = self._finish_error_log(definition.name, execution.id, step_execution)

            execution.status = step_execution.status.value
            execution.read_count = step_execution.read_count
            execution.write_count = step_execution.write_count
            execution.skip_count = step_execution.skip_count
            execution.filter_count = step_execution.filter_count
            execution.commit_count = step_execution.commit_count
            execution.rollback_count = step_execution.rollback_count
            execution.exit_message = step_execution.exit_message
            execution.error_log_path = error_log
            execution.ended_at = self._deps.clock()
            self._deps.job_repository.save_execution(execution)
        except Exception as exc:
            self._mark_crashed(definition.name, execution, exc)
            raise
        finally:
            self._release(prepared)

        result = JobRunResult(
            job_name=definition.name,
            status=execution.status,
            items_read=execution.read_count,
            items_written=execution.write_count,
            items_skipped=execution.skip_count,
            items_filtered=execution.filter_count,
            execution_id=execution.id,
            run_id=execution.run_id,
            error_log=execution.error_log_path,
            exit_message=execution.exit_message,
        )
        log = logger.info if result.status == JobStatus.COMPLETED.value else logger.warning
        log("job_finished", extra=result.to_dict())
        return result

    def _mark_crashed(self, job_name: str, execution: BatchJobExecution, exc: Exception) -> None:
        """Best-effort FAILED status for a run that raised out of ``_execute``.

        Submitted runs keep their exception inside the future, so this is the
        only place the crash is logged.
        """
        logger.error(
            "job_crashed",
            exc_info=exc,
            extra={
                "job_name": job_name,
                "execution_id": execution.id,
                "run_id": execution.run_id,
                "error_kind": getattr(exc, "kind", "UNEXPECTED_ERROR"),
            },
        )
        execution.status = JobStatus.FAILED.value
        execution.exit_message = f"{exc.__class__.__name__}: {exc}"
        execution.ended_at = self._deps.clock()
        try:
            self._deps.job_repository.save_execution(execution)
        except Exception:
            logger.exception(
                "job_crash_status_not_saved",
                extra={"job_name": job_name, "execution_id": execution.id},
            )

    def _run_step(self, definition: JobDefinition, ctx: StepContext) -> StepExecution:
        try:
            step = definition.build_step(ctx)
        except Exception as exc:
            logger.exception("job_step_build_failed", extra={"job_name": definition.name})
            self._deps.error_recorder.record(
                ErrorRecord(
                    job_name=definition.name,
                    step_name=f"{definition.name}_step",
                    error_kind=getattr(exc, "kind", "UNEXPECTED_ERROR"),
                    message=str(exc),
                    item=None,
                    occurred_at=self._deps.clock(),
                    execution_id=ctx.execution_id,
                    stack_trace=traceback.format_exc(),
                )
            )
            return StepExecution(
                step_name=f"{definition.name}_step",
                status=StepStatus.FAILED,
                error_count=1,
                exit_message=f"{exc.__class__.__name__}: {exc}",
                ended_at=self._deps.clock(),
            )

        step_execution = step.execute()
        if step_execution.status != StepStatus.COMPLETED or definition.post_validate is None:
            return step_execution

        try:
            issues = definition.post_validate(ctx)
        except Exception as exc:
            logger.exception("job_post_validation_failed", extra={"job_name": definition.name})
            step_execution.exit_message = _join_messages(
                step_execution.exit_message,
                f"post-validation failed: {exc.__class__.__name__}: {exc}",
            )
            return step_execution

        if issues:
            shown = issues[:MAX_REPORTED_MISMATCHES]
            more = len(issues) - len(shown)
            summary = f"integrity check found {len(issues)} mismatches: " + ", ".join(shown)
            if more:
                summary += f" (+{more} more)"
            step_execution.exit_message = _join_messages(step_execution.exit_message, summary)
        return step_execution

    def _finish_error_log(self, job_name: str, execution_id: int, step_execution: StepExecution) -> str | None:
        if step_execution.error_count == 0:
            return None
        self._deps.error_recorder.write_summary_report(
            job_name=job_name,
            execution_id=execution_id,
            errors_by_step={step_execution.step_name: step_execution.error_count},
        )
        return str(self._deps.error_recorder.log_path(job_name, execution_id))


def build_job_launcher(settings: Settings | None = None) -> JobLauncher:
    from app.db import SessionLocal
    from app.services.stores import (
        SqlAlchemyHolidayCalendar,
        SqlAlchemyJobRepository,
        SqlAlchemyPunchEventStore,
        SqlAlchemyReportStore,
        SqlAlchemySummaryStore,
        check_store_connectivity,
    )

    source = settings or get_settings()
    base_settings = build_batch_settings(source)
    error_recorder = FileErrorRecorder(source.batch_error_dir, prefix=source.batch_error_file_prefix)
    error_recorder.cleanup_old_files(source.batch_error_retention_days)
    deps = BatchDependencies(
        punch_store=SqlAlchemyPunchEventStore(SessionLocal),
        summary_store=SqlAlchemySummaryStore(SessionLocal),
        report_store=SqlAlchemyReportStore(SessionLocal),
        holiday_calendar_factory=partial(SqlAlchemyHolidayCalendar, SessionLocal),
        job_repository=SqlAlchemyJobRepository(SessionLocal),
        error_recorder=error_recorder,
        connectivity_check=partial(check_store_connectivity, SessionLocal),
    )
    return JobLauncher(deps, base_settings=base_settings)


@lru_cache
def get_job_launcher() -> JobLauncher:
    return build_job_launcher()
