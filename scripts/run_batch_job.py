#!/usr/bin/env python
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable, Sequence

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.errors import BatchError
from app.logging_utils import setup_json_logging
from app.models import JobStatus
from app.schemas import JobExecutionRead
from app.services.batch_jobs import JOB_DEFINITIONS, JobLauncher, build_job_launcher
from app.settings import get_settings

EXIT_OK = 0
EXIT_JOB_FAILED = 1
EXIT_BAD_INVOCATION = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run and inspect attendance batch jobs.")
    subcommands = parser.add_subparsers(dest="command", required=True)

    run_parser = subcommands.add_parser("run", help="Run one job to completion on this process.")
    run_parser.add_argument("job_name", choices=sorted(JOB_DEFINITIONS))
    run_parser.add_argument("--target-month", help="YYYY-MM, monthly and overtime jobs")
    run_parser.add_argument("--from-date", help="YYYY-MM-DD, daily job")
    run_parser.add_argument("--to-date", help="YYYY-MM-DD, daily job")
    run_parser.add_argument("--chunk-size", type=int)
    run_parser.add_argument("--skip-limit", type=int)
    run_parser.add_argument("--retry-limit", type=int)
    run_parser.add_argument("--timeout-seconds", type=int)

    list_parser = subcommands.add_parser("executions", help="List recent job executions.")
    list_parser.add_argument("--job-name", choices=sorted(JOB_DEFINITIONS))
    list_parser.add_argument("--limit", type=int, default=20)

    subcommands.add_parser("status", help="Show execution statistics.")

    cleanup_parser = subcommands.add_parser("cleanup-errors", help="Delete old error log files.")
    cleanup_parser.add_argument("--retention-days", type=int, default=None)
    return parser


def _run_parameters(args: argparse.Namespace) -> dict[str, Any]:
    parameters = {
        "target_month": args.target_month,
        "from_date": args.from_date,
        "to_date": args.to_date,
        "chunk_size": args.chunk_size,
        "skip_limit": args.skip_limit,
        "retry_limit": args.retry_limit,
        "timeout_seconds": args.timeout_seconds,
    }
    return {key: value for key, value in parameters.items() if value is not None}


def _print(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def main(
    argv: Sequence[str] | None = None,
    *,
    launcher_factory: Callable[[], JobLauncher] = build_job_launcher,
) -> int:
    args = build_parser().parse_args(argv)
    launcher = launcher_factory()
    try:
        if args.command == "run":
            result = launcher.run(args.job_name, _run_parameters(args))
            _print(result.to_dict())
            return EXIT_OK if result.status == JobStatus.COMPLETED.value else EXIT_JOB_FAILED
        if args.command == "executions":
            executions = launcher.list_executions(args.job_name, args.limit)
            _print([JobExecutionRead.model_validate(item).model_dump(mode="json") for item in executions])
            return EXIT_OK
        if args.command == "status":
            _print({**launcher.statistics(), "batch_settings": launcher.base_settings.to_dict()})
            return EXIT_OK

        retention_days = args.retention_days
        if retention_days is None:
            retention_days = get_settings().batch_error_retention_days
        _print({"removed_files": launcher.cleanup_error_files(retention_days)})
        return EXIT_OK
    except BatchError as exc:
        _print({"error": {"code": exc.kind, "message": exc.message}})
        return EXIT_BAD_INVOCATION
    finally:
        launcher.shutdown()


if __name__ == "__main__":
    setup_json_logging(get_settings().log_level)
    raise SystemExit(main())
