from fastapi import APIRouter, Depends, Query, Request

from app.errors import ApiError
from app.schemas import (
    BatchStatusResponse,
    JobDefinitionRead,
    JobExecutionRead,
    JobRunRequest,
    JobRunResponse,
    JobStopResponse,
)
from app.services.batch_jobs import JobLauncher, get_job_launcher

router = APIRouter(prefix="/api/batch", tags=["batch"])


def _require_job(launcher: JobLauncher, job_name: str) -> None:
    if job_name not in launcher.job_names():
        raise ApiError(status_code=404, code="JOB_NOT_FOUND", message=f"Unknown batch job: {job_name}.")


@router.get("/jobs", response_model=list[JobDefinitionRead])
def list_jobs(launcher: JobLauncher = Depends(get_job_launcher)) -> list[JobDefinitionRead]:
    return [JobDefinitionRead(**item) for item in launcher.describe_jobs()]


@router.post("/jobs/{job_name}/run", response_model=JobRunResponse)
def run_job(
    job_name: str,
    request: Request,
    payload: JobRunRequest | None = None,
    launcher: JobLauncher = Depends(get_job_launcher),
) -> JobRunResponse:
    _require_job(launcher, job_name)
    payload = payload or JobRunRequest()
    request.state.actor = "batch"

    if payload.run_async:
        execution, _ = launcher.submit(job_name, payload.job_parameters())
        request.state.event_id = execution.id
        return JobRunResponse(
            job_name=job_name,
            status=execution.status,
            execution_id=execution.id,
            run_id=execution.run_id,
        )

    result = launcher.run(job_name, payload.job_parameters())
    request.state.event_id = result.execution_id
    return JobRunResponse(**result.to_dict())


@router.get("/executions", response_model=list[JobExecutionRead])
def list_executions(
    job_name: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    launcher: JobLauncher = Depends(get_job_launcher),
) -> list[JobExecutionRead]:
    return [JobExecutionRead.model_validate(item) for item in launcher.list_executions(job_name, limit)]


@router.get("/executions/{execution_id}", response_model=JobExecutionRead)
def get_execution(
    execution_id: int,
    launcher: JobLauncher = Depends(get_job_launcher),
) -> JobExecutionRead:
    execution = launcher.get_execution(execution_id)
    if execution is None:
        raise ApiError(status_code=404, code="EXECUTION_NOT_FOUND", message="Job execution not found.")
    return JobExecutionRead.model_validate(execution)


@router.post("/executions/{execution_id}/stop", response_model=JobStopResponse)
def stop_execution(
    execution_id: int,
    launcher: JobLauncher = Depends(get_job_launcher),
) -> JobStopResponse:
    if not launcher.stop(execution_id):
        raise ApiError(
            status_code=409,
            code="EXECUTION_NOT_RUNNING",
            message="Job execution is not running in this process.",
        )
    return JobStopResponse(execution_id=execution_id, stop_requested=True)


@router.get("/status", response_model=BatchStatusResponse)
def batch_status(launcher: JobLauncher = Depends(get_job_launcher)) -> BatchStatusResponse:
    return BatchStatusResponse(
        **launcher.statistics(),
        batch_settings=launcher.base_settings.to_dict(),
    )
