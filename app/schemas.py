from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobRunRequest(BaseModel):
    target_month: str | None = Field(default=None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    from_date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    to_date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    chunk_size: int | None = Field(default=None, ge=1, le=10000)
    skip_limit: int | None = Field(default=None, ge=0)
    retry_limit: int | None = Field(default=None, ge=0, le=10)
    timeout_seconds: int | None = Field(default=None, ge=1)
    run_async: bool = False

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_date_range(self) -> "JobRunRequest":
        if self.from_date and self.to_date and self.from_date > self.to_date:
            raise ValueError("from_date must be on or before to_date")
        return self

    def job_parameters(self) -> dict[str, Any]:
        return self.model_dump(exclude={"run_async"}, exclude_none=True)


class JobRunResponse(BaseModel):
    job_name: str
    status: Literal["STARTING", "STARTED", "COMPLETED", "FAILED", "STOPPED"]
    execution_id: int | None = None
    run_id: int | None = None
    items_read: int = 0
    items_written: int = 0
    items_skipped: int = 0
    items_filtered: int = 0
    error_log: str | None = None
    exit_message: str | None = None


class JobDefinitionRead(BaseModel):
    name: str
    description: str
    running_execution_id: int | None = None


class JobExecutionRead(BaseModel):
    id: int
    job_name: str
    run_id: int
    status: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    read_count: int
    write_count: int
    skip_count: int
    filter_count: int
    commit_count: int
    rollback_count: int
    exit_message: str | None = None
    error_log_path: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class JobStopResponse(BaseModel):
    execution_id: int
    stop_requested: bool


class BatchStatusResponse(BaseModel):
    total_executions: int
    counts_by_status: dict[str, int]
    success_rate: float
    running_executions: dict[str, int]
    error_files: dict[str, Any]
    batch_settings: dict[str, Any]
