from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class BatchError(Exception):
    """Base class for every error raised by the batch pipeline."""

    kind = "BATCH_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BatchError):
    """A single input item is malformed; the item is skipped."""

    kind = "VALIDATION_ERROR"


class TransientStoreError(BatchError):
    """Write conflict, timeout or lost connection; the chunk is retried."""

    kind = "TRANSIENT_STORE_ERROR"


class ConfigurationError(BatchError):
    """Invalid limit, threshold or job parameter; the job never starts."""

    kind = "CONFIGURATION_ERROR"


class SkipLimitExceededError(BatchError):
    kind = "SKIP_LIMIT_EXCEEDED"

    def __init__(self, skip_count: int, skip_limit: int):
        super().__init__(f"skip limit exceeded: {skip_count} > {skip_limit}")
        self.skip_count = skip_count
        self.skip_limit = skip_limit


class JobAlreadyRunningError(BatchError):
    kind = "JOB_ALREADY_RUNNING"


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
