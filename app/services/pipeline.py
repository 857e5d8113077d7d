"""Chunk-oriented read/process/write runner.

A step pulls up to ``chunk_size`` items from an ``ItemReader``, hands each to an
``ItemProcessor`` which answers with a tagged result (``Produced``, ``Skipped``
or ``Failed``), and passes the produced outputs to an ``ItemWriter`` that
persists them in one transaction. Chunks run strictly one after another, so
everything committed by chunk N is visible when chunk N+1 is processed.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Protocol, TypeVar, Union

from app.errors import BatchError, SkipLimitExceededError, TransientStoreError
from app.services.error_recorder import ErrorRecord, ErrorRecorder
from app.settings import BatchSettings

logger = logging.getLogger("app.batch.pipeline")

T = TypeVar("T")
R = TypeVar("R")
K = TypeVar("K")
T_co = TypeVar("T_co", covariant=True)
T_contra = TypeVar("T_contra", contravariant=True)
R_contra = TypeVar("R_contra", contravariant=True)

MAX_ITEM_REPR_LENGTH = 2000


@dataclass(frozen=True, slots=True)
class Produced(Generic[R]):
    output: R


@dataclass(frozen=True, slots=True)
class Skipped:
    reason: str


@dataclass(frozen=True, slots=True)
class Failed:
    error: Exception


ProcessResult = Union[Produced[R], Skipped, Failed]


class ItemReader(Protocol[T_co]):
    def read(self) -> T_co | None:
        """Return the next item, or ``None`` once the source is exhausted."""


class ItemProcessor(Protocol[T_contra, R]):
    def process(self, item: T_contra) -> ProcessResult[R]:
        ...


class ItemWriter(Protocol[R_contra]):
    def write(self, items: list[R_contra]) -> int:
        """Persist one chunk atomically and return the number of rows written."""


class ChunkState(str, enum.Enum):
    IDLE = "IDLE"
    READING = "READING"
    PROCESSING = "PROCESSING"
    WRITING = "WRITING"
    COMMITTED = "COMMITTED"


class StepStatus(str, enum.Enum):
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


@dataclass
class StepExecution:
    step_name: str
    status: StepStatus = StepStatus.STARTED
    read_count: int = 0
    write_count: int = 0
    skip_count: int = 0
    filter_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    error_count: int = 0
    exit_message: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "read_count": self.read_count,
            "write_count": self.write_count,
            "skip_count": self.skip_count,
            "filter_count": self.filter_count,
            "commit_count": self.commit_count,
            "rollback_count": self.rollback_count,
            "error_count": self.error_count,
            "exit_message": self.exit_message,
        }


class PagedReader(Generic[T, K]):
    """Keyset-paginated reader.

    ``fetch_page(after_key, limit)`` must return rows strictly after
    ``after_key`` in key order. The key only advances once an item has been
    handed out, so a failed fetch can simply be retried.
    """

    def __init__(
        self,
        fetch_page: Callable[[K | None, int], list[T]],
        key_of: Callable[[T], K],
        *,
        page_size: int,
        name: str,
    ) -> None:
        self._fetch_page = fetch_page
        self._key_of = key_of
        self._page_size = max(1, page_size)
        self._buffer: deque[T] = deque()
        self._last_key: K | None = None
        self._exhausted = False
        self.name = name
        self.page_count = 0

    def read(self) -> T | None:
        if not self._buffer:
            if self._exhausted:
                return None
            page = self._fetch_page(self._last_key, self._page_size)
            self.page_count += 1
            if len(page) < self._page_size:
                self._exhausted = True
            if not page:
                return None
            self._buffer.extend(page)

        item = self._buffer.popleft()
        self._last_key = self._key_of(item)
        return item


@dataclass
class _ChunkOutcome(Generic[R]):
    outputs: list[R] = field(default_factory=list)
    failures: list[tuple[Any, Exception]] = field(default_factory=list)
    filtered: int = 0


class ChunkStep(Generic[T, R]):
    def __init__(
        self,
        name: str,
        *,
        job_name: str,
        reader: ItemReader[T],
        processor: ItemProcessor[T, R],
        writer: ItemWriter[R],
        settings: BatchSettings,
        error_recorder: ErrorRecorder | None = None,
        execution_id: int | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self.job_name = job_name
        self.state = ChunkState.IDLE
        self._reader = reader
        self._processor = processor
        self._writer = writer
        self._settings = settings
        self._error_recorder = error_recorder
        self._execution_id = execution_id
        self._cancel_event = cancel_event
        self._clock = clock
        self._sleep = sleep

    def execute(self) -> StepExecution:
        execution = StepExecution(step_name=self.name)
        deadline = self._clock() + self._settings.timeout_seconds
        logger.info(
            "step_started",
            extra={
                "job_name": self.job_name,
                "step_name": self.name,
                "execution_id": self._execution_id,
                "chunk_size": self._settings.chunk_size,
            },
        )

        try:
            while True:
                if self._cancel_event is not None and self._cancel_event.is_set():
                    execution.status = StepStatus.STOPPED
                    execution.exit_message = "stopped between chunks"
                    break
                if self._clock() > deadline:
                    execution.status = StepStatus.FAILED
                    execution.error_count += 1
                    execution.exit_message = f"timeout after {self._settings.timeout_seconds}s"
                    self._record("STEP_TIMEOUT", execution.exit_message, item=None)
                    break

                self.state = ChunkState.READING
                items = self._read_chunk(execution)
                if not items:
                    break
                execution.read_count += len(items)
                self._process_and_write(items, execution)
        except SkipLimitExceededError as exc:
            execution.status = StepStatus.FAILED
            execution.error_count += 1
            execution.exit_message = exc.message
            self._record(exc.kind, exc.message, item=None, error=exc)
        except TransientStoreError as exc:
            execution.status = StepStatus.FAILED
            execution.error_count += 1
            execution.exit_message = f"retry limit exhausted: {exc.message}"
            self._record(exc.kind, execution.exit_message, item=None, error=exc)
        except Exception as exc:
            logger.exception(
                "step_crashed",
                extra={"job_name": self.job_name, "step_name": self.name, "execution_id": self._execution_id},
            )
            execution.status = StepStatus.FAILED
            execution.error_count += 1
            execution.exit_message = f"{exc.__class__.__name__}: {exc}"
            self._record(_error_kind(exc), str(exc), item=None, error=exc)

        if execution.status == StepStatus.STARTED:
            execution.status = StepStatus.COMPLETED
        self.state = ChunkState.IDLE
        execution.ended_at = datetime.now(timezone.utc)

        log = logger.info if execution.status == StepStatus.COMPLETED else logger.warning
        log(
            "step_finished",
            extra={
                "job_name": self.job_name,
                "execution_id": self._execution_id,
                **execution.to_dict(),
            },
        )
        return execution

    def _read_chunk(self, execution: StepExecution) -> list[T]:
        items: list[T] = []
        attempt = 0
        while len(items) < self._settings.chunk_size:
            try:
                item = self._reader.read()
            except TransientStoreError as exc:
                attempt += 1
                logger.warning(
                    "read_retry",
                    extra={"step_name": self.name, "attempt": attempt, "error": exc.message},
                )
                if attempt > self._settings.retry_limit:
                    raise
                self._backoff(attempt)
                continue
            if item is None:
                break
            items.append(item)
        return items

    def _process_and_write(self, items: list[T], execution: StepExecution) -> None:
        attempt = 0
        while True:
            try:
                self.state = ChunkState.PROCESSING
                outcome = self._process_chunk(items, execution)
                self.state = ChunkState.WRITING
                written = self._writer.write(outcome.outputs) if outcome.outputs else 0
            except TransientStoreError as exc:
                attempt += 1
                execution.rollback_count += 1
                logger.warning(
                    "chunk_rolled_back",
                    extra={
                        "job_name": self.job_name,
                        "step_name": self.name,
                        "attempt": attempt,
                        "retry_limit": self._settings.retry_limit,
                        "error": exc.message,
                    },
                )
                if attempt > self._settings.retry_limit:
                    raise
                self._backoff(attempt)
                continue

            self.state = ChunkState.COMMITTED
            execution.commit_count += 1
            execution.write_count += written
            execution.filter_count += outcome.filtered
            execution.skip_count += len(outcome.failures)
            execution.error_count += len(outcome.failures)
            for item, error in outcome.failures:
                self._record(_error_kind(error), str(error), item=item, error=error)
            logger.info(
                "chunk_committed",
                extra={
                    "job_name": self.job_name,
                    "step_name": self.name,
                    "chunk_items": len(items),
                    "written": written,
                    "filtered": outcome.filtered,
                    "skipped": len(outcome.failures),
                    "commit_count": execution.commit_count,
                },
            )
            return

    def _process_chunk(self, items: list[T], execution: StepExecution) -> _ChunkOutcome[R]:
        outcome: _ChunkOutcome[R] = _ChunkOutcome()
        for item in items:
            result = self._process_item(item)
            if isinstance(result, Produced):
                outcome.outputs.append(result.output)
            elif isinstance(result, Skipped):
                outcome.filtered += 1
            else:
                outcome.failures.append((item, result.error))
                skip_count = execution.skip_count + len(outcome.failures)
                if skip_count > self._settings.skip_limit:
                    for failed_item, error in outcome.failures:
                        self._record(_error_kind(error), str(error), item=failed_item, error=error)
                    execution.skip_count = skip_count
                    raise SkipLimitExceededError(skip_count, self._settings.skip_limit)
        return outcome

    def _process_item(self, item: T) -> ProcessResult[R]:
        try:
            return self._processor.process(item)
        except TransientStoreError:
            raise
        except Exception as exc:
            logger.exception(
                "item_processing_failed",
                extra={"job_name": self.job_name, "step_name": self.name, "item": _item_repr(item)},
            )
            return Failed(exc)

    def _backoff(self, attempt: int) -> None:
        delay = self._settings.retry_backoff_seconds * attempt
        if delay > 0:
            self._sleep(delay)

    def _record(
        self,
        error_kind: str,
        message: str,
        *,
        item: Any,
        error: BaseException | None = None,
    ) -> None:
        if self._error_recorder is None:
            return
        stack_trace = None
        if error is not None and error.__traceback__ is not None:
            stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        self._error_recorder.record(
            ErrorRecord(
                job_name=self.job_name,
                step_name=self.name,
                error_kind=error_kind,
                message=message,
                item=_item_repr(item) if item is not None else None,
                occurred_at=datetime.now(timezone.utc),
                execution_id=self._execution_id,
                stack_trace=stack_trace,
            )
        )


def _error_kind(error: BaseException) -> str:
    if isinstance(error, BatchError):
        return error.kind
    return "UNEXPECTED_ERROR"


def _item_repr(item: Any) -> str:
    return repr(item)[:MAX_ITEM_REPR_LENGTH]
