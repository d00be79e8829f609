"""Single-worker job queue that serializes access to the sandbox.

Every piece of work that touches the sandbox (a full reasoning loop or a
single code execution) is submitted here and runs strictly one at a time in
submission order.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol, Union, runtime_checkable

from ...services.telemetry import ProgressChannel, ProgressKind
from .runner import LoopController
from .tool_invoker import ToolInvoker

__all__ = [
    "DEFAULT_MAX_FINISHED_JOBS",
    "ConversationRequest",
    "ExecutionRequest",
    "Job",
    "JobDispatcher",
    "JobKind",
    "JobQueue",
    "JobRequest",
    "JobStatus",
    "LoopJobDispatcher",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_FINISHED_JOBS = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Job Records
# -----------------------------------------------------------------------------


class JobKind(str, Enum):
    """Kinds of queued work."""

    CONVERSATIONAL = "conversational"
    DIRECT_EXECUTION = "direct_execution"

    @classmethod
    def parse(cls, value: JobKind | str) -> JobKind:
        if isinstance(value, JobKind):
            return value
        normalized = str(value or "").strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            raise ValueError(f"Unknown job kind: {value!r}") from None


class JobStatus(str, Enum):
    """State machine for queued jobs."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
_ALLOWED_TRANSITIONS: Mapping[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


@dataclass(slots=True, frozen=True)
class ConversationRequest:
    """Input of a conversational job: one user message run through the loop."""

    message: str
    max_steps: int | None = None

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message}
        if self.max_steps is not None:
            payload["max_steps"] = self.max_steps
        return payload


@dataclass(slots=True, frozen=True)
class ExecutionRequest:
    """Input of a direct-execution job: code run once in the sandbox."""

    code: str

    def as_payload(self) -> dict[str, Any]:
        return {"code": self.code}


JobRequest = Union[ConversationRequest, ExecutionRequest]


def _coerce_request(kind: JobKind, payload: JobRequest | Mapping[str, Any]) -> JobRequest:
    if kind is JobKind.CONVERSATIONAL:
        if isinstance(payload, ConversationRequest):
            return payload
        if not isinstance(payload, Mapping):
            raise ValueError("Conversational jobs require a mapping payload")
        message = payload.get("message")
        if not isinstance(message, str):
            raise ValueError("Conversational jobs require a string 'message'")
        max_steps = payload.get("max_steps")
        if max_steps is not None:
            if isinstance(max_steps, bool) or not isinstance(max_steps, int) or max_steps < 1:
                raise ValueError("'max_steps' must be a positive integer")
        return ConversationRequest(message=message, max_steps=max_steps)

    if isinstance(payload, ExecutionRequest):
        return payload
    if not isinstance(payload, Mapping):
        raise ValueError("Direct-execution jobs require a mapping payload")
    code = payload.get("code")
    if not isinstance(code, str) or not code.strip():
        raise ValueError("Direct-execution jobs require a non-empty string 'code'")
    return ExecutionRequest(code=code)


@dataclass(slots=True)
class Job:
    """Unit of queued work. Owned by the :class:`JobQueue`.

    Callers receive snapshots; mutating one never affects the queue.
    """

    job_id: str
    kind: JobKind
    request: JobRequest
    status: JobStatus = JobStatus.QUEUED
    submitted_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    sequence: int = 0

    def _transition(self, status: JobStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Invalid job transition {self.status.value} -> {status.value} for {self.job_id}")
        self.status = status

    def mark_running(self) -> None:
        self._transition(JobStatus.RUNNING)
        self.started_at = _utcnow()

    def mark_completed(self, result: Mapping[str, Any] | None) -> None:
        self._transition(JobStatus.COMPLETED)
        self.result = dict(result or {})
        self.completed_at = _utcnow()

    def mark_failed(self, error: str) -> None:
        self._transition(JobStatus.FAILED)
        self.error = error
        self.completed_at = _utcnow()

    def mark_cancelled(self) -> None:
        self._transition(JobStatus.CANCELLED)
        self.completed_at = _utcnow()

    def snapshot(self) -> Job:
        return replace(self, result=dict(self.result) if self.result is not None else None)

    def as_payload(self) -> dict[str, Any]:
        payload = {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "submitted_at": self.submitted_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "input": self.request.as_payload(),
            "result": self.result,
            "error": self.error,
        }
        return {key: value for key, value in payload.items() if value is not None}


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------


@runtime_checkable
class JobDispatcher(Protocol):
    """Executes the work behind a job once the queue reaches it."""

    async def run_conversation(self, request: ConversationRequest) -> Mapping[str, Any]:
        ...

    async def run_execution(self, request: ExecutionRequest) -> Mapping[str, Any]:
        ...


class LoopJobDispatcher:
    """Dispatches jobs to a loop controller and its tool invoker."""

    def __init__(self, controller: LoopController, invoker: ToolInvoker) -> None:
        self._controller = controller
        self._invoker = invoker

    async def run_conversation(self, request: ConversationRequest) -> Mapping[str, Any]:
        result = await self._controller.run(request.message, request.max_steps)
        return result.as_payload()

    async def run_execution(self, request: ExecutionRequest) -> Mapping[str, Any]:
        tool_result = await self._invoker.execute_code(request.code)
        payload = tool_result.to_dict()
        if tool_result.outcome is not None:
            payload["stdout"] = tool_result.outcome.stdout_text()
            payload["outcome"] = tool_result.outcome.to_dict()
        return payload


# -----------------------------------------------------------------------------
# Job Queue
# -----------------------------------------------------------------------------


class JobQueue:
    """FIFO queue drained by a single asyncio worker task.

    At most one job is ``running`` at any moment. Cancellation is only honored
    while a job is still ``queued``; running jobs always finish.

    Only the ``max_finished_jobs`` most recently finished jobs are retained;
    older ones are evicted and look unknown to ``status`` and ``wait``.
    """

    def __init__(
        self,
        dispatcher: JobDispatcher,
        *,
        progress: ProgressChannel | None = None,
        max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS,
    ) -> None:
        if max_finished_jobs < 1:
            raise ValueError(f"max_finished_jobs must be at least 1, got {max_finished_jobs}")
        self._dispatcher = dispatcher
        self._progress = progress or ProgressChannel()
        self._max_finished_jobs = max_finished_jobs
        self._jobs: dict[str, Job] = {}
        self._order: deque[str] = deque()
        self._finished: deque[str] = deque()
        self._done: dict[str, asyncio.Event] = {}
        self._sequence = itertools.count()
        self._worker_task: asyncio.Task[None] | None = None
        self._running_job_id: str | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def submit(self, kind: JobKind | str, payload: JobRequest | Mapping[str, Any]) -> str:
        """Queue a job and return its id without waiting for it to run.

        Must be called from within a running event loop.

        Raises:
            ValueError: If the kind is unknown or the payload is invalid.
            RuntimeError: If the queue has been closed or no event loop is running.
        """
        if self._closed:
            raise RuntimeError("Job queue is closed")
        job_kind = JobKind.parse(kind)
        request = _coerce_request(job_kind, payload)
        loop = asyncio.get_running_loop()

        job = Job(
            job_id=uuid.uuid4().hex,
            kind=job_kind,
            request=request,
            sequence=next(self._sequence),
        )
        self._jobs[job.job_id] = job
        self._done[job.job_id] = asyncio.Event()
        self._order.append(job.job_id)
        LOGGER.info("Queued %s job %s (%d waiting)", job_kind.value, job.job_id, len(self._order))
        self._progress.emit(f"Job {job.job_id} queued ({job_kind.value})", ProgressKind.JOB)
        self._ensure_worker(loop)
        return job.job_id

    def status(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return job.snapshot() if job is not None else None

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Returns False for running, finished, or unknown jobs."""
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.QUEUED:
            return False
        job.mark_cancelled()
        self._done[job_id].set()
        LOGGER.info("Cancelled job %s", job_id)
        self._progress.emit(f"Job {job_id} cancelled", ProgressKind.JOB)
        self._retire(job_id)
        return True

    def list_jobs(self) -> list[Job]:
        """Return snapshots of every retained job, oldest submission first."""
        jobs = sorted(self._jobs.values(), key=lambda job: (job.submitted_at, job.sequence))
        return [job.snapshot() for job in jobs]

    async def wait(self, job_id: str) -> Job:
        """Wait until ``job_id`` reaches a terminal state.

        Raises:
            KeyError: If the job is unknown or already evicted.
        """
        job = self._jobs.get(job_id)
        event = self._done.get(job_id)
        if job is None or event is None:
            raise KeyError(job_id)
        await event.wait()
        return job.snapshot()

    def is_idle(self) -> bool:
        return not any(job.status in (JobStatus.QUEUED, JobStatus.RUNNING) for job in self._jobs.values())

    @property
    def running_job_id(self) -> str | None:
        return self._running_job_id

    @property
    def pending_count(self) -> int:
        return sum(1 for job in self._jobs.values() if job.status is JobStatus.QUEUED)

    @property
    def max_finished_jobs(self) -> int:
        return self._max_finished_jobs

    async def aclose(self) -> None:
        """Cancel queued jobs and wait for the running one to finish."""
        if self._closed:
            return
        self._closed = True
        for job_id in list(self._order):
            self.cancel(job_id)
        if self._worker_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker_task
            self._worker_task = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._worker_task is not None and not self._worker_task.done():
            return
        self._worker_task = loop.create_task(self._drain_queue(), name="kernelagent-job-queue")

    async def _drain_queue(self) -> None:
        while self._order:
            job = self._jobs.get(self._order.popleft())
            if job is None or job.status is JobStatus.CANCELLED:
                continue
            await self._run_job(job)
        LOGGER.debug("Job queue drained")

    async def _run_job(self, job: Job) -> None:
        job.mark_running()
        self._running_job_id = job.job_id
        LOGGER.info("Running %s job %s", job.kind.value, job.job_id)
        self._progress.emit(f"Job {job.job_id} started", ProgressKind.JOB)
        try:
            if isinstance(job.request, ConversationRequest):
                result = await self._dispatcher.run_conversation(job.request)
            else:
                result = await self._dispatcher.run_execution(job.request)
        except asyncio.CancelledError:
            job.mark_failed("Job interrupted before completion")
            raise
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            LOGGER.warning("Job %s failed: %s", job.job_id, message)
            job.mark_failed(message)
            self._progress.emit(f"Job {job.job_id} failed: {message}", ProgressKind.ERROR)
        else:
            job.mark_completed(result)
            LOGGER.info("Job %s completed", job.job_id)
            self._progress.emit(f"Job {job.job_id} completed", ProgressKind.JOB)
        finally:
            self._running_job_id = None
            self._done[job.job_id].set()
            self._retire(job.job_id)

    def _retire(self, job_id: str) -> None:
        self._finished.append(job_id)
        while len(self._finished) > self._max_finished_jobs:
            evicted = self._finished.popleft()
            self._jobs.pop(evicted, None)
            self._done.pop(evicted, None)
            LOGGER.debug("Evicted finished job %s", evicted)
