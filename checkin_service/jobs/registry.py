"""In-memory job registry.

Jobs live only for the lifetime of the process: a job is dropped from the
registry as soon as its terminal event has been published, and everything
is lost on restart.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from checkin_service.jobs.stream import JobChannel
from checkin_service.models import BatchSummary, ProgressEvent

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


class JobState(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class JobFailure(RuntimeError):
    """Fatal job error whose message is safe to show to the user."""


@dataclass(eq=False)
class Job:
    job_id: str
    kind: str
    source_object_key: str | None = None
    state: JobState = JobState.QUEUED
    progress_percent: int = 0
    summary: BatchSummary | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=_now)
    channel: JobChannel = field(init=False)

    def __post_init__(self) -> None:
        self.channel = JobChannel(self.job_id)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def mark_running(self) -> None:
        if self.state is JobState.QUEUED:
            self.state = JobState.RUNNING

    def emit(self, message: str, *, progress: int | None = None) -> ProgressEvent | None:
        """Publish an intermediate event; progress never moves backwards."""
        if self.is_terminal:
            logger.warning("Dropping event for finished job %s: %s", self.job_id, message)
            return None
        if progress is not None:
            self.progress_percent = max(self.progress_percent, min(100, max(0, int(progress))))
        event = ProgressEvent(
            progress=self.progress_percent,
            message=message,
            status=self.state.value,
        )
        self.channel.publish(event)
        return event

    def complete(
        self,
        message: str,
        *,
        summary: BatchSummary | None = None,
        qr_code: str | None = None,
    ) -> ProgressEvent | None:
        if self.is_terminal:
            return None
        self.state = JobState.COMPLETED
        self.progress_percent = 100
        self.summary = summary
        event = ProgressEvent(
            progress=100,
            message=message,
            status=self.state.value,
            done=True,
            summary=summary,
            qr_code=qr_code,
        )
        self.channel.publish(event)
        return event

    def fail(self, error: str) -> ProgressEvent | None:
        return self._abort(JobState.FAILED, error)

    def cancel(self, reason: str) -> ProgressEvent | None:
        return self._abort(JobState.CANCELLED, reason)

    def _abort(self, state: JobState, error: str) -> ProgressEvent | None:
        if self.is_terminal:
            return None
        self.state = state
        self.progress_percent = 100
        self.error = error
        event = ProgressEvent(progress=100, message=error, status=state.value, error=error)
        self.channel.publish(event)
        return event


class JobRegistry:
    """Arena of live jobs keyed by job id."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def create(self, kind: str, *, source_object_key: str | None = None) -> Job:
        job = Job(job_id=uuid.uuid4().hex, kind=kind, source_object_key=source_object_key)
        self._jobs[job.job_id] = job
        logger.info("Created %s job %s", kind, job.job_id, extra={"job_id": job.job_id})
        return job

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def discard(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def spawn(
        self,
        job: Job,
        work: Callable[[Job], Awaitable[None]],
        *,
        grace_seconds: float = 0.0,
    ) -> asyncio.Task[None]:
        """Run ``work`` in the background once a subscriber attaches (or the grace expires)."""
        task = asyncio.create_task(self._run(job, work, grace_seconds), name=f"{job.kind}:{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def shutdown(self) -> None:
        """Cancel every running job (process shutdown)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d running jobs", len(tasks))

    async def _run(self, job: Job, work: Callable[[Job], Awaitable[None]], grace_seconds: float) -> None:
        log_extra = {"job_id": job.job_id}
        try:
            if grace_seconds > 0:
                attached = await job.channel.wait_for_subscriber(grace_seconds)
                if not attached:
                    logger.info("No subscriber for job %s; running unobserved", job.job_id, extra=log_extra)
            job.mark_running()
            await work(job)
        except asyncio.CancelledError:
            job.cancel("Job cancelled: server shutting down")
            raise
        except JobFailure as e:
            logger.warning("Job %s failed: %s", job.job_id, e, extra=log_extra)
            job.fail(str(e))
        except Exception as e:
            logger.exception("Job %s crashed", job.job_id, extra=log_extra)
            job.fail(f"Unexpected error: {type(e).__name__}: {e}")
        finally:
            if not job.is_terminal:
                job.fail("Job ended without a result")
            self.discard(job.job_id)
            logger.info("Job %s finished as %s", job.job_id, job.state.value, extra=log_extra)
