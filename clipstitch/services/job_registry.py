"""
Job Registry - the authoritative store of per-job progress and outcome.

Writers are the orchestrator (progress, terminal transitions) and the HTTP API
(cancel requests); readers are progress pollers. Every record is exposed as an
immutable JobState snapshot so readers never observe a half-written update.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

STAGE_QUEUED = "Queued..."
STAGE_COMPLETE = "Complete!"
STAGE_CANCELLED = "Cancelled by user"
STAGE_ERROR_PREFIX = "Error: "


class JobStatus(str, Enum):
    """Lifecycle status of a compilation job."""

    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self != JobStatus.RUNNING


@dataclass(frozen=True)
class OutputArtifact:
    """The finished, downloadable result of a job."""

    output_file: str  # Basename, e.g. compiled-<job_id>.mp4
    download_url: str  # /download/<output_file>
    path: str  # Absolute path on disk
    size_bytes: int


@dataclass(frozen=True)
class JobState:
    """Snapshot of one job's progress."""

    job_id: str
    percent: float
    stage: str
    status: JobStatus
    output: Optional[OutputArtifact] = None
    error_message: Optional[str] = None
    cancel_requested: bool = False
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def terminal(self) -> bool:
        return self.status.terminal


def new_job_id() -> str:
    """Time-ordered unique job token: millisecond timestamp plus random suffix."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class JobRegistry:
    """
    Thread-safe map of job id to JobState.

    Terminal transitions (complete, fail, cancelled) apply at most once per job;
    later calls are ignored and report False.
    """

    def __init__(self):
        self._jobs: dict[str, JobState] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._timers: dict[str, object] = {}
        self._lock = threading.Lock()

    def create(self, job_id: str, stage: str = STAGE_QUEUED) -> JobState:
        now = time.time()
        state = JobState(
            job_id=job_id,
            percent=0.0,
            stage=stage,
            status=JobStatus.RUNNING,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if job_id in self._jobs:
                raise ValueError(f"Job {job_id} already exists")
            self._jobs[job_id] = state
        logger.info(f"[{job_id}] Job created")
        return state

    def get(self, job_id: str) -> Optional[JobState]:
        with self._lock:
            return self._jobs.get(job_id)

    def update(self, job_id: str, percent: float, stage: str) -> Optional[JobState]:
        """
        Record progress for a running job.

        Percent is clamped to [0, 100] and never moves backwards. Updates to
        unknown or terminal jobs are ignored.
        """
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None or state.terminal:
                return state
            percent = min(100.0, max(0.0, percent, state.percent))
            state = replace(state, percent=percent, stage=stage, updated_at=time.time())
            self._jobs[job_id] = state
        return state

    def complete(self, job_id: str, output: OutputArtifact) -> bool:
        applied = self._finish(
            job_id,
            status=JobStatus.COMPLETE,
            percent=100.0,
            stage=STAGE_COMPLETE,
            output=output,
        )
        if applied:
            logger.info(f"[{job_id}] Job complete: {output.output_file} ({output.size_bytes} bytes)")
        return applied

    def fail(self, job_id: str, message: str) -> bool:
        applied = self._finish(
            job_id,
            status=JobStatus.ERROR,
            percent=0.0,
            stage=f"{STAGE_ERROR_PREFIX}{message}",
            error_message=message,
        )
        if applied:
            logger.error(f"[{job_id}] Job failed: {message}")
        return applied

    def cancelled(self, job_id: str) -> bool:
        applied = self._finish(
            job_id,
            status=JobStatus.CANCELLED,
            percent=0.0,
            stage=STAGE_CANCELLED,
        )
        if applied:
            logger.info(f"[{job_id}] Job cancelled")
        return applied

    def mark_cancelled(self, job_id: str) -> bool:
        """
        Request cancellation of a running job.

        Returns False when the job is unknown or already terminal.
        """
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None or state.terminal:
                return False
            self._jobs[job_id] = replace(state, cancel_requested=True, updated_at=time.time())
            event = self._cancel_events.get(job_id)

        if event is not None:
            event.set()
        logger.info(f"[{job_id}] Cancellation requested")
        return True

    def is_cancelled(self, job_id: str) -> bool:
        state = self.get(job_id)
        return state is not None and state.cancel_requested

    def cancellation_event(self, job_id: str) -> asyncio.Event:
        """Event set once cancellation of ``job_id`` is requested."""
        with self._lock:
            event = self._cancel_events.get(job_id)
            if event is None:
                event = asyncio.Event()
                self._cancel_events[job_id] = event
            state = self._jobs.get(job_id)
        if state is not None and state.cancel_requested:
            event.set()
        return event

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._cancel_events.pop(job_id, None)
            timer = self._timers.pop(job_id, None)
        if isinstance(timer, (asyncio.TimerHandle, threading.Timer)):
            timer.cancel()
        logger.debug(f"[{job_id}] Job record deleted")

    def schedule_delete(self, job_id: str, delay: float) -> None:
        """Delete the job record after ``delay`` seconds."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is not None:
            timer = loop.call_later(delay, self._expire, job_id)
        else:
            timer = threading.Timer(delay, self._expire, args=(job_id,))
            timer.daemon = True
            timer.start()

        with self._lock:
            previous = self._timers.get(job_id)
            self._timers[job_id] = timer
        if isinstance(previous, (asyncio.TimerHandle, threading.Timer)):
            previous.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _expire(self, job_id: str) -> None:
        with self._lock:
            self._timers.pop(job_id, None)
        self.delete(job_id)

    def _finish(self, job_id: str, **changes) -> bool:
        with self._lock:
            state = self._jobs.get(job_id)
            if state is None or state.terminal:
                return False
            self._jobs[job_id] = replace(state, updated_at=time.time(), **changes)
        return True
