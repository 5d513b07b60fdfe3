"""
Job lifecycle orchestrator.

The orchestrator owns every `Job` record and is the only component that
mutates one. It drives the lifecycle state machine::

    idle --start--> running --pause--> paused --resume--> running
    running|paused --stop--> stopped
    running --(completion)--> completed
    running|paused --(failure)--> failed
    stopped|completed|failed --start--> running   (fresh job)

Control operations are synchronous and never wait for the background task:
they mutate state, signal the task and publish events. The background task
reports through an `ExecutionContext` whose emissions are dropped as soon as
its job stops being the current running job, so a stopped job can never emit
progress, metrics or logs after its terminal status.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import itertools
import logging
from collections.abc import Callable

from .bus import EventBus
from .contracts import (
    EventKind,
    HealthStatus,
    Job,
    JobResult,
    JobState,
    LogPayload,
    MetricsPayload,
    ProgressPayload,
    ResultPayload,
    StatusPayload,
    utc_now,
)
from .errors import InvalidStateError
from .execution import ExecutionBackend

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]


class _JobContext:
    """`ExecutionContext` handed to the backend for a single job."""

    def __init__(self, orchestrator: JobOrchestrator, job_id: str) -> None:
        self._orchestrator = orchestrator
        self._job_id = job_id

    @property
    def job_id(self) -> str:
        return self._job_id

    async def checkpoint(self) -> None:
        await self._orchestrator._checkpoint(self._job_id)

    def progress(self, value: float) -> None:
        self._orchestrator._report_progress(self._job_id, value)

    def metrics(self, *, cpu: float, memory: float, throughput: float) -> None:
        self._orchestrator._report_metrics(self._job_id, cpu, memory, throughput)

    def log(self, line: str, level: str = "INFO") -> None:
        self._orchestrator._report_log(self._job_id, line, level)


class JobOrchestrator:
    """Run one job at a time and broadcast its lifecycle on the event bus."""

    def __init__(
        self,
        bus: EventBus,
        backend: ExecutionBackend,
        *,
        clock: Clock = utc_now,
        max_jobs: int = 200,
        id_prefix: str = "QC",
    ) -> None:
        self._bus = bus
        self._backend = backend
        self._clock = clock
        self._max_jobs = max_jobs
        self._id_prefix = id_prefix
        self._ids = itertools.count(1)
        self._jobs: dict[str, Job] = {}
        self._state = JobState.IDLE
        self._active_id: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._resume_signal = asyncio.Event()

    @property
    def state(self) -> JobState:
        return self._state

    @property
    def current_job(self) -> Job | None:
        """The running or paused job, if any."""
        if self._active_id is None:
            return None
        return self._jobs.get(self._active_id)

    # Control surface -----------------------------------------------------

    def start(self, payload: str) -> str:
        """Submit a new job and begin executing it in the background."""
        if self._state.is_active:
            raise InvalidStateError("start", self._state)
        loop = asyncio.get_running_loop()
        job_id = f"{self._id_prefix}-{next(self._ids)}"
        job = Job(id=job_id, payload=payload, state=JobState.RUNNING, submitted_at=self._clock())
        self._jobs[job_id] = job
        self._active_id = job_id
        self._state = JobState.RUNNING
        self._resume_signal.set()
        self._purge_if_needed()
        self._emit_status(job_id, JobState.RUNNING)
        self._emit_log(job_id, "[INFO] Starting optimization for circuit...", "INFO")
        self._task = loop.create_task(self._execute(job), name=f"quantaflow-job-{job_id}")
        logger.info("Started job %s with backend %s", job_id, self._backend.name)
        return job_id

    def pause(self) -> None:
        if self._state is not JobState.RUNNING or self._active_id is None:
            raise InvalidStateError("pause", self._state)
        job_id = self._active_id
        self._state = JobState.PAUSED
        self._resume_signal.clear()
        self._update(job_id, state=JobState.PAUSED)
        self._emit_status(job_id, JobState.PAUSED)
        self._emit_log(job_id, "[WARN] Optimization paused.", "WARNING")
        logger.info("Paused job %s", job_id)

    def resume(self) -> None:
        if self._state is not JobState.PAUSED or self._active_id is None:
            raise InvalidStateError("resume", self._state)
        job_id = self._active_id
        self._state = JobState.RUNNING
        self._update(job_id, state=JobState.RUNNING)
        self._emit_status(job_id, JobState.RUNNING)
        self._emit_log(job_id, "[INFO] Optimization resumed.", "INFO")
        self._resume_signal.set()
        logger.info("Resumed job %s", job_id)

    def stop(self) -> None:
        if not self._state.is_active or self._active_id is None:
            raise InvalidStateError("stop", self._state)
        job_id = self._active_id
        self._active_id = None
        self._state = JobState.STOPPED
        if self._task is not None:
            self._task.cancel()
        self._resume_signal.set()
        self._update(job_id, state=JobState.STOPPED, completed_at=self._clock())
        self._emit_log(job_id, "[ERROR] Optimization stopped by user.", "ERROR")
        self._emit_status(job_id, JobState.STOPPED)
        logger.info("Stopped job %s", job_id)

    # Query surface -------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def list_jobs(self) -> list[Job]:
        """All retained jobs in submission order."""
        return list(self._jobs.values())

    def latest_job(self) -> Job | None:
        if not self._jobs:
            return None
        return next(reversed(self._jobs.values()))

    # Lifecycle helpers ---------------------------------------------------

    async def join(self) -> None:
        """Wait for the in-flight background task, whatever its outcome."""
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def shutdown(self) -> None:
        if self._state.is_active:
            self.stop()
        await self.join()

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            details={
                "state": self._state.value,
                "active_job": self._active_id,
                "jobs": len(self._jobs),
                "backend": self._backend.name,
            },
        )

    # Background execution ------------------------------------------------

    async def _execute(self, job: Job) -> None:
        context = _JobContext(self, job.id)
        try:
            result = await self._backend.run(job, context)
            while self._is_current(job.id) and self._state is JobState.PAUSED:
                await self._resume_signal.wait()
        except asyncio.CancelledError:
            logger.debug("Background task for job %s cancelled", job.id)
            raise
        except Exception as exc:
            self._fail(job.id, exc)
            return
        self._complete(job.id, result)

    async def _checkpoint(self, job_id: str) -> None:
        while self._is_current(job_id) and self._state is JobState.PAUSED:
            await self._resume_signal.wait()
        if not self._is_current(job_id):
            raise asyncio.CancelledError()

    def _complete(self, job_id: str, result: JobResult) -> None:
        if not self._is_running(job_id):
            logger.info("Discarding completion of job %s; it is no longer running.", job_id)
            return
        job = self._jobs[job_id]
        if job.progress < 100.0:
            self._report_progress(job_id, 100.0)
        self._active_id = None
        self._state = JobState.COMPLETED
        self._update(
            job_id,
            state=JobState.COMPLETED,
            completed_at=self._clock(),
            result=result,
            progress=100.0,
        )
        self._bus.publish(EventKind.RESULT, ResultPayload(job_id=job_id, result=result))
        self._emit_status(job_id, JobState.COMPLETED)
        logger.info("Job %s completed", job_id)

    def _fail(self, job_id: str, exc: Exception) -> None:
        if not self._is_current(job_id):
            logger.warning("Ignoring failure of stale job %s: %s", job_id, exc)
            return
        detail = str(exc) or exc.__class__.__name__
        self._active_id = None
        self._state = JobState.FAILED
        self._update(job_id, state=JobState.FAILED, completed_at=self._clock(), error=detail)
        self._emit_log(job_id, f"[ERROR] {detail}", "ERROR")
        self._emit_status(job_id, JobState.FAILED, error=detail)
        logger.error("Job %s failed: %s", job_id, detail)

    def _report_progress(self, job_id: str, value: float) -> None:
        if not self._is_running(job_id):
            return
        job = self._jobs[job_id]
        bounded = max(job.progress, min(100.0, max(0.0, float(value))))
        self._update(job_id, progress=bounded)
        self._bus.publish(EventKind.PROGRESS, ProgressPayload(job_id=job_id, value=bounded))

    def _report_metrics(self, job_id: str, cpu: float, memory: float, throughput: float) -> None:
        if not self._is_running(job_id):
            return
        self._bus.publish(
            EventKind.METRICS,
            MetricsPayload(job_id=job_id, cpu=cpu, memory=memory, throughput=throughput),
        )

    def _report_log(self, job_id: str, line: str, level: str) -> None:
        if not self._is_running(job_id):
            return
        self._emit_log(job_id, line, level)

    # Internal helpers ----------------------------------------------------

    def _is_current(self, job_id: str) -> bool:
        return self._active_id == job_id

    def _is_running(self, job_id: str) -> bool:
        return self._is_current(job_id) and self._state is JobState.RUNNING

    def _update(self, job_id: str, **changes: object) -> None:
        self._jobs[job_id] = self._jobs[job_id].model_copy(update=changes)

    def _emit_status(self, job_id: str, state: JobState, *, error: str | None = None) -> None:
        self._bus.publish(EventKind.STATUS, StatusPayload(state=state, job_id=job_id, error=error))

    def _emit_log(self, job_id: str, line: str, level: str) -> None:
        self._bus.publish(EventKind.LOG, LogPayload(job_id=job_id, level=level, line=line))

    def _purge_if_needed(self) -> None:
        if self._max_jobs <= 0 or len(self._jobs) <= self._max_jobs:
            return
        overflow = len(self._jobs) - self._max_jobs
        for job_id in [jid for jid in self._jobs if jid != self._active_id][:overflow]:
            self._jobs.pop(job_id, None)


__all__ = ["Clock", "JobOrchestrator"]
