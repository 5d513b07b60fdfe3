"""
Execution backend contract used by the job orchestrator.

A backend performs the actual work of a job. It never touches job state
directly: it reports through the `ExecutionContext` it is handed and yields
at `checkpoint()` between increments so pause and stop take effect promptly.
"""

from __future__ import annotations

import abc
from typing import Protocol

from .contracts import Job, JobResult


class ExecutionContext(Protocol):
    """Reporting channel bound to one job."""

    @property
    def job_id(self) -> str: ...

    async def checkpoint(self) -> None:
        """Suspend while the job is paused; unwind once it has been stopped."""

    def progress(self, value: float) -> None: ...

    def metrics(self, *, cpu: float, memory: float, throughput: float) -> None: ...

    def log(self, line: str, level: str = "INFO") -> None: ...


class ExecutionBackend(abc.ABC):
    """Runs the payload of a job to completion."""

    name: str = "backend"

    @abc.abstractmethod
    async def run(self, job: Job, context: ExecutionContext) -> JobResult:
        """
        Execute `job` and return its result.

        Raising any exception marks the job as failed; the exception message
        becomes the failure detail.
        """


__all__ = ["ExecutionBackend", "ExecutionContext"]
