"""
Contracts and payload schemas shared by the orchestrator, transport and adapters.

Every event travelling over the bus is tagged with a closed `EventKind` and
carries exactly one payload class from `PAYLOAD_TYPES`. Payloads are frozen
pydantic models so subscribers can never mutate what they receive.
"""

from __future__ import annotations

import abc
import datetime as dt
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.UTC)


class EventKind(StrEnum):
    """Category tag of a published notification."""

    STATUS = "status"
    PROGRESS = "progress"
    METRICS = "metrics"
    LOG = "log"
    RESULT = "result"
    CONNECTION = "connection"


JOB_EVENT_KINDS: tuple[EventKind, ...] = (
    EventKind.STATUS,
    EventKind.PROGRESS,
    EventKind.METRICS,
    EventKind.LOG,
    EventKind.RESULT,
)


class JobState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (JobState.RUNNING, JobState.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.STOPPED, JobState.COMPLETED, JobState.FAILED)


class ConnectionStatus(StrEnum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )


class JobResult(BaseModel):
    """Output metrics of a completed job."""

    model_config = ConfigDict(frozen=True)

    measurements: dict[str, int] = Field(
        default_factory=dict, description="Measured bitstring -> observed count."
    )
    shots: int = Field(default=0, ge=0)
    fidelity: float = Field(default=0.0, ge=0.0, le=1.0)
    execution_time_ms: float = Field(default=0.0, ge=0.0)
    circuit_depth: int = Field(default=0, ge=0)
    gate_count: int = Field(default=0, ge=0)
    qubits: int = Field(default=0, ge=0)
    score: int = Field(default=0, ge=0, le=100)
    cost: float = Field(default=0.0, ge=0.0)
    optimized_source: str = Field(default="")


class StatusPayload(BasePayload):
    """Lifecycle transition of the current job."""

    state: JobState
    job_id: str | None = Field(default=None)
    error: str | None = Field(
        default=None, description="Failure detail, only set for the failed state."
    )


class ProgressPayload(BasePayload):
    job_id: str
    value: float = Field(ge=0.0, le=100.0)


class MetricsPayload(BasePayload):
    """Resource sample taken while a job executes."""

    job_id: str
    cpu: float = Field(ge=0.0, description="CPU utilisation in percent.")
    memory: float = Field(ge=0.0, description="Resident memory in MB.")
    throughput: float = Field(ge=0.0, description="Processed operations per second.")


class LogPayload(BasePayload):
    job_id: str | None = Field(default=None)
    level: str = Field(default="INFO")
    line: str


class ResultPayload(BasePayload):
    job_id: str
    result: JobResult


class ConnectionPayload(BasePayload):
    """Connectivity change reported by the reconnecting transport."""

    status: ConnectionStatus
    attempt: int = Field(default=0, ge=0)
    url: str = Field(default="")
    error: str | None = Field(default=None)


PAYLOAD_TYPES: dict[EventKind, type[BasePayload]] = {
    EventKind.STATUS: StatusPayload,
    EventKind.PROGRESS: ProgressPayload,
    EventKind.METRICS: MetricsPayload,
    EventKind.LOG: LogPayload,
    EventKind.RESULT: ResultPayload,
    EventKind.CONNECTION: ConnectionPayload,
}


class Event(BaseModel):
    """Immutable notification handed to subscribers."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    data: BasePayload
    timestamp: dt.datetime = Field(default_factory=utc_now)
    sequence: int = Field(default=0, ge=0, description="Bus-wide emission counter.")

    def to_wire(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
            "data": self.data.model_dump(mode="json"),
        }


class Job(BaseModel):
    """Snapshot of one unit of orchestrated work."""

    model_config = ConfigDict(frozen=True)

    id: str
    payload: str
    state: JobState = Field(default=JobState.RUNNING)
    submitted_at: dt.datetime = Field(default_factory=utc_now)
    completed_at: dt.datetime | None = Field(default=None)
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    result: JobResult | None = Field(default=None)
    error: str | None = Field(default=None)


class BusStatus(BaseModel):
    """Telemetry snapshot of the event bus."""

    model_config = ConfigDict(frozen=True)

    queue_depth: int = Field(ge=0, description="Current number of queued events.")
    queue_capacity: int = Field(ge=0, description="Maximum queue capacity, 0 when unbounded.")
    subscriber_count: int = Field(ge=0, description="Total registered handlers.")
    published_total: int = Field(ge=0, description="Cumulative published events.")
    processed_total: int = Field(ge=0, description="Cumulative dispatched events.")
    dropped_total: int = Field(ge=0, description="Events dropped due to queue pressure.")
    handler_failures_total: int = Field(ge=0, description="Handlers that raised.")


class HealthStatus(BaseModel):
    """Structured health report for modules."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Baseline configuration contract applied to all modules."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = Field(default=True)
    options: dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary module configuration."
    )


if TYPE_CHECKING:
    from .bus import EventBus


class BaseModule(abc.ABC):
    """
    Abstract base class for components hosted by the runtime.

    Modules receive an event bus instance and are responsible for
    subscribing to event kinds during `start`.
    """

    name: str

    def __init__(self) -> None:
        self._configured = False
        self._config = ModuleConfig()
        self._bus: EventBus | None = None

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"{self.__class__.__name__} has not been attached to an EventBus.")
        return self._bus

    def set_bus(self, bus: EventBus) -> None:
        """Attach the shared event bus instance to the module."""
        self._bus = bus

    async def configure(self, config: ModuleConfig) -> None:
        """Apply the provided configuration prior to module start."""
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin processing by registering bus subscriptions or scheduling tasks."""

    async def stop(self) -> None:
        return None

    async def health(self) -> HealthStatus:
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details={"configured": self._configured})


__all__ = [
    "BaseModule",
    "BasePayload",
    "BusStatus",
    "ConnectionPayload",
    "ConnectionStatus",
    "Event",
    "EventKind",
    "HealthStatus",
    "JOB_EVENT_KINDS",
    "Job",
    "JobResult",
    "JobState",
    "LogPayload",
    "MetricsPayload",
    "ModuleConfig",
    "PAYLOAD_TYPES",
    "ProgressPayload",
    "ResultPayload",
    "StatusPayload",
    "utc_now",
]
