"""
Binding layer between the job orchestrator and external observers.

The adapter keeps a render-ready `JobView` in sync with the event stream and
exposes the orchestrator's control operations as calls that report a
`ControlOutcome` instead of raising when the state machine refuses them.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ...core.bus import EventBus, Subscription
from ...core.contracts import (
    ConnectionPayload,
    ConnectionStatus,
    Event,
    EventKind,
    JobResult,
    JobState,
    LogPayload,
    MetricsPayload,
    ProgressPayload,
    ResultPayload,
    StatusPayload,
)
from ...core.errors import InvalidStateError
from ...core.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

Observer = Callable[[Event], Awaitable[None] | None]


@dataclass(slots=True)
class JobView:
    """Latest known state of the current job as seen through events."""

    max_log_lines: int = 400
    state: JobState = JobState.IDLE
    job_id: str | None = None
    progress: float = 0.0
    metrics: MetricsPayload | None = None
    logs: deque[str] = field(default_factory=deque)
    result: JobResult | None = None
    error: str | None = None
    connection: ConnectionStatus = ConnectionStatus.DISCONNECTED
    connection_attempt: int = 0
    last_event: Event | None = None

    def __post_init__(self) -> None:
        self.logs = deque(self.logs, maxlen=self.max_log_lines)

    def reset_for(self, job_id: str | None) -> None:
        self.job_id = job_id
        self.progress = 0.0
        self.metrics = None
        self.result = None
        self.error = None
        self.logs.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "job_id": self.job_id,
            "progress": self.progress,
            "metrics": self.metrics.model_dump(mode="json") if self.metrics else None,
            "logs": list(self.logs),
            "result": self.result.model_dump(mode="json") if self.result else None,
            "error": self.error,
            "connection": self.connection.value,
            "connection_attempt": self.connection_attempt,
            "last_event": self.last_event.to_wire() if self.last_event else None,
        }


@dataclass(frozen=True, slots=True)
class ControlOutcome:
    """Result of a control call routed through the adapter."""

    accepted: bool
    operation: str
    message: str
    job_id: str | None = None


class SubscriberAdapter:
    """Subscribe to every event kind and fan events out to observers."""

    def __init__(
        self,
        bus: EventBus,
        orchestrator: JobOrchestrator,
        *,
        max_log_lines: int = 400,
    ) -> None:
        self._bus = bus
        self._orchestrator = orchestrator
        self._view = JobView(max_log_lines=max_log_lines)
        self._subscriptions: list[Subscription] = []
        self._observers: list[Observer] = []

    @property
    def view(self) -> JobView:
        return self._view

    @property
    def mounted(self) -> bool:
        return bool(self._subscriptions)

    def mount(self) -> None:
        """Subscribe to job events and connection status. Mounting twice is a no-op."""
        if self.mounted:
            return
        for kind in EventKind:
            self._subscriptions.append(self._bus.subscribe(kind, self._handle_event))
        logger.debug("Subscriber adapter mounted on %d event kinds", len(self._subscriptions))

    def unmount(self) -> None:
        for subscription in self._subscriptions:
            self._bus.unsubscribe(subscription)
        self._subscriptions.clear()

    def add_observer(self, observer: Observer) -> Observer:
        self._observers.append(observer)
        return observer

    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # Control surface -----------------------------------------------------

    def start(self, payload: str) -> ControlOutcome:
        try:
            job_id = self._orchestrator.start(payload)
        except InvalidStateError as exc:
            return self._refused(exc)
        return ControlOutcome(True, "start", f"Job {job_id} started.", job_id)

    def pause(self) -> ControlOutcome:
        return self._control("pause", self._orchestrator.pause)

    def resume(self) -> ControlOutcome:
        return self._control("resume", self._orchestrator.resume)

    def stop(self) -> ControlOutcome:
        return self._control("stop", self._orchestrator.stop)

    def _control(self, operation: str, action: Callable[[], None]) -> ControlOutcome:
        current = self._orchestrator.current_job
        job_id = current.id if current else None
        try:
            action()
        except InvalidStateError as exc:
            return self._refused(exc)
        return ControlOutcome(True, operation, f"Job {job_id} {operation} requested.", job_id)

    def _refused(self, exc: InvalidStateError) -> ControlOutcome:
        logger.info("Refused %s: %s", exc.operation, exc)
        current = self._orchestrator.current_job
        return ControlOutcome(False, exc.operation, str(exc), current.id if current else None)

    # Event handling ------------------------------------------------------

    async def _handle_event(self, event: Event) -> None:
        self._apply(event)
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Observer %r failed on %s event", observer, event.kind.value)

    def _apply(self, event: Event) -> None:
        view = self._view
        view.last_event = event
        data = event.data
        if isinstance(data, StatusPayload):
            if data.job_id != view.job_id and data.state is JobState.RUNNING:
                view.reset_for(data.job_id)
            view.state = data.state
            if data.error:
                view.error = data.error
        elif isinstance(data, ProgressPayload):
            view.progress = data.value
        elif isinstance(data, MetricsPayload):
            view.metrics = data
        elif isinstance(data, LogPayload):
            view.logs.append(data.line)
        elif isinstance(data, ResultPayload):
            view.result = data.result
        elif isinstance(data, ConnectionPayload):
            view.connection = data.status
            view.connection_attempt = data.attempt


__all__ = ["ControlOutcome", "JobView", "Observer", "SubscriberAdapter"]
