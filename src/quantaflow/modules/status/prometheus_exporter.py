"""
Expose job, transport and bus metrics via Prometheus.

The exporter subscribes to every event kind and renders the stream as
counters and gauges, refreshing the bus telemetry on each event.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from ...core.bus import Subscription
from ...core.contracts import (
    BaseModule,
    ConnectionPayload,
    ConnectionStatus,
    Event,
    EventKind,
    HealthStatus,
    JobState,
    ModuleConfig,
    ProgressPayload,
    StatusPayload,
)

logger = logging.getLogger(__name__)


class _ExporterServer:
    """Owns the HTTP server and thread returned by `start_http_server`."""

    def __init__(self, server: Any, thread: threading.Thread) -> None:
        self._server = server
        self._thread = thread

    @property
    def port(self) -> int:
        return int(self._server.server_port)

    def shutdown(self) -> None:
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)


def _default_server_factory(port: int, addr: str, registry: CollectorRegistry) -> _ExporterServer:
    server, thread = start_http_server(port=port, addr=addr, registry=registry)
    return _ExporterServer(server, thread)


class PrometheusExporter(BaseModule):
    """Status module that exports orchestration telemetry via HTTP."""

    name = "modules.status.prometheus_exporter"

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        super().__init__()
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._serve_http = True
        self._port = 9094
        self._addr = "127.0.0.1"
        self._subscriptions: list[Subscription] = []
        self._current_job_id: str | None = None
        self._events_total = Counter(
            "quantaflow_events_total",
            "Events observed on the bus, by kind.",
            ["kind"],
            registry=self._registry,
        )
        self._job_state = Gauge(
            "quantaflow_job_state",
            "1 for the current orchestrator state, 0 otherwise.",
            ["state"],
            registry=self._registry,
        )
        self._job_progress = Gauge(
            "quantaflow_job_progress",
            "Progress of the current job in percent.",
            registry=self._registry,
        )
        self._jobs_finished = Counter(
            "quantaflow_jobs_finished_total",
            "Jobs that reached a terminal state, by state.",
            ["state"],
            registry=self._registry,
        )
        self._connection_status = Gauge(
            "quantaflow_transport_status",
            "1 for the current transport connection status, 0 otherwise.",
            ["status"],
            registry=self._registry,
        )
        self._connection_attempt = Gauge(
            "quantaflow_transport_attempt",
            "Current reconnect attempt counter.",
            registry=self._registry,
        )
        self._published_total = Gauge(
            "quantaflow_bus_published_total",
            "Total published events since startup.",
            registry=self._registry,
        )
        self._processed_total = Gauge(
            "quantaflow_bus_processed_total",
            "Total processed events since startup.",
            registry=self._registry,
        )
        self._dropped_total = Gauge(
            "quantaflow_bus_dropped_total",
            "Total dropped events.",
            registry=self._registry,
        )
        self._set_one_hot(self._job_state, JobState.IDLE.value, [s.value for s in JobState])
        self._set_one_hot(
            self._connection_status,
            ConnectionStatus.DISCONNECTED.value,
            [s.value for s in ConnectionStatus],
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._port = int(options.get("port", self._port))
        self._addr = options.get("addr", self._addr)
        self._serve_http = bool(options.get("serve_http", self._serve_http))

    async def start(self) -> None:
        if self._serve_http and self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)
        for kind in EventKind:
            self._subscriptions.append(self.bus.subscribe(kind, self._handle_event))

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        shutdown = getattr(self._server, "shutdown", None)
        if callable(shutdown):
            await asyncio.to_thread(shutdown)
            logger.info("Stopped Prometheus exporter on %s:%d", self._addr, self._port)
        self._server = None

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            details={"serving": self._server is not None, "port": self._port},
        )

    def _handle_event(self, event: Event) -> None:
        self._events_total.labels(kind=event.kind.value).inc()
        data = event.data
        if isinstance(data, StatusPayload):
            self._set_one_hot(self._job_state, data.state.value, [s.value for s in JobState])
            if data.state.is_terminal:
                self._jobs_finished.labels(state=data.state.value).inc()
            if data.state is JobState.RUNNING and data.job_id != self._current_job_id:
                self._current_job_id = data.job_id
                self._job_progress.set(0.0)
        elif isinstance(data, ProgressPayload):
            self._job_progress.set(data.value)
        elif isinstance(data, ConnectionPayload):
            self._set_one_hot(
                self._connection_status, data.status.value, [s.value for s in ConnectionStatus]
            )
            self._connection_attempt.set(data.attempt)
        stats = self.bus.stats()
        self._published_total.set(stats.published_total)
        self._processed_total.set(stats.processed_total)
        self._dropped_total.set(stats.dropped_total)

    @staticmethod
    def _set_one_hot(gauge: Gauge, active: str, values: list[str]) -> None:
        for value in values:
            gauge.labels(value).set(1 if value == active else 0)


__all__ = ["PrometheusExporter"]
