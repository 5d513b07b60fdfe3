"""
FastAPI surface for submitting and controlling jobs and streaming their events.

HTTP endpoints mirror the orchestrator's control and query operations; a
WebSocket endpoint streams live events with a polling fallback on `/events`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import uvicorn
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from ...core.contracts import BaseModule, Event, HealthStatus, Job, ModuleConfig
from ...core.orchestrator import JobOrchestrator
from .subscriber_adapter import ControlOutcome, SubscriberAdapter

logger = logging.getLogger(__name__)


class SubmitJobRequest(BaseModel):
    """Request body for starting a job."""

    payload: str = Field(description="Circuit source or work description.")


@dataclass(slots=True, eq=False)
class _RealtimeClient:
    queue: asyncio.Queue[dict[str, Any]]


def _job_to_dict(job: Job) -> dict[str, Any]:
    return job.model_dump(mode="json")


class JobGateway(BaseModule):
    """Expose the job control surface over HTTP and events over WebSockets."""

    name = "modules.dashboard.job_gateway"

    def __init__(
        self,
        orchestrator: JobOrchestrator,
        *,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._orchestrator = orchestrator
        self._host = "127.0.0.1"
        self._port = 8080
        self._serve_http = True
        self._buffer_size = 256
        self._idle_timeout = 30.0
        self._client_queue_size = 512
        self._max_log_lines = 400
        self._buffer: deque[dict[str, Any]] = deque(maxlen=self._buffer_size)
        self._clients: set[_RealtimeClient] = set()
        self._adapter: SubscriberAdapter | None = None
        self._app: FastAPI | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_http = bool(options.get("serve_http", self._serve_http))
        self._buffer_size = int(options.get("buffer_size", self._buffer_size))
        self._buffer = deque(self._buffer, maxlen=self._buffer_size)
        self._idle_timeout = float(options.get("idle_timeout_seconds", self._idle_timeout))
        self._client_queue_size = int(options.get("client_queue_size", self._client_queue_size))
        self._max_log_lines = int(options.get("max_log_lines", self._max_log_lines))

    async def start(self) -> None:
        self._adapter = SubscriberAdapter(
            self.bus, self._orchestrator, max_log_lines=self._max_log_lines
        )
        self._adapter.add_observer(self._handle_event)
        self._adapter.mount()
        self._app = self._build_app()
        if not self._serve_http:
            logger.info("JobGateway running in embedded mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="info",
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("JobGateway listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._adapter is not None:
            self._adapter.unmount()
            self._adapter.remove_observer(self._handle_event)
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None
        self._app = None
        self._clients.clear()

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("JobGateway has not been started.")
        return self._app

    @property
    def adapter(self) -> SubscriberAdapter:
        if self._adapter is None:
            raise RuntimeError("JobGateway has not been started.")
        return self._adapter

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy" if self._adapter is not None else "degraded",
            details={
                "state": self._orchestrator.state.value,
                "buffer_size": len(self._buffer),
                "clients": len(self._clients),
            },
        )

    async def _handle_event(self, event: Event) -> None:
        payload = event.to_wire()
        self._buffer.append(payload)
        self._broadcast(payload)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Quantaflow Job Gateway", version="0.1.0")

        @app.get("/health")
        async def health() -> dict[str, Any]:
            return {
                "status": "ok",
                "state": self._orchestrator.state.value,
                "buffer_size": len(self._buffer),
                "clients": len(self._clients),
            }

        @app.post("/jobs", status_code=202)
        async def submit_job(request: SubmitJobRequest) -> dict[str, Any]:
            outcome = self.adapter.start(request.payload)
            return self._accepted_or_conflict(outcome)

        @app.post("/jobs/current/{operation}", status_code=202)
        async def control_job(
            operation: Literal["pause", "resume", "stop"],
        ) -> dict[str, Any]:
            adapter = self.adapter
            actions = {"pause": adapter.pause, "resume": adapter.resume, "stop": adapter.stop}
            return self._accepted_or_conflict(actions[operation]())

        @app.get("/jobs")
        async def list_jobs() -> dict[str, Any]:
            return {"jobs": [_job_to_dict(job) for job in self._orchestrator.list_jobs()]}

        @app.get("/jobs/latest")
        async def latest_job() -> dict[str, Any]:
            job = self._orchestrator.latest_job()
            if job is None:
                raise HTTPException(status_code=404, detail="No jobs have been submitted yet.")
            return _job_to_dict(job)

        @app.get("/jobs/{job_id}")
        async def get_job(job_id: str) -> dict[str, Any]:
            job = self._orchestrator.get_job(job_id)
            if job is None:
                raise HTTPException(status_code=404, detail=f"Unknown job {job_id}.")
            return _job_to_dict(job)

        @app.get("/view")
        async def current_view() -> dict[str, Any]:
            return self.adapter.view.to_dict()

        @app.get("/events")
        async def latest_events(limit: int = 50) -> dict[str, Any]:
            limit = max(1, min(limit, self._buffer_size))
            events = list(self._buffer)[-limit:]
            return {"events": events}

        @app.websocket("/ws")
        async def websocket_endpoint(websocket: WebSocket) -> None:
            await websocket.accept()
            client = _RealtimeClient(queue=asyncio.Queue(maxsize=self._client_queue_size))
            self._clients.add(client)
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(
                            client.queue.get(), timeout=self._idle_timeout
                        )
                    except TimeoutError:
                        await websocket.send_json({"type": "keepalive"})
                        continue
                    await websocket.send_json(event)
            except WebSocketDisconnect:
                logger.info("Websocket client disconnected.")
            finally:
                self._clients.discard(client)

        return app

    @staticmethod
    def _accepted_or_conflict(outcome: ControlOutcome) -> dict[str, Any]:
        if not outcome.accepted:
            raise HTTPException(status_code=409, detail=outcome.message)
        return {"status": "accepted", "operation": outcome.operation, "job_id": outcome.job_id}

    def _broadcast(self, event: dict[str, Any]) -> None:
        for client in list(self._clients):
            try:
                client.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping realtime event due to slow consumer.")


__all__ = ["JobGateway", "SubmitJobRequest"]
