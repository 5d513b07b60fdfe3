from __future__ import annotations

import asyncio
import textwrap
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from quantaflow.core.bus import EventBus
from quantaflow.core.config import ConfigService
from quantaflow.core.contracts import Event, EventKind, Job, JobResult
from quantaflow.core.execution import ExecutionBackend, ExecutionContext


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_yaml = """
    bus:
      queue_size: 64

    orchestrator:
      max_jobs: 5
      id_prefix: "LAB"

    execution:
      tick_interval_seconds: 0.0
      max_step: 50.0
      shots: 256
      seed: 7

    transport:
      enabled: true
      url: "ws://example.test/events"
      reconnect_interval_ms: 10
      max_reconnect_attempts: 3
      backoff: "exponential"

    gateway:
      host: "127.0.0.1"
      port: 8800
      serve_http: false
      buffer_size: 16

    metrics:
      enabled: false
      port: 9999
    """
    local_yaml = """
    gateway:
      port: 8801
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "local.yaml", local_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)


@pytest_asyncio.fixture
async def bus() -> AsyncIterator[EventBus]:
    event_bus = EventBus()
    await event_bus.start()
    yield event_bus
    await event_bus.stop()


class EventRecorder:
    """Collects every event delivered for the requested kinds."""

    def __init__(self, bus: EventBus, kinds: tuple[EventKind, ...] = tuple(EventKind)) -> None:
        self.events: list[Event] = []
        self._subscriptions = [bus.subscribe(kind, self.events.append) for kind in kinds]

    def kinds(self) -> list[EventKind]:
        return [event.kind for event in self.events]

    def of(self, kind: EventKind) -> list[Event]:
        return [event for event in self.events if event.kind is kind]


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


class SteppingBackend(ExecutionBackend):
    """Backend that advances in fixed steps and yields between them."""

    name = "stepping"

    def __init__(self, steps: int = 4, delay: float = 0.0) -> None:
        self.steps = steps
        self.delay = delay

    async def run(self, job: Job, context: ExecutionContext) -> JobResult:
        for index in range(1, self.steps + 1):
            await asyncio.sleep(self.delay)
            await context.checkpoint()
            context.progress(index * 100.0 / self.steps)
            context.metrics(cpu=10.0, memory=100.0, throughput=1.0)
            context.log(f"[INFO] step {index}")
        return JobResult(measurements={"00": 3, "11": 5}, shots=8, fidelity=0.95)


@pytest.fixture
def stepping_backend() -> SteppingBackend:
    return SteppingBackend()
