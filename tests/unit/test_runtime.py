import pytest

from quantaflow.core.bus import EventBus
from quantaflow.core.contracts import BaseModule, HealthStatus, JobState, ModuleConfig
from quantaflow.core.orchestrator import JobOrchestrator
from quantaflow.core.runtime import Runtime


class RecordingModule(BaseModule):
    def __init__(self, name: str, calls: list[str], status: str = "healthy") -> None:
        super().__init__()
        self.name = name
        self._calls = calls
        self._status = status

    async def start(self) -> None:
        self._calls.append(f"start:{self.name}")

    async def stop(self) -> None:
        self._calls.append(f"stop:{self.name}")
        if self.name == "broken":
            raise RuntimeError("cannot stop")

    async def health(self) -> HealthStatus:
        return HealthStatus(status=self._status)


@pytest.mark.asyncio
async def test_runtime_starts_in_order_and_stops_in_reverse(stepping_backend) -> None:
    bus = EventBus()
    orchestrator = JobOrchestrator(bus, stepping_backend)
    runtime = Runtime(bus=bus, orchestrator=orchestrator)
    calls: list[str] = []
    first = RecordingModule("first", calls)
    await runtime.add_module(first, ModuleConfig(options={"x": 1}))
    await runtime.add_module(RecordingModule("broken", calls))
    await runtime.add_module(RecordingModule("last", calls))

    assert first.bus is bus
    await runtime.start()
    assert bus.running
    job_id = orchestrator.start("demo")
    orchestrator.pause()

    await runtime.stop()

    assert calls == [
        "start:first",
        "start:broken",
        "start:last",
        "stop:last",
        "stop:broken",
        "stop:first",
    ]
    assert not bus.running
    assert not runtime.running
    assert orchestrator.get_job(job_id).state is JobState.STOPPED


@pytest.mark.asyncio
async def test_runtime_health_aggregation(stepping_backend) -> None:
    bus = EventBus()
    runtime = Runtime(bus=bus, orchestrator=JobOrchestrator(bus, stepping_backend))
    calls: list[str] = []
    await runtime.add_module(RecordingModule("ok", calls))
    assert await runtime.overall_health() == "healthy"

    await runtime.add_module(RecordingModule("slow", calls, status="degraded"))
    assert await runtime.overall_health() == "degraded"

    await runtime.add_module(RecordingModule("down", calls, status="error"))
    reports = await runtime.health()
    assert set(reports) == {"orchestrator", "ok", "slow", "down"}
    assert Runtime.determine_overall_status(reports) == "error"
