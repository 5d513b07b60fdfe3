"""
Simulated circuit-optimization backend.

Produces a realistic stream of progress, resource metrics and log lines for a
circuit source without touching real hardware, so the whole orchestration
pipeline can be exercised end to end.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Any

from ...core.contracts import Job, JobResult
from ...core.errors import ExecutionError
from ...core.execution import ExecutionBackend, ExecutionContext

logger = logging.getLogger(__name__)

_GATE_PATTERN = re.compile(r"\b[a-z]+\s+q\[", re.IGNORECASE)
_QUBIT_PATTERN = re.compile(r"q\[(\d+)\]")
_MAX_HISTOGRAM_WIDTH = 8


@dataclass(frozen=True, slots=True)
class CircuitProfile:
    gate_count: int
    qubits: int


def analyze_circuit(source: str) -> CircuitProfile:
    """Count gate applications and qubits referenced by a QASM-like source."""
    if not source or not source.strip():
        raise ExecutionError("Circuit source is empty.")
    gate_count = len(_GATE_PATTERN.findall(source))
    indices = [int(match) for match in _QUBIT_PATTERN.findall(source)]
    qubits = (max(indices) if indices else 0) + 1
    return CircuitProfile(gate_count=gate_count, qubits=qubits)


class SimulatedOptimizationBackend(ExecutionBackend):
    """Advance a job in random increments until it reaches 100 percent."""

    name = "simulated-optimizer"

    def __init__(
        self,
        *,
        tick_interval_seconds: float = 0.5,
        max_step: float = 10.0,
        shots: int = 1024,
        rng: random.Random | None = None,
    ) -> None:
        if max_step <= 0:
            raise ValueError("max_step must be positive")
        self._tick_interval = max(0.0, tick_interval_seconds)
        self._max_step = max_step
        self._shots = shots
        self._rng = rng or random.Random()

    @classmethod
    def from_options(cls, options: dict[str, Any]) -> SimulatedOptimizationBackend:
        seed = options.get("seed")
        return cls(
            tick_interval_seconds=float(options.get("tick_interval_seconds", 0.5)),
            max_step=float(options.get("max_step", 10.0)),
            shots=int(options.get("shots", 1024)),
            rng=random.Random(seed) if seed is not None else None,
        )

    async def run(self, job: Job, context: ExecutionContext) -> JobResult:
        profile = analyze_circuit(job.payload)
        context.log(
            f"[INFO] Circuit has {profile.gate_count} gates across {profile.qubits} qubits."
        )
        started = time.monotonic()
        progress = 0.0
        while progress < 100.0:
            await asyncio.sleep(self._tick_interval)
            await context.checkpoint()
            step = self._rng.uniform(self._max_step / 10.0, self._max_step)
            progress = min(100.0, progress + step)
            context.progress(progress)
            context.metrics(
                cpu=self._rng.uniform(10.0, 90.0),
                memory=self._rng.uniform(200.0, 700.0),
                throughput=self._rng.uniform(500.0, 1500.0),
            )
            context.log(f"[INFO] Optimization at {progress:.0f}%...")
        elapsed_ms = (time.monotonic() - started) * 1000.0
        logger.debug("Simulated job %s finished in %.1fms", job.id, elapsed_ms)
        return self._build_result(job.payload, profile, elapsed_ms)

    def _build_result(self, source: str, profile: CircuitProfile, elapsed_ms: float) -> JobResult:
        fidelity = round(self._rng.uniform(0.9, 0.99), 4)
        return JobResult(
            measurements=self._sample_measurements(profile.qubits, fidelity),
            shots=self._shots,
            fidelity=fidelity,
            execution_time_ms=round(elapsed_ms, 3),
            circuit_depth=self._rng.randint(3, 7),
            gate_count=max(0, profile.gate_count - self._rng.randint(0, 2)),
            qubits=profile.qubits,
            score=self._rng.randint(80, 99),
            cost=round(self._rng.uniform(5.0, 15.0), 2),
            optimized_source="// Optimized QASM\n" + source.replace(";", "; // optimized"),
        )

    def _sample_measurements(self, qubits: int, fidelity: float) -> dict[str, int]:
        """Bell-like histogram: most shots land on all-zeros or all-ones."""
        width = max(1, min(qubits, _MAX_HISTOGRAM_WIDTH))
        zeros, ones = "0" * width, "1" * width
        ideal = round(self._shots * fidelity)
        counts = {zeros: ideal // 2, ones: ideal - ideal // 2}
        for _ in range(self._shots - ideal):
            state = format(self._rng.randrange(2**width), f"0{width}b")
            counts[state] = counts.get(state, 0) + 1
        return dict(sorted(counts.items()))


__all__ = ["CircuitProfile", "SimulatedOptimizationBackend", "analyze_circuit"]
