"""Execution backends that perform the work of orchestrated jobs."""

from .simulator import CircuitProfile, SimulatedOptimizationBackend, analyze_circuit

__all__ = ["CircuitProfile", "SimulatedOptimizationBackend", "analyze_circuit"]
