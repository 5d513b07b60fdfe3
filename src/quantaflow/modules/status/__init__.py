"""Status and telemetry modules."""

from .prometheus_exporter import PrometheusExporter

__all__ = ["PrometheusExporter"]
