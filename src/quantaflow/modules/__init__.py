"""
Collection of quantaflow components grouped by responsibility.
"""

from .dashboard.job_gateway import JobGateway
from .dashboard.subscriber_adapter import SubscriberAdapter
from .execution.simulator import SimulatedOptimizationBackend
from .status.prometheus_exporter import PrometheusExporter
from .transport.reconnecting import ReconnectingTransport

__all__ = [
    "JobGateway",
    "PrometheusExporter",
    "ReconnectingTransport",
    "SimulatedOptimizationBackend",
    "SubscriberAdapter",
]
