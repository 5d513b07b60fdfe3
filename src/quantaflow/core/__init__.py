"""
Core infrastructure for quantaflow.

Exposes the asynchronous event bus, the contracts shared between components,
the job orchestrator and the runtime that hosts the modules.
"""

from .bus import EventBus, Subscription
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    BaseModule,
    BasePayload,
    Event,
    EventKind,
    HealthStatus,
    Job,
    JobResult,
    JobState,
    ModuleConfig,
)
from .errors import InvalidStateError, QuantaflowError
from .orchestrator import JobOrchestrator
from .runtime import Runtime

__all__ = [
    "BaseModule",
    "BasePayload",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "Event",
    "EventBus",
    "EventKind",
    "HealthStatus",
    "InvalidStateError",
    "Job",
    "JobOrchestrator",
    "JobResult",
    "JobState",
    "ModuleConfig",
    "QuantaflowError",
    "Runtime",
    "Subscription",
]
