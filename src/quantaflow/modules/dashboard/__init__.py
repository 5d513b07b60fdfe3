"""Dashboard-facing modules: the subscriber adapter and the job gateway."""

from .job_gateway import JobGateway
from .subscriber_adapter import ControlOutcome, JobView, SubscriberAdapter

__all__ = ["ControlOutcome", "JobGateway", "JobView", "SubscriberAdapter"]
