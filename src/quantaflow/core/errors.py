"""Error taxonomy for the orchestration core."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from .contracts import JobState


class QuantaflowError(Exception):
    """Base error for orchestration failures."""


class InvalidStateError(QuantaflowError):
    """A control operation was invoked in a state that forbids it."""

    def __init__(self, operation: str, state: JobState) -> None:
        super().__init__(f"Cannot {operation} while job state is {state.value}.")
        self.operation = operation
        self.state = state


class ExecutionError(QuantaflowError):
    """Background execution of a job failed."""


class TransportError(QuantaflowError):
    """Connectivity failure on the reconnecting transport."""


class NotConnectedError(TransportError):
    """A strict send was attempted while the transport is not connected."""


class HandlerError(QuantaflowError):
    """A subscriber handler raised while an event was being delivered."""

    def __init__(self, handler: Callable[..., Any], cause: BaseException) -> None:
        super().__init__(f"Handler {handler!r} failed: {cause}")
        self.handler = handler
        self.cause = cause


__all__ = [
    "ExecutionError",
    "HandlerError",
    "InvalidStateError",
    "NotConnectedError",
    "QuantaflowError",
    "TransportError",
]
