"""Execution engine client, wire models and poll path."""

from .client import EngineClient
from .models import RunRecord, RunStatus, StartRunResponse, TraceStep, error_message
from .poller import PollStatus, RunPoller

__all__ = [
    "EngineClient",
    "PollStatus",
    "RunPoller",
    "RunRecord",
    "RunStatus",
    "StartRunResponse",
    "TraceStep",
    "error_message",
]
