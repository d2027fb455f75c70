"""Execution step records and their merge registry."""

from .models import DebugInfo, ExecutionStep, StepSource, StepStatus
from .registry import ExecutionStepRegistry

__all__ = [
    "DebugInfo",
    "ExecutionStep",
    "StepSource",
    "StepStatus",
    "ExecutionStepRegistry",
]
