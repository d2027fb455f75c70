"""Pydantic models for execution engine responses.

The engine is not consistent about key casing or where it puts the trace,
so every model accepts both camelCase and snake_case keys and the trace
under ``executionTrace``, ``steps`` or ``trace``.
"""

from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..execution.models import ExecutionStep, StepStatus


class RunStatus(str, Enum):
    """Run-level status reported by the engine."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    @classmethod
    def parse(cls, value: Any) -> Optional["RunStatus"]:
        """Map an engine status string to a run status, ``None`` if unknown."""
        if value is None or isinstance(value, cls):
            return value
        return _RUN_STATUS_ALIASES.get(str(value).strip().lower())


_RUN_STATUS_ALIASES = {
    "pending": RunStatus.PENDING,
    "queued": RunStatus.PENDING,
    "running": RunStatus.RUNNING,
    "started": RunStatus.RUNNING,
    "completed": RunStatus.COMPLETED,
    "success": RunStatus.COMPLETED,
    "succeeded": RunStatus.COMPLETED,
    "failed": RunStatus.FAILED,
    "error": RunStatus.FAILED,
    "cancelled": RunStatus.CANCELLED,
    "canceled": RunStatus.CANCELLED,
}

_TRACE_KEYS = AliasChoices("executionTrace", "steps", "trace")


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def error_message(error: Any) -> Optional[str]:
    """Human-readable text of an engine error.

    The engine reports errors either as plain strings or as objects such as
    ``{"type": "execution_error", "message": "..."}``.
    """
    if error is None:
        return None
    if isinstance(error, dict) and error.get("message") is not None:
        return str(error["message"])
    return str(error)


class EngineModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TraceStep(EngineModel):
    """One entry of a run's execution trace."""

    node_id: str = Field(validation_alias=AliasChoices("nodeId", "node_id"))
    node_type: Optional[str] = Field(default=None, validation_alias=AliasChoices("nodeType", "node_type"))
    node_label: Optional[str] = Field(default=None, validation_alias=AliasChoices("nodeLabel", "node_label"))
    status: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Any = None
    started_at: Optional[str] = Field(default=None, validation_alias=AliasChoices("startedAt", "started_at"))
    completed_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("completedAt", "completed_at")
    )
    duration: Optional[float] = None
    timestamp: Optional[str] = None

    @field_validator(
        "node_id", "node_type", "node_label", "status", "started_at", "completed_at", "timestamp", mode="before"
    )
    @classmethod
    def coerce_str(cls, v):
        return _optional_str(v)

    def to_step(self) -> ExecutionStep:
        """Convert to a registry observation. Absent keys stay ``None``.

        A trace entry that only carries ``timestamp`` uses it for both
        ``started_at`` and ``completed_at``.
        """
        return ExecutionStep(
            node_id=self.node_id,
            node_type=self.node_type,
            node_label=self.node_label,
            status=StepStatus.parse(self.status),
            input=self.input,
            output=self.output,
            error=error_message(self.error),
            started_at=self.started_at or self.timestamp,
            completed_at=self.completed_at or self.timestamp,
            duration=self.duration,
        )


class RunRecord(EngineModel):
    """Snapshot of one run as returned by ``GET /api/execution/{id}``."""

    id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("id", "executionId", "execution_id", "runId", "run_id"),
    )
    workflow_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("workflowId", "workflow_id"))
    status: Optional[str] = None
    input: Any = None
    output: Any = None
    error: Any = None
    started_at: Optional[str] = Field(default=None, validation_alias=AliasChoices("startedAt", "started_at"))
    completed_at: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("completedAt", "completed_at")
    )
    trace: List[TraceStep] = Field(default_factory=list, validation_alias=_TRACE_KEYS)

    @field_validator("id", "workflow_id", "status", "started_at", "completed_at", mode="before")
    @classmethod
    def coerce_str(cls, v):
        return _optional_str(v)

    @field_validator("trace", mode="before")
    @classmethod
    def default_trace(cls, v):
        return v or []

    @property
    def run_status(self) -> Optional[RunStatus]:
        return RunStatus.parse(self.status)

    @property
    def is_terminal(self) -> bool:
        status = self.run_status
        return status is not None and status.is_terminal

    def steps(self) -> List[ExecutionStep]:
        return [entry.to_step() for entry in self.trace]


class StartRunResponse(EngineModel):
    """Response of the run and node test endpoints."""

    run_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("executionId", "execution_id", "id", "runId", "run_id"),
    )
    status: Optional[str] = None
    output: Any = None
    error: Any = None
    trace: List[TraceStep] = Field(default_factory=list, validation_alias=_TRACE_KEYS)

    @field_validator("run_id", "status", mode="before")
    @classmethod
    def coerce_str(cls, v):
        return _optional_str(v)

    @field_validator("trace", mode="before")
    @classmethod
    def default_trace(cls, v):
        return v or []

    @property
    def run_status(self) -> Optional[RunStatus]:
        return RunStatus.parse(self.status)

    def steps(self) -> List[ExecutionStep]:
        return [entry.to_step() for entry in self.trace]
