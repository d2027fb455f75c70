"""
Execution Step Data Models

Per-node execution records as reported by the remote engine, either through
poll snapshots or through push deltas.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional

DEFAULT_PREVIEW_LENGTH = 200


class StepStatus(str, Enum):
    """Status of a node within one run. Only ever moves forward."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)

    @classmethod
    def parse(cls, value: Any) -> Optional["StepStatus"]:
        """Map engine status strings onto the four step states."""
        if value is None or isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        return _STATUS_ALIASES.get(normalized)


_STATUS_RANK = {
    StepStatus.PENDING: 0,
    StepStatus.RUNNING: 1,
    StepStatus.COMPLETED: 2,
    StepStatus.FAILED: 3,
}

_STATUS_ALIASES = {
    "pending": StepStatus.PENDING,
    "queued": StepStatus.PENDING,
    "running": StepStatus.RUNNING,
    "started": StepStatus.RUNNING,
    "completed": StepStatus.COMPLETED,
    "success": StepStatus.COMPLETED,
    "succeeded": StepStatus.COMPLETED,
    "failed": StepStatus.FAILED,
    "error": StepStatus.FAILED,
}


class StepSource(str, Enum):
    """Where an incoming step observation came from."""

    PUSH = "push"
    POLL = "poll"


@dataclass(frozen=True)
class DebugInfo:
    """Serialized preview of a step output and its encoded size in bytes."""

    output_preview: str = ""
    size: int = 0

    @classmethod
    def from_output(cls, output: Any, preview_length: int = DEFAULT_PREVIEW_LENGTH) -> "DebugInfo":
        if output is None:
            return cls()
        if isinstance(output, str):
            text = output
        else:
            text = json.dumps(output, default=str, ensure_ascii=False)
        preview = text if len(text) <= preview_length else text[:preview_length] + "..."
        return cls(output_preview=preview, size=len(text.encode("utf-8")))


@dataclass(frozen=True)
class ExecutionStep:
    """
    Execution record for a single node in a run.

    Every field except ``node_id`` may be ``None``: a ``None`` field in an
    incoming observation means "not reported" and never erases stored data.
    Instances are immutable so a merged record is always published whole.
    """

    node_id: str
    node_type: Optional[str] = None
    node_label: Optional[str] = None
    status: Optional[StepStatus] = None
    input: Any = None
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration: Optional[float] = None
    debug_info: Optional[DebugInfo] = None

    @classmethod
    def pending(cls, node_id: str, node_type: Optional[str] = None, node_label: Optional[str] = None) -> "ExecutionStep":
        return cls(
            node_id=node_id,
            node_type=node_type,
            node_label=node_label,
            status=StepStatus.PENDING,
            duration=0,
        )

    def explicit_fields(self) -> Dict[str, Any]:
        """Fields carrying a reported value."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "node_id" and getattr(self, f.name) is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        return data
