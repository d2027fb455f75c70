"""tracesync - Execution Trace Synchronization & Animation Sequencing

Replays a workflow run on its graph one node at a time, paced by the
engine's push events and kept consistent with periodic run snapshots.
"""

__version__ = "0.1.0"

from .animation import AnimationSequencer, AnimationSpeed, AnimationState, NodeSpeedTable, SequencerPhase
from .bus import Event, EventDispatcher, EventType, LifecycleEvent
from .config import TraceSyncConfig, load_config
from .errors import ConnectionState, EngineError, PollError, TraceSyncError, TransportError
from .execution import ExecutionStep, ExecutionStepRegistry, StepSource, StepStatus
from .session import DebugSession, RunMonitor
from .stream import EventStreamClient
from .workflow import GraphEdge, GraphNode, NodeOrderResolver, WorkflowGraph

__all__ = [
    "__version__",
    "AnimationSequencer",
    "AnimationSpeed",
    "AnimationState",
    "NodeSpeedTable",
    "SequencerPhase",
    "Event",
    "EventDispatcher",
    "EventType",
    "LifecycleEvent",
    "TraceSyncConfig",
    "load_config",
    "ConnectionState",
    "EngineError",
    "PollError",
    "TraceSyncError",
    "TransportError",
    "ExecutionStep",
    "ExecutionStepRegistry",
    "StepSource",
    "StepStatus",
    "DebugSession",
    "RunMonitor",
    "EventStreamClient",
    "GraphEdge",
    "GraphNode",
    "NodeOrderResolver",
    "WorkflowGraph",
]
