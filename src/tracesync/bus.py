"""Lifecycle event types and the ordered in-process dispatcher."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from loguru import logger


class EventType(Enum):
    """Named events delivered by the execution engine's push feed."""

    # Run lifecycle events
    RUN_CREATED = "run.created"
    RUN_STARTED = "run.started"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"
    RUN_CANCELLED = "run.cancelled"

    # Node lifecycle events
    NODE_START = "node.start"
    NODE_END = "node.end"

    # Streaming output
    MESSAGE_DELTA = "message.delta"
    TOOL_CALL = "tool.call"
    TOOL_RESULT = "tool.result"
    PROGRESS = "progress"

    # Transport events
    CONNECTED = "connected"
    PING = "ping"
    MESSAGE = "message"

    @classmethod
    def from_name(cls, name: "str | EventType") -> "EventType":
        if isinstance(name, cls):
            return name
        return cls(name)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_EVENTS


TERMINAL_RUN_EVENTS = frozenset(
    {EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_CANCELLED}
)

_NODE_ID_KEYS = ("node_id", "nodeId")
_NODE_TYPE_KEYS = ("node_type", "nodeType")
_RUN_ID_KEYS = ("run_id", "runId", "execution_id", "executionId")


def _first(data: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = data.get(key)
        if value is not None:
            return str(value)
    return None


@dataclass
class EventMetadata:
    """Metadata for events."""

    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stream_id: str | None = None
    source: str | None = None


@dataclass
class Event:
    """A single lifecycle event with its JSON payload."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    metadata: EventMetadata = field(default_factory=EventMetadata)

    @property
    def name(self) -> str:
        return self.type.value

    @property
    def node_id(self) -> str | None:
        return _first(self.data, _NODE_ID_KEYS)

    @property
    def node_type(self) -> str | None:
        return _first(self.data, _NODE_TYPE_KEYS)

    @property
    def run_id(self) -> str | None:
        return _first(self.data, _RUN_ID_KEYS)


# Lifecycle events are the only kind the stream carries.
LifecycleEvent = Event

HandlerType = Callable[[Event], None]
ErrorHandlerType = Callable[[Exception], None]


class EventDispatcher:
    """Synchronous, ordered fan-out of events to named handlers.

    Every handler registered for an event name runs in registration order,
    on the caller's thread of control, before ``dispatch`` returns. A handler
    that raises is logged and counted; the remaining handlers still run.
    """

    def __init__(self):
        self._handlers: dict[EventType, list[HandlerType]] = {}
        self._global_handlers: list[HandlerType] = []

        self.stats = {
            "events_dispatched": 0,
            "handler_errors": 0,
            "active_handlers": 0,
        }

    def subscribe(self, event_type: EventType | str, handler: HandlerType) -> None:
        """Subscribe to a specific event type."""
        event_type = EventType.from_name(event_type)
        self._handlers.setdefault(event_type, []).append(handler)
        self.stats["active_handlers"] += 1

    def subscribe_all(self, handler: HandlerType) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)
        self.stats["active_handlers"] += 1

    def clear(self) -> None:
        self._handlers.clear()
        self._global_handlers.clear()
        self.stats["active_handlers"] = 0

    def has_handlers(self, event_type: EventType) -> bool:
        return bool(self._handlers.get(event_type)) or bool(self._global_handlers)

    def dispatch(self, event: Event) -> None:
        """Run every handler for ``event`` in order."""
        self.stats["events_dispatched"] += 1

        handlers = list(self._handlers.get(event.type, ()))
        handlers.extend(self._global_handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.stats["handler_errors"] += 1
                logger.error(f"Error in {event.name} handler: {e}")

    def get_stats(self) -> dict[str, Any]:
        return dict(self.stats)
