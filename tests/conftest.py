"""Shared fixtures: deterministic scheduler and small workflow graphs."""

from typing import Callable, List

import pytest

from tracesync.bus import Event, EventType
from tracesync.stream import EventStreamClient
from tracesync.workflow.models import GraphEdge, GraphNode, WorkflowGraph


class FakeTimer:
    def __init__(self, due: float, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock. Timers fire only inside :meth:`advance`, in due order."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.now + delay, len(self.timers), callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [t for t in self.pending if t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self.now = timer.due
            timer.fired = True
            timer.callback()
        self.now = target


def make_node(node_id: str, node_type: str, x: float = 0, y: float = 0, category: str = None) -> GraphNode:
    return GraphNode(id=node_id, node_type=node_type, label=node_id.title(), category=category, x=x, y=y)


def chain(*nodes: GraphNode) -> WorkflowGraph:
    edges = [GraphEdge(source=a.id, target=b.id) for a, b in zip(nodes, nodes[1:])]
    return WorkflowGraph(nodes=list(nodes), edges=edges, id="wf-1", name="test")


def node_event(event_type: EventType, node_id: str, **data) -> Event:
    return Event(type=event_type, data={"nodeId": node_id, **data})


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def linear_graph():
    """start -> agent -> transform -> end, laid out left to right."""
    return chain(
        make_node("start", "start", x=0),
        make_node("agent", "agent", x=100),
        make_node("transform", "transform", x=200),
        make_node("end", "end", x=300),
    )


@pytest.fixture
def stream():
    """A live but unconnected stream; tests inject events with ``dispatch``."""
    return EventStreamClient("http://engine.test/api/events/stream")
