"""
Debug session: one active run or partial test, fully wired.

Combines the graph snapshot, the order resolver, the step registry, the
animation sequencer and, for a live run, the push stream and the poller.
Stream and poller belong to the run that created them and are torn down
when it ends or a new one begins.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import trio
from loguru import logger

from .animation.scheduler import Scheduler
from .animation.sequencer import AnimationSequencer
from .api.client import EngineClient
from .api.models import RunRecord, RunStatus, StartRunResponse, error_message
from .api.poller import PollStatus, RunPoller
from .bus import Event, EventType
from .config import TraceSyncConfig
from .errors import EngineError
from .execution.models import ExecutionStep, StepSource, StepStatus
from .execution.registry import ExecutionStepRegistry
from .stream import EventStreamClient
from .workflow.models import GraphNode, WorkflowGraph
from .workflow.order import NodeOrderResolver

CONNECTION_LOST = "Streaming connection lost"

_RUN_EVENT_STATUS = {
    EventType.RUN_CREATED: RunStatus.PENDING,
    EventType.RUN_STARTED: RunStatus.RUNNING,
    EventType.RUN_COMPLETED: RunStatus.COMPLETED,
    EventType.RUN_FAILED: RunStatus.FAILED,
    EventType.RUN_CANCELLED: RunStatus.CANCELLED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunMonitor:
    """Run-level state of the active run as seen by the user."""

    run_id: Optional[str] = None
    workflow_id: Optional[str] = None
    target_node_id: Optional[str] = None
    status: Optional[RunStatus] = None
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    connection_lost: bool = False

    @property
    def in_progress(self) -> bool:
        return self.started_at is not None and self.completed_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "target_node_id": self.target_node_id,
            "status": self.status.value if self.status else None,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "connection_lost": self.connection_lost,
        }


class DebugSession:
    """
    Coordinates everything needed to replay one run on a workflow canvas.

    The session itself performs no I/O until :meth:`run_workflow` or
    :meth:`test_node` is awaited; tests drive it through :meth:`begin_run`,
    :meth:`attach_stream` and :meth:`attach_poller` directly.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        engine: Optional[EngineClient] = None,
        config: Optional[TraceSyncConfig] = None,
        graph: Optional[WorkflowGraph] = None,
        resolver: Optional[NodeOrderResolver] = None,
    ):
        self.config = config or TraceSyncConfig()
        self.engine = engine
        self.graph = graph or WorkflowGraph()
        self.resolver = resolver or NodeOrderResolver()
        self.registry = ExecutionStepRegistry(preview_length=self.config.registry.preview_length)
        self.sequencer = AnimationSequencer.from_config(self.config.animation, scheduler)
        self.monitor = RunMonitor()

        self.stream: Optional[EventStreamClient] = None
        self.poller: Optional[RunPoller] = None
        self.is_executing = False
        self.target_node_id: Optional[str] = None
        self.order: List[GraphNode] = self._resolve()

        self._finished_handlers: List[Callable[[RunMonitor], None]] = []

        self.stats = {
            "runs": 0,
            "stale_events": 0,
        }

    # ------------------------------------------------------------------
    # Graph and target
    # ------------------------------------------------------------------

    def set_graph(self, graph: WorkflowGraph) -> None:
        """Replace the graph snapshot and re-resolve the replay order."""
        self.graph = graph
        self.order = self._resolve()
        if self.is_executing:
            self.registry.seed(self.order)
        self._sync_sequencer()

    def set_test_target(self, node_id: Optional[str]) -> None:
        """Change the partial-test target, superseding any pass in flight."""
        self.target_node_id = node_id
        self.monitor.target_node_id = node_id
        self.order = self._resolve()
        self._sync_sequencer()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def begin_run(
        self,
        run_id: Optional[str] = None,
        target_node_id: Optional[str] = None,
        workflow_id: Optional[str] = None,
        stream: Optional[EventStreamClient] = None,
    ) -> None:
        """Start tracking a new run (or partial test up to ``target_node_id``).

        ``stream`` is attached before the first node is scheduled so a slow
        first node waits for its events instead of falling back to a timer.
        """
        self._teardown_transport()
        self.registry.clear()
        if stream is not None:
            self.attach_stream(stream)

        self.target_node_id = target_node_id
        self.order = self._resolve()
        self.monitor = RunMonitor(
            run_id=run_id,
            workflow_id=workflow_id or self.graph.id,
            target_node_id=target_node_id,
            status=RunStatus.RUNNING,
            started_at=_utcnow(),
        )
        self.registry.seed(self.order)
        self.stats["runs"] += 1

        self.is_executing = True
        self.sequencer.start(self.order, target_node_id=target_node_id, run_id=run_id)
        logger.info(
            f"Tracking run {run_id or '(pending id)'}"
            + (f" up to node {target_node_id}" if target_node_id else "")
        )

    def bind_run(self, run_id: Optional[str]) -> None:
        """Record the engine's run id once it is known."""
        if not run_id:
            return
        self.monitor.run_id = run_id
        self.sequencer.bind_run(run_id)

    def end_run(
        self,
        status: Optional[RunStatus] = None,
        output: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Mark the active run finished and release its stream and poller."""
        if not self.is_executing:
            return

        self.is_executing = False
        if status is not None:
            self.monitor.status = status
        if output is not None:
            self.monitor.output = output
        if error:
            self.monitor.error = error
        self.monitor.completed_at = _utcnow()

        self._sync_sequencer()
        self._teardown_transport()
        logger.info(
            f"Run {self.monitor.run_id} ended: "
            f"{self.monitor.status.value if self.monitor.status else 'unknown'}"
            + (f" ({self.monitor.error})" if self.monitor.error else "")
        )

        for handler in list(self._finished_handlers):
            try:
                handler(self.monitor)
            except Exception as e:
                logger.error(f"Error in run finished handler: {e}")

    def on_run_finished(self, handler: Callable[[RunMonitor], None]) -> None:
        self._finished_handlers.append(handler)

    def close(self) -> None:
        self.end_run()
        self._teardown_transport()
        self.sequencer.stop()

    # ------------------------------------------------------------------
    # Remote runs
    # ------------------------------------------------------------------

    async def run_workflow(
        self, nursery: trio.Nursery, workflow_id: str, input: Any = None
    ) -> Optional[StartRunResponse]:
        """Start a full run on the engine and follow it."""
        return await self._launch(
            nursery,
            workflow_id,
            None,
            lambda engine: engine.start_run(workflow_id, input),
        )

    async def test_node(
        self, nursery: trio.Nursery, workflow_id: str, node_id: str, input: Any = None
    ) -> Optional[StartRunResponse]:
        """Run the workflow up to ``node_id`` on the engine and follow it."""
        return await self._launch(
            nursery,
            workflow_id,
            node_id,
            lambda engine: engine.test_node(workflow_id, node_id, input),
        )

    async def _launch(
        self,
        nursery: trio.Nursery,
        workflow_id: str,
        target_node_id: Optional[str],
        call: Callable[[EngineClient], Awaitable[StartRunResponse]],
    ) -> Optional[StartRunResponse]:
        if self.engine is None:
            raise RuntimeError("DebugSession has no engine client")

        stream = self.engine.event_stream()
        self.begin_run(target_node_id=target_node_id, workflow_id=workflow_id, stream=stream)

        # Connect before starting the run so early node events are not missed.
        await stream.connect(nursery)

        try:
            response = await call(self.engine)
        except EngineError as e:
            logger.error(f"Failed to start run of workflow {workflow_id}: {e}")
            self.end_run(RunStatus.FAILED, error=str(e))
            return None

        self.bind_run(response.run_id)
        if response.trace:
            self.registry.upsert_many(response.steps(), source=StepSource.POLL)
        if not self.is_executing:
            # Already ended by a terminal stream event.
            return response

        status = response.run_status
        if status is not None and status.is_terminal:
            error = error_message(response.error)
            self.end_run(status, output=response.output, error=error)
            return response

        if response.run_id and self.config.polling.enabled:
            poller = RunPoller.from_config(
                self.config.polling, self.engine, self.registry, response.run_id
            )
            self.attach_poller(poller)
            await poller.start(nursery)

        return response

    # ------------------------------------------------------------------
    # Push path
    # ------------------------------------------------------------------

    def attach_stream(self, stream: EventStreamClient) -> None:
        """Route ``stream`` events of the active run into registry, monitor and sequencer."""
        self.stream = stream
        for event_type in _RUN_EVENT_STATUS:
            stream.on(event_type, self._on_run_event)
        stream.on(EventType.NODE_START, self._on_node_start)
        stream.on(EventType.NODE_END, self._on_node_end)
        stream.on(EventType.MESSAGE_DELTA, self._on_message_delta)
        stream.on_error(self._on_stream_error)
        self.sequencer.attach_stream(stream)

    def _is_current_run(self, event: Event) -> bool:
        if event.run_id is None or self.monitor.run_id is None:
            return True
        if event.run_id == self.monitor.run_id:
            return True
        self.stats["stale_events"] += 1
        logger.debug(f"Ignoring {event.name} from run {event.run_id}")
        return False

    def _on_run_event(self, event: Event) -> None:
        if not self._is_current_run(event):
            return

        status = _RUN_EVENT_STATUS[event.type]
        if event.run_id and self.monitor.run_id is None:
            self.bind_run(event.run_id)

        if not status.is_terminal:
            self.monitor.status = status
            return

        error = event.data.get("error")
        self.end_run(
            status,
            output=event.data.get("output"),
            error=error_message(error),
        )

    def _on_node_start(self, event: Event) -> None:
        if not self._is_current_run(event) or event.node_id is None:
            return
        self.registry.upsert(
            ExecutionStep(
                node_id=event.node_id,
                node_type=event.node_type,
                node_label=event.data.get("nodeLabel") or event.data.get("node_label"),
                status=StepStatus.RUNNING,
                input=event.data.get("input"),
                started_at=event.data.get("startedAt")
                or event.data.get("started_at")
                or event.metadata.timestamp.isoformat(),
            ),
            source=StepSource.PUSH,
        )

    def _on_node_end(self, event: Event) -> None:
        if not self._is_current_run(event) or event.node_id is None:
            return
        data = event.data
        error = data.get("error")
        status = StepStatus.parse(data.get("status"))
        if status is None:
            status = StepStatus.FAILED if error else StepStatus.COMPLETED

        duration = data.get("duration", data.get("durationMs"))
        self.registry.upsert(
            ExecutionStep(
                node_id=event.node_id,
                node_type=event.node_type,
                status=status,
                output=data.get("output"),
                error=error_message(error),
                completed_at=data.get("completedAt")
                or data.get("completed_at")
                or event.metadata.timestamp.isoformat(),
                duration=float(duration) if duration is not None else None,
            ),
            source=StepSource.PUSH,
        )

    def _on_message_delta(self, event: Event) -> None:
        if not self._is_current_run(event):
            return
        text = event.data.get("delta") or event.data.get("text") or event.data.get("content")
        if text:
            self.registry.append_text(str(text))

    def _on_stream_error(self, error: Exception) -> None:
        self.monitor.connection_lost = True
        self.monitor.error = CONNECTION_LOST
        logger.error(f"{CONNECTION_LOST}: {error}")

    # ------------------------------------------------------------------
    # Poll path
    # ------------------------------------------------------------------

    def attach_poller(self, poller: RunPoller) -> None:
        self.poller = poller
        poller.on_snapshot(self._on_poll_snapshot)
        poller.on_finished(self._on_poll_finished)

    def _on_poll_snapshot(self, record: RunRecord) -> None:
        status = record.run_status
        if status is not None and not status.is_terminal:
            self.monitor.status = status

    def _on_poll_finished(self, poller: RunPoller) -> None:
        if poller is not self.poller:
            return
        if poller.status == PollStatus.ERROR:
            self.end_run(error=poller.error)
            return

        record = poller.last_record
        if record is None:
            self.end_run()
            return
        error = error_message(record.error)
        self.end_run(record.run_status, output=record.output, error=error)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def current_animated_node_id(self) -> Optional[str]:
        return self.sequencer.current_animated_node_id

    def steps(self) -> List[ExecutionStep]:
        """Step records in replay order, then any the graph does not know."""
        by_id = self.registry.as_dict()
        ordered = [by_id.pop(node.id) for node in self.order if node.id in by_id]
        ordered.extend(by_id.values())
        return ordered

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            **self.stats,
            "registry": self.registry.get_stats(),
            "sequencer": self.sequencer.get_stats(),
            "monitor": self.monitor.to_dict(),
        }
        if self.stream is not None:
            stats["stream"] = self.stream.get_stats()
        if self.poller is not None:
            stats["poller"] = {"status": self.poller.status.value, "polls": self.poller.polls}
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve(self) -> List[GraphNode]:
        return self.resolver.resolve_graph(self.graph, self.target_node_id)

    def _sync_sequencer(self) -> None:
        self.sequencer.sync(
            self.is_executing,
            self.order,
            self.target_node_id,
            run_id=self.monitor.run_id,
        )

    def _teardown_transport(self) -> None:
        if self.stream is not None:
            self.stream.disconnect()
            self.sequencer.detach_stream()
            self.stream = None
        if self.poller is not None:
            self.poller.stop()
            self.poller = None
