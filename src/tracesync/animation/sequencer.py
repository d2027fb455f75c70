"""
Animation Sequencer - single-node-at-a-time replay of a workflow run.

Advances one "currently animating" pointer through the resolved replay
order:

- FAST and DEFAULT nodes hold the pointer for a fixed duration
- SLOW nodes wait for their ``node.start`` then ``node.end`` stream events
- SLOW nodes fall back to a fixed duration when no stream is attached
- ``node.start`` events for nodes not reached yet are buffered
- a partial test stops at its target node

Each replay pass is an owned object that is torn down and replaced when
execution stops or the test target changes. Timer callbacks and stream
events are checked against the identity of the pass that created the wait,
so callbacks belonging to a superseded pass never mutate current state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from loguru import logger

from ..bus import Event, EventType
from ..stream import EventStreamClient
from ..workflow.models import GraphNode
from .scheduler import Scheduler, TimerHandle
from .speed import AnimationSpeed, NodeSpeedTable

DEFAULT_FAST_DURATION = 0.2
DEFAULT_DURATION = 1.5
DEFAULT_SLOW_FALLBACK_DURATION = 1.5


class SequencerPhase(str, Enum):
    """Sequencer states."""

    IDLE = "idle"
    ANIMATING = "animating"  # fixed-duration timer outstanding
    WAITING_START = "waiting_start"  # slow node, waiting for node.start
    WAITING_END = "waiting_end"  # slow node, waiting for node.end
    DONE = "done"


@dataclass(frozen=True)
class PassIdentity:
    """Identity of one replay pass: generation plus test target (None = full run)."""

    generation: int
    target_node_id: Optional[str] = None


@dataclass(frozen=True)
class AnimationState:
    """Immutable snapshot of the sequencer for the rendering layer.

    ``waiting_for_event`` is true while the current node waits on either of
    its stream events.
    """

    phase: SequencerPhase = SequencerPhase.IDLE
    current_animated_node_id: Optional[str] = None
    execution_order: Tuple[GraphNode, ...] = ()
    current_index: int = 0
    waiting_for_event: bool = False
    target_node_id: Optional[str] = None
    speed: Optional[AnimationSpeed] = None


class _ReplayPass:
    """Mutable state of one replay pass. Owned by the sequencer."""

    def __init__(self, identity: PassIdentity, order: Sequence[GraphNode], run_id: Optional[str] = None):
        self.identity = identity
        self.order: Tuple[GraphNode, ...] = tuple(order)
        self.run_id = run_id
        self.index = 0
        self.current: Optional[GraphNode] = None
        self.speed: Optional[AnimationSpeed] = None
        self.phase = SequencerPhase.IDLE
        self.early_starts: Set[str] = set()
        self.timer: Optional[TimerHandle] = None

        self.positions: Dict[str, int] = {}
        for position, node in enumerate(self.order):
            self.positions.setdefault(node.id, position)

    @property
    def target_node_id(self) -> Optional[str]:
        return self.identity.target_node_id

    def is_target(self, node_id: str) -> bool:
        return self.target_node_id is not None and node_id == self.target_node_id

    def not_reached(self, node_id: str) -> bool:
        position = self.positions.get(node_id)
        return position is not None and position >= self.index

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def teardown(self) -> None:
        self.cancel_timer()
        self.early_starts.clear()
        self.current = None


class AnimationSequencer:
    """
    State machine replaying a run one node at a time.

    Drive it with :meth:`sync` (mirrors the ``is_executing`` flag, the resolved
    order and the test target) or the explicit :meth:`start` / :meth:`stop`.
    Stream events arrive through :meth:`handle_node_start` and
    :meth:`handle_node_end`, which :meth:`attach_stream` wires up.

    At any instant there is at most one outstanding timer or one pending
    event wait.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        speed_table: Optional[NodeSpeedTable] = None,
        stream: Optional[EventStreamClient] = None,
        fast_duration: float = DEFAULT_FAST_DURATION,
        default_duration: float = DEFAULT_DURATION,
        slow_fallback_duration: float = DEFAULT_SLOW_FALLBACK_DURATION,
    ):
        self._scheduler = scheduler
        self._speed_table = speed_table or NodeSpeedTable()
        self._durations = {
            AnimationSpeed.FAST: fast_duration,
            AnimationSpeed.DEFAULT: default_duration,
            AnimationSpeed.SLOW: slow_fallback_duration,
        }

        self._stream: Optional[EventStreamClient] = None
        self._pass: Optional[_ReplayPass] = None
        self._identity: Optional[PassIdentity] = None
        self._generation = 0
        self._is_executing = False
        self._target_node_id: Optional[str] = None
        self._listeners: List[Callable[[AnimationState], None]] = []

        self.stats = {
            "passes_started": 0,
            "nodes_animated": 0,
            "early_starts_buffered": 0,
            "stale_discarded": 0,
            "events_ignored": 0,
        }

        if stream is not None:
            self.attach_stream(stream)

    @classmethod
    def from_config(
        cls,
        config,
        scheduler: Scheduler,
        stream: Optional[EventStreamClient] = None,
    ) -> "AnimationSequencer":
        """Build a sequencer from an ``AnimationConfig``."""
        return cls(
            scheduler,
            speed_table=NodeSpeedTable.from_config(config),
            stream=stream,
            fast_duration=config.fast_duration_ms / 1000.0,
            default_duration=config.default_duration_ms / 1000.0,
            slow_fallback_duration=config.slow_fallback_duration_ms / 1000.0,
        )

    # ------------------------------------------------------------------
    # Stream wiring
    # ------------------------------------------------------------------

    def attach_stream(self, stream: EventStreamClient) -> None:
        """Gate slow nodes on ``stream`` and consume its node events."""
        self._stream = stream
        stream.on(EventType.NODE_START, lambda event: self._on_stream_event(stream, event))
        stream.on(EventType.NODE_END, lambda event: self._on_stream_event(stream, event))

    def detach_stream(self) -> None:
        self._stream = None

    @property
    def has_live_stream(self) -> bool:
        """An attached stream that has not been disconnected.

        A stream in the error state still counts, so event-gated nodes
        freeze instead of falling back to timers.
        """
        return self._stream is not None and not self._stream.closed

    def _on_stream_event(self, stream: EventStreamClient, event: Event) -> None:
        if stream is not self._stream:
            self._discard_stale(f"{event.name} from detached stream")
            return
        node_id = event.node_id
        if node_id is None:
            logger.debug(f"Ignoring {event.name} without node id")
            return
        if event.type == EventType.NODE_START:
            self.handle_node_start(node_id, run_id=event.run_id)
        else:
            self.handle_node_end(node_id, run_id=event.run_id)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def sync(
        self,
        is_executing: bool,
        order: Sequence[GraphNode],
        target_node_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> None:
        """Apply the current ``is_executing`` flag, resolved order and test target.

        Starts a fresh pass when execution turns on, when the target changes
        or when the order changes; stops on ``is_executing`` false.
        """
        target_changed = target_node_id != self._target_node_id
        self._target_node_id = target_node_id

        if not is_executing:
            if self._is_executing or self._pass is not None:
                self.stop()
            return

        just_started = not self._is_executing
        current_ids = [node.id for node in self._pass.order] if self._pass else []
        order_changed = current_ids != [node.id for node in order]

        if just_started or target_changed or order_changed:
            self.start(order, target_node_id=target_node_id, run_id=run_id)

    def start(
        self,
        order: Sequence[GraphNode],
        target_node_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> None:
        """Tear down any pass in flight and replay ``order`` from the beginning."""
        self._teardown()
        self._generation += 1
        self._is_executing = True
        self._target_node_id = target_node_id
        self._identity = PassIdentity(self._generation, target_node_id)

        if not order:
            logger.debug("Replay order is empty, nothing to animate")
            self._notify()
            return

        self._pass = _ReplayPass(self._identity, order, run_id=run_id)
        self.stats["passes_started"] += 1
        logger.debug(
            f"Replay pass {self._generation} started: {len(order)} nodes, "
            f"target={target_node_id or 'full run'}"
        )
        self._advance(self._pass)

    def stop(self) -> None:
        """Clear every timer and buffer and return to idle."""
        self._teardown()
        self._generation += 1
        self._identity = None
        self._is_executing = False
        logger.debug("Replay stopped")
        self._notify()

    def bind_run(self, run_id: str) -> None:
        """Associate the pass in flight with a run id once the engine reports it."""
        if self._pass is not None:
            self._pass.run_id = run_id

    def handle_node_start(self, node_id: str, run_id: Optional[str] = None) -> None:
        p = self._live_pass("node.start", node_id, run_id)
        if p is None:
            return

        if p.phase == SequencerPhase.WAITING_START and p.current is not None and p.current.id == node_id:
            p.phase = SequencerPhase.WAITING_END
            logger.debug(f"node.start received for {node_id}, waiting for node.end")
            self._notify()
            return

        if p.not_reached(node_id):
            p.early_starts.add(node_id)
            self.stats["early_starts_buffered"] += 1
            logger.debug(f"node.start for {node_id} arrived early, buffered")
            return

        self.stats["events_ignored"] += 1

    def handle_node_end(self, node_id: str, run_id: Optional[str] = None) -> None:
        p = self._live_pass("node.end", node_id, run_id)
        if p is None:
            return

        waiting = p.phase in (SequencerPhase.WAITING_START, SequencerPhase.WAITING_END)
        if not waiting or p.current is None or p.current.id != node_id:
            self.stats["events_ignored"] += 1
            return

        if p.phase == SequencerPhase.WAITING_START:
            logger.debug(f"node.end for {node_id} arrived before node.start")

        if p.is_target(node_id):
            self._finish(p, "test target completed")
        else:
            self._advance(p)

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SequencerPhase:
        return self._pass.phase if self._pass else SequencerPhase.IDLE

    @property
    def current_animated_node_id(self) -> Optional[str]:
        if self._pass is None or self._pass.current is None:
            return None
        return self._pass.current.id

    def is_node_animating(self, node_id: str) -> bool:
        return node_id is not None and self.current_animated_node_id == node_id

    @property
    def execution_order(self) -> List[GraphNode]:
        return list(self._pass.order) if self._pass else []

    @property
    def identity(self) -> Optional[PassIdentity]:
        return self._identity

    @property
    def is_executing(self) -> bool:
        return self._is_executing

    @property
    def has_pending_timer(self) -> bool:
        return self._pass is not None and self._pass.timer is not None

    @property
    def buffered_starts(self) -> frozenset:
        return frozenset(self._pass.early_starts) if self._pass else frozenset()

    @property
    def state(self) -> AnimationState:
        p = self._pass
        if p is None:
            return AnimationState(target_node_id=self._target_node_id)
        return AnimationState(
            phase=p.phase,
            current_animated_node_id=self.current_animated_node_id,
            execution_order=p.order,
            current_index=p.index,
            waiting_for_event=p.phase
            in (SequencerPhase.WAITING_START, SequencerPhase.WAITING_END),
            target_node_id=p.target_node_id,
            speed=p.speed if p.current is not None else None,
        )

    def subscribe(self, listener: Callable[[AnimationState], None]) -> None:
        """Call ``listener`` with a fresh snapshot after every transition."""
        self._listeners.append(listener)

    def get_stats(self) -> Dict[str, object]:
        return {**self.stats, "phase": self.phase.value, "generation": self._generation}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _advance(self, p: _ReplayPass) -> None:
        p.cancel_timer()

        if p.index >= len(p.order):
            self._finish(p, "all nodes replayed")
            return

        node = p.order[p.index]
        p.index += 1
        p.current = node
        speed = self._speed_table.classify(node.node_type, node.category)
        p.speed = speed
        self.stats["nodes_animated"] += 1

        started_early = node.id in p.early_starts
        p.early_starts.discard(node.id)

        if speed == AnimationSpeed.SLOW and self.has_live_stream:
            if started_early:
                p.phase = SequencerPhase.WAITING_END
                logger.debug(f"Animating {node.id}: node.start already buffered, waiting for node.end")
            else:
                p.phase = SequencerPhase.WAITING_START
                logger.debug(f"Animating {node.id}: waiting for node.start")
            self._notify()
            return

        duration = self._durations[speed]
        identity = p.identity
        p.phase = SequencerPhase.ANIMATING
        p.timer = self._scheduler.call_later(
            duration, lambda: self._on_timer(identity, node.id)
        )
        logger.debug(f"Animating {node.id} ({speed.value}) for {duration:.3f}s")
        self._notify()

    def _on_timer(self, identity: PassIdentity, node_id: str) -> None:
        p = self._pass
        if (
            p is None
            or identity != self._identity
            or p.identity != identity
            or p.phase != SequencerPhase.ANIMATING
            or p.current is None
            or p.current.id != node_id
        ):
            self._discard_stale(f"timer for {node_id}")
            return

        p.timer = None
        if p.is_target(node_id):
            self._finish(p, "test target completed")
        else:
            self._advance(p)

    def _finish(self, p: _ReplayPass, reason: str) -> None:
        p.teardown()
        p.phase = SequencerPhase.DONE
        logger.debug(f"Replay pass {p.identity.generation} done: {reason}")
        self._notify()

    def _teardown(self) -> None:
        if self._pass is not None:
            self._pass.teardown()
            self._pass = None

    def _live_pass(self, event_name: str, node_id: str, run_id: Optional[str]) -> Optional[_ReplayPass]:
        """The pass a stream event applies to, or ``None`` if it is stale.

        Stream events carry no pass identity: they belong to whichever pass
        is current, unless they came from a detached stream (filtered in
        :meth:`_on_stream_event`) or name a run other than the bound one.
        """
        p = self._pass
        if p is None:
            self._discard_stale(f"{event_name} for {node_id}")
            return None
        if run_id is not None and p.run_id is not None and run_id != p.run_id:
            self._discard_stale(f"{event_name} for {node_id} from run {run_id}")
            return None
        if p.phase == SequencerPhase.DONE:
            self.stats["events_ignored"] += 1
            return None
        return p

    def _discard_stale(self, what: str) -> None:
        self.stats["stale_discarded"] += 1
        logger.debug(f"Discarding stale {what}")

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Error in animation listener: {e}")
