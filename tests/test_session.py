"""Tests for the debug session wiring."""

import json
from unittest.mock import Mock

import httpx
import pytest
import trio

from conftest import FakeScheduler, chain, make_node, node_event
from tracesync.animation.scheduler import TrioScheduler
from tracesync.animation.sequencer import SequencerPhase
from tracesync.api.client import EngineClient
from tracesync.api.models import RunStatus
from tracesync.api.poller import RunPoller
from tracesync.bus import Event, EventType
from tracesync.config import TraceSyncConfig
from tracesync.errors import TransportError
from tracesync.execution.models import StepStatus
from tracesync.session import CONNECTION_LOST, DebugSession

BASE_URL = "http://engine.test"


@pytest.fixture
def session(scheduler, linear_graph):
    return DebugSession(scheduler, graph=linear_graph)


class TestRunLifecycle:
    def test_begin_run_seeds_and_animates(self, session):
        session.begin_run(run_id="r1")

        assert session.is_executing
        assert session.monitor.status == RunStatus.RUNNING
        assert session.monitor.in_progress
        assert [s.status for s in session.steps()] == [StepStatus.PENDING] * 4
        assert session.current_animated_node_id == "start"

    def test_idle_session_does_not_animate(self, session, linear_graph):
        session.set_graph(linear_graph)
        assert session.current_animated_node_id is None
        assert len(session.registry) == 0

    def test_push_events_update_registry_and_animation(self, session, scheduler, stream):
        session.begin_run(run_id="r1", stream=stream)
        scheduler.advance(0.2)
        assert session.current_animated_node_id == "agent"

        stream.dispatch(node_event(EventType.NODE_START, "agent", runId="r1", nodeType="agent"))
        stream.dispatch(Event(EventType.MESSAGE_DELTA, {"runId": "r1", "delta": "Hi"}))
        stream.dispatch(Event(EventType.MESSAGE_DELTA, {"runId": "r1", "delta": " there"}))

        step = session.registry.get("agent")
        assert step.status == StepStatus.RUNNING
        assert step.output == {"text": "Hi there"}

        stream.dispatch(node_event(EventType.NODE_END, "agent", runId="r1", output={"answer": 42}, duration=812))

        step = session.registry.get("agent")
        assert step.status == StepStatus.COMPLETED
        assert step.output == {"answer": 42}
        assert step.duration == 812.0
        assert step.debug_info.output_preview == '{"answer": 42}'
        assert session.current_animated_node_id == "transform"

    def test_node_end_with_error_marks_failed(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)
        stream.dispatch(node_event(EventType.NODE_END, "start", error="bad input"))

        step = session.registry.get("start")
        assert step.status == StepStatus.FAILED
        assert step.error == "bad input"

    def test_terminal_run_event_ends_run(self, session, scheduler, stream):
        finished = Mock()
        session.on_run_finished(finished)
        session.begin_run(run_id="r1", stream=stream)

        stream.dispatch(Event(EventType.RUN_COMPLETED, {"runId": "r1", "output": {"result": "ok"}}))

        assert not session.is_executing
        assert session.monitor.status == RunStatus.COMPLETED
        assert session.monitor.output == {"result": "ok"}
        assert not session.monitor.in_progress
        assert stream.closed
        assert session.stream is None
        assert session.sequencer.phase == SequencerPhase.IDLE
        assert scheduler.pending == []
        finished.assert_called_once_with(session.monitor)

    def test_run_failed_event(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)
        stream.dispatch(Event(EventType.RUN_FAILED, {"runId": "r1", "error": "LLM quota exceeded"}))

        assert session.monitor.status == RunStatus.FAILED
        assert session.monitor.error == "LLM quota exceeded"

    def test_run_failed_error_object(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)
        stream.dispatch(
            Event(EventType.RUN_FAILED, {"runId": "r1", "error": {"type": "execution_error", "message": "boom"}})
        )

        assert session.monitor.status == RunStatus.FAILED
        assert session.monitor.error == "boom"

    def test_node_end_error_object(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)
        stream.dispatch(node_event(EventType.NODE_END, "start", error={"type": "validation", "message": "bad input"}))

        step = session.registry.get("start")
        assert step.status == StepStatus.FAILED
        assert step.error == "bad input"

    def test_events_from_other_runs_are_ignored(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)

        stream.dispatch(node_event(EventType.NODE_START, "start", runId="r0"))
        stream.dispatch(Event(EventType.RUN_COMPLETED, {"runId": "r0"}))

        assert session.registry.get("start").status == StepStatus.PENDING
        assert session.is_executing
        assert session.stats["stale_events"] == 2

    def test_run_started_event_binds_run_id(self, session, stream):
        session.begin_run(stream=stream)
        stream.dispatch(Event(EventType.RUN_STARTED, {"executionId": "r9"}))

        assert session.monitor.run_id == "r9"
        assert session.monitor.status == RunStatus.RUNNING

    def test_stream_error_flags_connection_lost(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)
        stream._fail(TransportError("Event stream closed by server"))

        assert session.monitor.connection_lost
        assert session.monitor.error == CONNECTION_LOST
        assert session.is_executing

    def test_new_run_replaces_old_stream(self, session, stream):
        from tracesync.stream import EventStreamClient

        session.begin_run(run_id="r1", stream=stream)
        replacement = EventStreamClient("http://engine.test/again")
        session.begin_run(run_id="r2", stream=replacement)

        assert stream.closed
        assert session.stream is replacement
        assert session.monitor.run_id == "r2"
        assert session.stats["runs"] == 2

    def test_set_test_target_restarts_replay(self, session, scheduler):
        session.begin_run(run_id="r1")
        scheduler.advance(0.2)
        assert session.current_animated_node_id == "agent"

        session.set_test_target("transform")

        assert session.current_animated_node_id == "start"
        assert [n.id for n in session.order] == ["start", "agent", "transform"]

    def test_set_graph_while_executing_seeds_new_nodes(self, session, linear_graph):
        session.begin_run(run_id="r1")
        graph = chain(*linear_graph.nodes, make_node("notify", "email", x=400))
        session.set_graph(graph)

        assert session.registry.get("notify").status == StepStatus.PENDING
        assert session.current_animated_node_id == "start"
        assert len(session.sequencer.execution_order) == 5

    def test_get_stats(self, session, stream):
        session.begin_run(run_id="r1", stream=stream)
        stats = session.get_stats()

        assert stats["runs"] == 1
        assert stats["monitor"]["run_id"] == "r1"
        assert stats["sequencer"]["phase"] == "animating"
        assert stats["stream"]["state"] == "idle"


class TestPollPath:
    @pytest.mark.trio
    async def test_poll_error_ends_run(self, autojump_clock, linear_graph):
        def handler(request):
            return httpx.Response(500, json={"error": "database unavailable"})

        engine = EngineClient(BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        session = DebugSession(FakeScheduler(), engine=engine, graph=linear_graph)
        session.begin_run(run_id="r1")
        poller = RunPoller(engine, session.registry, "r1", start_delay=0)
        session.attach_poller(poller)

        await poller.run()

        assert not session.is_executing
        assert not session.monitor.in_progress
        assert "database unavailable" in session.monitor.error

    @pytest.mark.trio
    async def test_terminal_poll_ends_run(self, autojump_clock, linear_graph):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "id": "r1",
                    "status": "completed",
                    "output": "all done",
                    "executionTrace": [{"nodeId": n.id, "status": "completed"} for n in linear_graph.nodes],
                },
            )

        engine = EngineClient(BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        session = DebugSession(FakeScheduler(), engine=engine, graph=linear_graph)
        session.begin_run(run_id="r1")
        poller = RunPoller(engine, session.registry, "r1", start_delay=0)
        session.attach_poller(poller)

        await poller.run()

        assert session.monitor.status == RunStatus.COMPLETED
        assert session.monitor.output == "all done"
        assert all(s.status == StepStatus.COMPLETED for s in session.steps())

    @pytest.mark.trio
    async def test_failed_poll_record_error_object(self, autojump_clock, linear_graph):
        def handler(request):
            return httpx.Response(
                200,
                json={"id": "r1", "status": "failed", "error": {"type": "execution_error", "message": "timeout"}},
            )

        engine = EngineClient(BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        session = DebugSession(FakeScheduler(), engine=engine, graph=linear_graph)
        session.begin_run(run_id="r1")
        poller = RunPoller(engine, session.registry, "r1", start_delay=0)
        session.attach_poller(poller)

        await poller.run()

        assert session.monitor.status == RunStatus.FAILED
        assert session.monitor.error == "timeout"


def sse(*frames):
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in frames).encode()


class TestRemoteRuns:
    @pytest.mark.trio
    async def test_run_workflow_follows_stream(self, autojump_clock, linear_graph):
        body = sse(
            ("run.started", {"runId": "r1"}),
            ("node.start", {"nodeId": "start", "runId": "r1"}),
            ("node.end", {"nodeId": "start", "runId": "r1", "output": {"q": "hi"}}),
            ("node.start", {"nodeId": "agent", "runId": "r1"}),
            ("node.end", {"nodeId": "agent", "runId": "r1", "output": "answer"}),
            ("run.completed", {"runId": "r1", "output": "answer"}),
        )

        def handler(request):
            if request.url.path == "/api/events/stream":
                return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})
            if request.url.path == "/api/workflows/wf-1/execute":
                return httpx.Response(200, json={"executionId": "r1", "status": "running"})
            return httpx.Response(200, json={"id": "r1", "status": "running"})

        engine = EngineClient(BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        config = TraceSyncConfig()
        config.polling.start_delay_ms = 0

        async with trio.open_nursery() as nursery:
            session = DebugSession(TrioScheduler(nursery), engine=engine, config=config, graph=linear_graph)
            response = await session.run_workflow(nursery, "wf-1", {"q": "hi"})

        assert response.run_id == "r1"
        assert not session.is_executing
        assert session.monitor.run_id == "r1"
        assert session.monitor.status == RunStatus.COMPLETED
        assert session.registry.get("agent").output == "answer"
        assert session.stream is None
        assert session.poller is None

    @pytest.mark.trio
    async def test_failed_start_is_recorded(self, autojump_clock, linear_graph):
        def handler(request):
            if request.url.path == "/api/events/stream":
                return httpx.Response(200, content=b"", headers={"content-type": "text/event-stream"})
            return httpx.Response(500, json={"error": "workflow has no start node"})

        engine = EngineClient(BASE_URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        async with trio.open_nursery() as nursery:
            session = DebugSession(TrioScheduler(nursery), engine=engine, graph=linear_graph)
            response = await session.test_node(nursery, "wf-1", "agent")

        assert response is None
        assert not session.is_executing
        assert session.monitor.status == RunStatus.FAILED
        assert session.monitor.target_node_id == "agent"
        assert "workflow has no start node" in session.monitor.error
