"""Unit tests for replay order resolution."""

import json

import pytest

from conftest import make_node
from tracesync.workflow.models import GraphEdge, GraphNode, WorkflowGraph
from tracesync.workflow.order import NodeOrderResolver


@pytest.fixture
def resolver():
    return NodeOrderResolver()


def ids(nodes):
    return [node.id for node in nodes]


class TestNodeOrderResolver:
    def test_linear_chain(self, resolver, linear_graph):
        assert ids(resolver.resolve_graph(linear_graph)) == ["start", "agent", "transform", "end"]

    def test_no_edges_keeps_given_order(self, resolver):
        nodes = [make_node("b", "tool", x=50), make_node("a", "start", x=0)]
        assert ids(resolver.resolve(nodes, [])) == ["b", "a"]

    def test_empty_graph(self, resolver):
        assert resolver.resolve([], []) == []

    def test_parallel_branches_follow_canvas_position(self, resolver):
        nodes = [
            make_node("start", "start", x=0, y=100),
            make_node("lower", "llm", x=200, y=200),
            make_node("upper", "http-request", x=200, y=0),
            make_node("join", "end", x=400, y=100),
        ]
        edges = [
            GraphEdge("start", "lower"),
            GraphEdge("start", "upper"),
            GraphEdge("lower", "join"),
            GraphEdge("upper", "join"),
        ]
        assert ids(resolver.resolve(nodes, edges)) == ["start", "upper", "lower", "join"]

    def test_deterministic_across_calls(self, resolver, linear_graph):
        first = resolver.resolve_graph(linear_graph)
        second = resolver.resolve(list(reversed(linear_graph.nodes)), list(reversed(linear_graph.edges)))
        assert ids(first) == ids(second)

    def test_cycle_nodes_appended(self, resolver):
        nodes = [
            make_node("start", "start", x=0),
            make_node("loop", "while", x=100),
            make_node("body", "tool", x=200),
        ]
        edges = [GraphEdge("start", "loop"), GraphEdge("loop", "body"), GraphEdge("body", "loop")]
        assert ids(resolver.resolve(nodes, edges)) == ["start", "loop", "body"]

    def test_edges_to_unknown_nodes_ignored(self, resolver):
        nodes = [make_node("start", "start"), make_node("end", "end", x=10)]
        edges = [GraphEdge("start", "end"), GraphEdge("ghost", "start")]
        assert ids(resolver.resolve(nodes, edges)) == ["start", "end"]

    def test_target_prefix(self, resolver, linear_graph):
        assert ids(resolver.resolve_graph(linear_graph, "agent")) == ["start", "agent"]
        assert ids(resolver.resolve_graph(linear_graph, "start")) == ["start"]

    def test_unknown_target_yields_empty(self, resolver, linear_graph):
        assert resolver.resolve_graph(linear_graph, "missing") == []


class TestWorkflowGraph:
    def test_from_canvas_json(self, tmp_path):
        canvas = {
            "id": "wf-9",
            "nodes": [
                {"id": "n1", "type": "start", "position": {"x": 0, "y": 0}, "data": {"label": "Start"}},
                {"id": "n2", "type": "agent", "position": {"x": 120, "y": 40}, "data": {"category": "ai"}},
            ],
            "edges": [{"id": "e1", "source": "n1", "target": "n2"}],
        }
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(canvas))

        graph = WorkflowGraph.load(path)

        assert graph.id == "wf-9"
        assert graph.get_node("n1").label == "Start"
        assert graph.get_node("n2") == GraphNode("n2", "agent", None, "ai", 120.0, 40.0)
        assert graph.edges == [GraphEdge("n1", "n2", "e1")]
        assert graph.validate_graph() == []

    def test_validate_graph_reports_issues(self):
        graph = WorkflowGraph(
            nodes=[make_node("a", "start"), make_node("a", "end")],
            edges=[GraphEdge("a", "b")],
        )
        issues = graph.validate_graph()
        assert "Duplicate node id: a" in issues
        assert "Edge references non-existent target node: b" in issues
