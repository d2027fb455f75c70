"""
Workflow Graph Data Models

Read-only snapshot of the workflow canvas: nodes with their type tag and
position, and the directed edges between them. The graph provider hands a
fresh snapshot over whenever the canvas changes; nothing here is mutated
during replay.
"""

import json
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class GraphNode:
    """
    Individual node on the workflow canvas.

    ``node_type`` is the category tag used for animation speed
    classification; ``position`` is only used to make traversal order
    deterministic when several nodes are ready at once.
    """

    id: str
    node_type: Optional[str] = None
    label: Optional[str] = None
    category: Optional[str] = None
    x: float = 0.0
    y: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        """Create a node from a canvas JSON record."""
        position = data.get("position") or {}
        payload = data.get("data") or {}
        return cls(
            id=str(data["id"]),
            node_type=data.get("type") or data.get("node_type"),
            label=payload.get("label") or data.get("label"),
            category=payload.get("category") or data.get("category"),
            x=float(position.get("x", 0) or 0),
            y=float(position.get("y", 0) or 0),
        )

    @property
    def position_key(self) -> tuple:
        return (self.x, self.y, self.id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["position"] = {"x": data.pop("x"), "y": data.pop("y")}
        return data


@dataclass(frozen=True)
class GraphEdge:
    """Directed edge between two canvas nodes."""

    source: str
    target: str
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphEdge":
        source = data.get("source") or data.get("source_node_id")
        target = data.get("target") or data.get("target_node_id")
        return cls(source=str(source), target=str(target), id=data.get("id"))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkflowGraph:
    """
    Complete workflow graph snapshot.

    Contains all nodes and edges as supplied by the graph provider.
    """

    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)
    id: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowGraph":
        """Create a graph from canvas JSON (``{"nodes": [...], "edges": [...]}``)."""
        return cls(
            nodes=[GraphNode.from_dict(n) for n in data.get("nodes", [])],
            edges=[GraphEdge.from_dict(e) for e in data.get("edges", [])],
            id=data.get("id"),
            name=data.get("name"),
        )

    @classmethod
    def load(cls, path: Union[str, Path]) -> "WorkflowGraph":
        """Load a graph snapshot from a JSON file."""
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def validate_graph(self) -> List[str]:
        """Validate graph structure and return list of issues."""
        issues = []
        node_ids = [node.id for node in self.nodes]

        seen = set()
        for node_id in node_ids:
            if node_id in seen:
                issues.append(f"Duplicate node id: {node_id}")
            seen.add(node_id)

        for edge in self.edges:
            if edge.source not in seen:
                issues.append(f"Edge references non-existent source node: {edge.source}")
            if edge.target not in seen:
                issues.append(f"Edge references non-existent target node: {edge.target}")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }
