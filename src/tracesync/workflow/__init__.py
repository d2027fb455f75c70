"""Workflow Graph Module

Read-only graph snapshots supplied by the graph provider and the resolver
that flattens them into a linear replay order.
"""

from .models import GraphEdge, GraphNode, WorkflowGraph
from .order import NodeOrderResolver

__all__ = [
    "GraphNode",
    "GraphEdge",
    "WorkflowGraph",
    "NodeOrderResolver",
]
