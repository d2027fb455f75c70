"""Linear replay order for a workflow graph."""

import heapq
from typing import Dict, Iterable, List, Optional

from loguru import logger

from .models import GraphEdge, GraphNode, WorkflowGraph


class NodeOrderResolver:
    """
    Flattens a workflow graph into one deterministic traversal order.

    Ready nodes (all predecessors emitted) are taken by canvas position, left
    to right then top to bottom, so parallel branches interleave the same way
    on every call. Nodes that never become ready because of a cycle are
    appended at the end in the same position order.
    """

    def resolve(
        self,
        nodes: Iterable[GraphNode],
        edges: Iterable[GraphEdge],
        target_node_id: Optional[str] = None,
    ) -> List[GraphNode]:
        """Return the replay order, optionally cut after ``target_node_id``.

        An unknown target yields an empty order, which means nothing to animate.
        """
        nodes = list(nodes)
        edges = list(edges)
        if not nodes:
            return []

        order = self._traverse(nodes, edges) if edges else nodes

        if target_node_id is None:
            return order

        for index, node in enumerate(order):
            if node.id == target_node_id:
                return order[: index + 1]

        logger.debug(f"Target node {target_node_id} not in replay order, nothing to animate")
        return []

    def resolve_graph(
        self, graph: WorkflowGraph, target_node_id: Optional[str] = None
    ) -> List[GraphNode]:
        return self.resolve(graph.nodes, graph.edges, target_node_id)

    def _traverse(self, nodes: List[GraphNode], edges: List[GraphEdge]) -> List[GraphNode]:
        node_map: Dict[str, GraphNode] = {}
        for node in nodes:
            node_map.setdefault(node.id, node)

        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_map}
        in_degree: Dict[str, int] = {node_id: 0 for node_id in node_map}

        for edge in edges:
            if edge.source not in node_map or edge.target not in node_map:
                continue
            adjacency[edge.source].append(edge.target)
            in_degree[edge.target] += 1

        ready = [
            (node.position_key, node.id)
            for node in node_map.values()
            if in_degree[node.id] == 0
        ]
        heapq.heapify(ready)

        ordered: List[GraphNode] = []
        emitted = set()
        while ready:
            _, node_id = heapq.heappop(ready)
            ordered.append(node_map[node_id])
            emitted.add(node_id)

            for neighbour_id in adjacency[node_id]:
                in_degree[neighbour_id] -= 1
                if in_degree[neighbour_id] == 0:
                    heapq.heappush(ready, (node_map[neighbour_id].position_key, neighbour_id))

        if len(ordered) < len(node_map):
            remaining = [node for node in node_map.values() if node.id not in emitted]
            remaining.sort(key=lambda n: n.position_key)
            logger.debug(f"Appending {len(remaining)} cyclic nodes to replay order")
            ordered.extend(remaining)

        return ordered
