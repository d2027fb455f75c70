"""Node type to animation speed classification."""

from enum import Enum
from typing import Dict, Iterable, Optional


class AnimationSpeed(str, Enum):
    """How a node is replayed.

    FAST nodes run a short fixed timer, SLOW nodes wait for their
    ``node.start``/``node.end`` events, DEFAULT nodes run a longer fixed timer.
    """

    FAST = "fast"
    SLOW = "slow"
    DEFAULT = "default"


FAST_NODE_TYPES = ("start", "end", "transform", "ifelse", "end-loop")
SLOW_NODE_TYPES = (
    "agent",
    "llm",
    "http-request",
    "email",
    "tool",
    "delay",
    "while",
    "foreach",
    "loop",
)
SLOW_CATEGORIES = ("ai", "integration", "tools")
FAST_CATEGORIES = ("logic", "core", "utility", "data")


class NodeSpeedTable:
    """
    Single lookup table for animation speed.

    Resolution order: explicit node type entry, then the node's category,
    then ``AnimationSpeed.DEFAULT`` for anything unclassified (including
    nodes without a type).
    """

    def __init__(
        self,
        fast_types: Iterable[str] = FAST_NODE_TYPES,
        slow_types: Iterable[str] = SLOW_NODE_TYPES,
        fast_categories: Iterable[str] = FAST_CATEGORIES,
        slow_categories: Iterable[str] = SLOW_CATEGORIES,
    ):
        self._by_type: Dict[str, AnimationSpeed] = {}
        for node_type in fast_types:
            self._by_type[node_type] = AnimationSpeed.FAST
        for node_type in slow_types:
            self._by_type[node_type] = AnimationSpeed.SLOW

        self._by_category: Dict[str, AnimationSpeed] = {}
        for category in fast_categories:
            self._by_category[category] = AnimationSpeed.FAST
        for category in slow_categories:
            self._by_category[category] = AnimationSpeed.SLOW

    @classmethod
    def from_config(cls, config) -> "NodeSpeedTable":
        return cls(
            fast_types=config.fast_node_types,
            slow_types=config.slow_node_types,
            fast_categories=config.fast_categories,
            slow_categories=config.slow_categories,
        )

    def set_speed(self, node_type: str, speed: AnimationSpeed) -> None:
        self._by_type[node_type] = speed

    def classify(self, node_type: Optional[str], category: Optional[str] = None) -> AnimationSpeed:
        if node_type and node_type in self._by_type:
            return self._by_type[node_type]
        if category and category in self._by_category:
            return self._by_category[category]
        return AnimationSpeed.DEFAULT
