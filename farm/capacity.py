"""Free-capacity computation and usable node filtering."""

from __future__ import annotations

from typing import Iterable, List

from farm.state import NodeSnapshot


def free_capacity(node: NodeSnapshot, home_reserved: float = 0.0) -> float:
    """Capacity still available on ``node``.

    The reserved margin only applies to the privileged home node.
    """
    reserved = home_reserved if node.is_home else 0.0
    return max(node.total_capacity - node.used_capacity - reserved, 0.0)


def usable_sources(nodes: Iterable[NodeSnapshot], home_reserved: float = 0.0) -> List[NodeSnapshot]:
    """Workers we have access to and that can fit at least something."""
    return [
        node for node in nodes
        if node.is_usable_source and free_capacity(node, home_reserved) > 0
    ]


def usable_targets(nodes: Iterable[NodeSnapshot], operator_level: int) -> List[NodeSnapshot]:
    return [node for node in nodes if node.is_usable_target(operator_level)]
