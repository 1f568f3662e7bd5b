"""Greedy packing of a thread requirement across workers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Sequence

from farm.capacity import free_capacity
from farm.model import core_bonus
from farm.state import NodeSnapshot, OperationKind


@dataclass(frozen=True)
class Assignment:
    node: NodeSnapshot
    threads: int

    @property
    def effective_threads(self) -> float:
        return self.threads * core_bonus(self.node.cores)


@dataclass
class Allocation:
    """Result of packing one requirement.

    ``reached`` counts threads weighted by each node's parallelism bonus
    (plain threads for Harvest), which is what the requirement is
    expressed in.
    """
    kind: OperationKind
    needed: int
    assignments: List[Assignment] = field(default_factory=list)
    reached: float = 0.0

    @property
    def fulfilled(self) -> bool:
        return self.reached >= self.needed

    @property
    def threads(self) -> int:
        return sum(a.threads for a in self.assignments)


def _uses_parallelism(kind: OperationKind) -> bool:
    return kind is not OperationKind.HARVEST


def sort_candidates(
    kind: OperationKind,
    nodes: Sequence[NodeSnapshot],
    home_reserved: float = 0.0,
) -> List[NodeSnapshot]:
    """Order workers for ``kind``; stable so ties keep discovery order."""
    if _uses_parallelism(kind):
        key = lambda n: free_capacity(n, home_reserved) * max(1, n.cores)
    else:
        key = lambda n: free_capacity(n, home_reserved)
    return sorted(nodes, key=key, reverse=True)


def pack(
    kind: OperationKind,
    nodes: Sequence[NodeSnapshot],
    thread_cost: float,
    needed: int,
    home_reserved: float = 0.0,
) -> Allocation:
    """Spread ``needed`` threads of ``kind`` over ``nodes`` greedily.

    Deterministic for identical inputs; stops as soon as the requirement is
    reached. A partial allocation is returned when capacity runs out.
    """
    alloc = Allocation(kind=kind, needed=needed)
    if needed <= 0 or thread_cost <= 0:
        return alloc

    for node in sort_candidates(kind, nodes, home_reserved):
        remaining = needed - alloc.reached
        if remaining <= 0:
            break
        bonus = core_bonus(node.cores) if _uses_parallelism(kind) else 1.0
        fits = math.floor(free_capacity(node, home_reserved) / thread_cost)
        threads = min(fits, math.ceil(remaining / bonus))
        if threads <= 0:
            continue
        alloc.assignments.append(Assignment(node=node, threads=threads))
        alloc.reached += threads * bonus
    return alloc
