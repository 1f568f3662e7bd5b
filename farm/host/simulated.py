"""In-memory world with a virtual clock.

Nodes and targets are loaded from a YAML descriptor (``sim/world.yaml`` by
default). Launched operations hold capacity on their worker until the virtual
clock passes their real completion time, at which point their effect lands on
the target through the same operation model the scheduler predicts with.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

import yaml

from farm.errors import LaunchError, PayloadMissingError
from farm.host.base import LATENCY_FACTORS, HostEnvironment
from farm.model import DEFAULT_CONSTANTS, ModelConstants, OperationModel
from farm.state import (
    PAYLOADS,
    NodeSnapshot,
    OperationKind,
    RunningProcess,
    TargetSnapshot,
    safe_float,
    safe_int,
)

logger = logging.getLogger(__name__)

DEFAULT_COSTS = {
    OperationKind.HARVEST: 1.7,
    OperationKind.FORTIFY: 1.75,
    OperationKind.SUPPRESS: 1.75,
}

@dataclass
class SimTarget:
    yield_: float
    max_yield: float
    defense: float
    min_defense: float
    growth: float = 1.0
    required_level: int = 1
    base_latency_ms: float = 1000.0


@dataclass
class SimNode:
    name: str
    total_capacity: float = 0.0
    used_capacity: float = 0.0
    cores: int = 1
    is_home: bool = False
    has_access: bool = False
    ports_required: int = 0
    target: Optional[SimTarget] = None
    payloads: Set[str] = field(default_factory=set)


@dataclass(order=True)
class _SimProcess:
    finish_ms: float
    pid: int
    kind: OperationKind = field(compare=False)
    node: str = field(compare=False)
    target: str = field(compare=False)
    threads: int = field(compare=False)
    args: Tuple[Any, ...] = field(compare=False)
    reserved: float = field(compare=False)


class SimulatedHost(HostEnvironment):
    def __init__(
        self,
        nodes: List[SimNode],
        operator_level: int = 1,
        port_openers: int = 0,
        costs: Optional[Dict[OperationKind, float]] = None,
        start_ms: int = 0,
        constants: ModelConstants = DEFAULT_CONSTANTS,
    ) -> None:
        self.nodes: Dict[str, SimNode] = {n.name: n for n in nodes}
        self.level = int(operator_level)
        self.port_openers = int(port_openers)
        self.costs = dict(DEFAULT_COSTS if costs is None else costs)
        self.clock_ms = int(start_ms)
        self.constants = constants

        self._pids = itertools.count(1)
        self._running: List[_SimProcess] = []

        # Failure injection
        self.fail_distribution: Set[str] = set()
        self.fail_launch: Set[str] = set()

        for node in self.nodes.values():
            if node.is_home:
                node.has_access = True
                node.payloads.update(PAYLOADS[k] for k in self.costs)

    # -------- construction --------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulatedHost":
        nodes = []
        for raw in data.get("nodes") or []:
            name = raw.get("name")
            if not name:
                continue
            target = None
            t = raw.get("target")
            if t:
                target = SimTarget(
                    yield_=safe_float(t.get("yield"), 0.0),
                    max_yield=safe_float(t.get("max_yield"), 0.0),
                    defense=safe_float(t.get("defense"), 1.0),
                    min_defense=safe_float(t.get("min_defense"), 1.0),
                    growth=safe_float(t.get("growth"), 1.0),
                    required_level=safe_int(t.get("required_level"), 1),
                    base_latency_ms=safe_float(t.get("base_latency_ms"), 1000.0),
                )
            nodes.append(SimNode(
                name=name,
                total_capacity=safe_float(raw.get("capacity"), 0.0),
                used_capacity=safe_float(raw.get("used"), 0.0),
                cores=max(1, safe_int(raw.get("cores"), 1)),
                is_home=bool(raw.get("home", False)),
                has_access=bool(raw.get("access", False)),
                ports_required=safe_int(raw.get("ports_required"), 0),
                target=target,
            ))
        costs = None
        if data.get("payload_costs"):
            costs = {OperationKind.parse(k): float(v) for k, v in data["payload_costs"].items()}
        return cls(
            nodes,
            operator_level=safe_int(data.get("operator_level"), 1),
            port_openers=safe_int(data.get("port_openers"), 0),
            costs=costs,
            start_ms=safe_int(data.get("start_ms"), 0),
        )

    @classmethod
    def from_yaml(cls, path: str) -> "SimulatedHost":
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        host = cls.from_dict(data)
        logger.info(f"Loaded simulated world from {path}: {len(host.nodes)} nodes")
        return host

    # -------- observation --------

    def list_nodes(self) -> List[NodeSnapshot]:
        return [self._snapshot(node) for node in self.nodes.values()]

    def _snapshot(self, node: SimNode) -> NodeSnapshot:
        return NodeSnapshot(
            name=node.name,
            total_capacity=node.total_capacity,
            used_capacity=node.used_capacity,
            cores=node.cores,
            is_home=node.is_home,
            has_access=node.has_access,
            max_yield=node.target.max_yield if node.target else 0.0,
            required_level=node.target.required_level if node.target else 0,
        )

    def ensure_access(self, node: str) -> bool:
        n = self._node(node)
        if not n.has_access and self.port_openers >= n.ports_required:
            n.has_access = True
            logger.info(f"Gained access to {node}")
        return n.has_access

    def node_free_capacity(self, node: str) -> float:
        n = self._node(node)
        return max(n.total_capacity - n.used_capacity, 0.0)

    def target_snapshot(self, target: str) -> TargetSnapshot:
        t = self._target(target)
        return TargetSnapshot(
            name=target,
            yield_=t.yield_,
            max_yield=t.max_yield,
            defense=t.defense,
            min_defense=t.min_defense,
            growth=t.growth,
            required_level=t.required_level,
        )

    def operation_latency(self, kind: OperationKind, target: str) -> float:
        t = self._target(target)
        return t.base_latency_ms * (1.0 + t.defense / 100.0) * LATENCY_FACTORS[kind]

    def operation_cost(self, kind: OperationKind) -> float:
        if kind not in self.costs:
            raise PayloadMissingError(PAYLOADS[kind])
        return self.costs[kind]

    def operator_level(self) -> int:
        return self.level

    def list_running_processes(self, node: str) -> List[RunningProcess]:
        return [
            RunningProcess(payload=PAYLOADS[p.kind], args=list(p.args), threads=p.threads)
            for p in sorted(self._running)
            if p.node == node
        ]

    def now_ms(self) -> int:
        return self.clock_ms

    # -------- actions --------

    def distribute_payload(self, kind: OperationKind, source: str, dest: str) -> bool:
        payload = PAYLOADS[kind]
        if payload not in self._node(source).payloads:
            raise PayloadMissingError(payload, source=source)
        if dest in self.fail_distribution:
            return False
        self._node(dest).payloads.add(payload)
        return True

    def launch(
        self,
        kind: OperationKind,
        node: str,
        threads: int,
        target: str,
        completion_ms: int,
        uniquifier: int,
    ) -> Optional[str]:
        n = self._node(node)
        args = (target, int(completion_ms), int(uniquifier))
        if node in self.fail_launch:
            raise LaunchError(f"launch of {kind.value} refused", node=node)
        if PAYLOADS[kind] not in n.payloads or threads <= 0:
            return None
        if any(p.node == node and p.kind is kind and p.args == args for p in self._running):
            logger.debug(f"Rejecting duplicate {kind.value} on {node} with args {args}")
            return None
        reserved = threads * self.operation_cost(kind)
        if reserved > n.total_capacity - n.used_capacity + 1e-9:
            return None

        n.used_capacity += reserved
        proc = _SimProcess(
            finish_ms=self.clock_ms + self.operation_latency(kind, target),
            pid=next(self._pids),
            kind=kind,
            node=node,
            target=target,
            threads=threads,
            args=args,
            reserved=reserved,
        )
        heapq.heappush(self._running, proc)
        return f"pid-{proc.pid}"

    def sleep(self, ms: float) -> None:
        self.advance(ms)

    def advance(self, ms: float) -> int:
        """Move the clock forward, landing every process that finishes. Returns how many landed."""
        self.clock_ms += int(ms)
        model = OperationModel(self.level, self.constants)
        landed = 0
        while self._running and self._running[0].finish_ms <= self.clock_ms:
            proc = heapq.heappop(self._running)
            self._land(proc, model)
            landed += 1
        return landed

    def _land(self, proc: _SimProcess, model: OperationModel) -> None:
        node = self._node(proc.node)
        node.used_capacity = max(node.used_capacity - proc.reserved, 0.0)
        t = self._target(proc.target)
        after = model.apply(proc.kind, proc.threads, node.cores, self.target_snapshot(proc.target))
        t.yield_, t.defense = after.yield_, after.defense

    # -------- internal --------

    def _node(self, name: str) -> SimNode:
        node = self.nodes.get(name)
        if node is None:
            raise KeyError(f"unknown node '{name}'")
        return node

    def _target(self, name: str) -> SimTarget:
        node = self._node(name)
        if node.target is None:
            raise KeyError(f"node '{name}' is not a target")
        return node.target
