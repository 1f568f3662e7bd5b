"""Projected-state batch scheduler.

Each tick: prune the ledger, discover usable workers and targets, rank the
targets, then for every target in rank order decide one operation against its
projected state, size it with the inverse model, pack it over the workers and
launch it. Running out of capacity ends the tick early; lower ranked targets
would not fit either.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from farm.capacity import usable_sources, usable_targets
from farm.config import SchedulerConfig
from farm.errors import LaunchError, SchedulerInvariantError
from farm.host.base import HostEnvironment
from farm.ledger import InFlightLedger
from farm.model import DEFAULT_CONSTANTS, ModelConstants, OperationModel, core_bonus
from farm.packing import Allocation, pack
from farm.reconcile import reconcile
from farm.scoring import RankedTarget, rank_targets, score_target
from farm.state import (
    PRIORITY_ORDER,
    NodeSnapshot,
    Operation,
    OperationKind,
    TargetSnapshot,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    target: str
    kind: OperationKind
    threads: int
    projected: TargetSnapshot


@dataclass
class TickResult:
    ranked: List[str] = field(default_factory=list)
    decisions: Dict[str, OperationKind] = field(default_factory=dict)
    launched: List[Operation] = field(default_factory=list)
    capacity_exhausted: bool = False
    exhausted_on: Optional[str] = None
    # Minimum time the caller should let pass before the next tick
    wait_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ranked": list(self.ranked),
            "decisions": {t: k.value for t, k in self.decisions.items()},
            "launched": [op.to_dict() for op in self.launched],
            "capacity_exhausted": self.capacity_exhausted,
            "exhausted_on": self.exhausted_on,
            "wait_ms": self.wait_ms,
        }


class OperationLauncher:
    """Distributes the payload to a worker and starts one operation on it.

    Shared by every stage so completion times carry the same margin and
    uniquifiers stay monotonic across stage hand-offs.
    """

    def __init__(self, host: HostEnvironment, completion_margin_ms: int = 250) -> None:
        self.host = host
        self.completion_margin_ms = completion_margin_ms
        self._last_uniquifier = 0

    def landing_offset(self, latency_ms: float) -> int:
        """Milliseconds from launch to the completion time an operation is declared with."""
        return int(math.ceil(latency_ms)) + self.completion_margin_ms

    def next_uniquifier(self, now_ms: int) -> int:
        self._last_uniquifier = max(int(now_ms), self._last_uniquifier + 1)
        return self._last_uniquifier

    def launch(
        self,
        kind: OperationKind,
        node: NodeSnapshot,
        threads: int,
        target: str,
        latency_ms: float,
        home: Optional[str],
    ) -> Optional[Operation]:
        """Launch ``threads`` of ``kind`` on ``node``; ``None`` when the worker had to be skipped."""
        if home is not None and not self.host.distribute_payload(kind, home, node.name):
            logger.warning(f"Payload distribution for {kind.value} to {node.name} failed, skipping")
            return None
        start = self.host.now_ms()
        completion = start + self.landing_offset(latency_ms)
        try:
            handle = self.host.launch(kind, node.name, threads, target, completion, self.next_uniquifier(start))
        except LaunchError as e:
            logger.warning(f"{e}, skipping")
            return None
        if handle is None:
            logger.warning(f"Launch of {kind.value} on {node.name} failed, skipping")
            return None
        return Operation(
            kind=kind,
            source=node.name,
            target=target,
            threads=threads,
            start_ms=start,
            completion_ms=completion,
            cores=node.cores,
        )


class BatchScheduler:
    def __init__(
        self,
        host: HostEnvironment,
        ledger: Optional[InFlightLedger] = None,
        config: Optional[SchedulerConfig] = None,
        constants: ModelConstants = DEFAULT_CONSTANTS,
    ) -> None:
        self.host = host
        self.ledger = ledger if ledger is not None else InFlightLedger()
        self.config = config or SchedulerConfig()
        self.constants = constants
        self.loaded = False
        self.launcher = OperationLauncher(host, self.config.completion_margin_ms)

    # -------- stage interface --------

    def has_requirements(self) -> bool:
        home = self.host.home_node()
        return home is not None and home.total_capacity >= self.config.home_capacity_required

    def run(self) -> TickResult:
        if not self.loaded:
            self.load()
        return self.tick()

    def load(self) -> int:
        """Rebuild the ledger from the processes already running on the workers."""
        workers = [n for n in self.accessible_nodes() if n.total_capacity > 0]
        restored = reconcile(self.host, self.ledger, workers, self.host.now_ms())
        self.loaded = True
        logger.info(f"Reconciled {restored} in-flight operations from {len(workers)} workers")
        return restored

    # -------- discovery & ranking --------

    def accessible_nodes(self) -> List[NodeSnapshot]:
        nodes: List[NodeSnapshot] = []
        for node in self.host.list_nodes():
            if not node.has_access and self.host.ensure_access(node.name):
                node = replace(node, has_access=True)
            nodes.append(node)
        return [n for n in nodes if n.has_access]

    def discover(self) -> Tuple[List[NodeSnapshot], List[NodeSnapshot]]:
        nodes = self.accessible_nodes()
        level = self.host.operator_level()
        return usable_sources(nodes, self.config.home_reserved), usable_targets(nodes, level)

    def model(self) -> OperationModel:
        return OperationModel(self.host.operator_level(), self.constants)

    def latencies(self, target: str) -> Dict[OperationKind, float]:
        return {kind: float(self.host.operation_latency(kind, target)) for kind in OperationKind}

    def rank(self, targets: List[NodeSnapshot], model: OperationModel) -> List[RankedTarget]:
        scored = []
        for node in targets:
            snapshot = self.host.target_snapshot(node.name)
            scored.append(RankedTarget(snapshot, score_target(snapshot, self.latencies(node.name), model)))
        return rank_targets(scored)

    # -------- decision --------

    def landing_offset(self, latency_ms: float) -> int:
        return self.launcher.landing_offset(latency_ms)

    def decide(
        self,
        target: TargetSnapshot,
        latencies: Dict[OperationKind, float],
        model: OperationModel,
        now_ms: float,
    ) -> Optional[Decision]:
        """Pick the single operation to run against ``target`` this tick."""
        cfg = self.config
        goal = target.max_yield * cfg.grow_threshold
        for kind in PRIORITY_ORDER:
            # Fold in whatever lands before an operation of this kind launched now would
            projected = self.ledger.project_state(target, self.landing_offset(latencies[kind]), now_ms, model)
            at_min_defense = projected.defense <= projected.min_defense + cfg.defense_epsilon

            if kind is OperationKind.SUPPRESS:
                if not at_min_defense:
                    return Decision(target.name, kind, model.threads_to_suppress(projected), projected)
            elif kind is OperationKind.FORTIFY:
                if projected.yield_ < goal:
                    threads = model.threads_to_fortify(projected, goal)
                    if threads is None:
                        logger.debug(f"{target.name}: cannot be fortified")
                        return None
                    return Decision(target.name, kind, threads, projected)
            elif kind is OperationKind.HARVEST:
                if at_min_defense and projected.yield_ >= goal:
                    amount = projected.yield_ * cfg.max_harvest_fraction
                    threads = model.threads_to_harvest(projected, amount)
                    if threads is None:
                        logger.debug(f"{target.name}: nothing can be harvested at level {model.operator_level}")
                        return None
                    return Decision(target.name, kind, threads, projected)
            else:
                raise SchedulerInvariantError(f"unhandled operation kind: {kind!r}")
        return None

    # -------- tick --------

    def tick(self) -> TickResult:
        result = TickResult()
        self.ledger.prune(self.host.now_ms())

        sources, targets = self.discover()
        if not targets:
            logger.info("No targets found")
            return result

        home = self._home(sources)
        model = self.model()
        ranked = self.rank(targets, model)
        result.ranked = [r.target.name for r in ranked]
        logger.debug(f"Targets: {result.ranked}")

        for entry in ranked:
            target = entry.target
            latencies = self.latencies(target.name)
            decision = self.decide(target, latencies, model, self.host.now_ms())
            if decision is None or decision.threads <= 0:
                continue
            result.decisions[target.name] = decision.kind

            fresh = self._refresh(sources)
            launched, reached = self._schedule(decision, latencies[decision.kind], fresh, home)
            result.launched.extend(launched)
            if reached < decision.threads:
                logger.warning(
                    f"Capacity exhausted scheduling {decision.kind.value} on {target.name}: "
                    f"{reached:g}/{decision.threads} threads"
                )
                result.capacity_exhausted = True
                result.exhausted_on = target.name
                break
        return result

    def _home(self, sources: List[NodeSnapshot]) -> str:
        for node in sources:
            if node.is_home:
                return node.name
        home = self.host.home_node()
        if home is None:
            raise SchedulerInvariantError("no home node to distribute payloads from")
        return home.name

    def _refresh(self, sources: List[NodeSnapshot]) -> List[NodeSnapshot]:
        fresh = []
        for node in sources:
            free = self.host.node_free_capacity(node.name)
            fresh.append(replace(node, used_capacity=max(node.total_capacity - free, 0.0)))
        return fresh

    def _schedule(
        self,
        decision: Decision,
        latency_ms: float,
        sources: List[NodeSnapshot],
        home: str,
    ) -> Tuple[List[Operation], float]:
        kind = decision.kind
        cost = self.host.operation_cost(kind)
        alloc: Allocation = pack(kind, sources, cost, decision.threads, self.config.home_reserved)

        launched: List[Operation] = []
        reached = 0.0
        for assignment in alloc.assignments:
            node = assignment.node
            op = self.launcher.launch(kind, node, assignment.threads, decision.target, latency_ms, home)
            if op is None:
                continue
            self.ledger.record(op, self.host.now_ms())
            launched.append(op)
            reached += assignment.threads * (core_bonus(node.cores) if kind is not OperationKind.HARVEST else 1.0)
            logger.info(f"Scheduled {assignment.threads} threads on {node.name} to {kind.value} {decision.target}")
        return launched, reached
