from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence

from farm.model import OperationModel, harvest_fraction
from farm.state import OperationKind, TargetSnapshot


@dataclass(frozen=True)
class RankedTarget:
    target: TargetSnapshot
    score: float


def score_target(
    target: TargetSnapshot,
    latencies: Dict[OperationKind, float],
    model: OperationModel,
) -> float:
    """Expected yield per unit of time for one full fortify/suppress/harvest cycle.

    Each time term is the kind's latency multiplied by the threads that kind
    alone would need to reach its nominal effect once.
    """
    if target.max_yield <= 0:
        return 0.0

    fortify_threads = model.threads_to_fortify(target, target.max_yield)
    if fortify_threads is None:
        return 0.0
    time_fortify = latencies[OperationKind.FORTIFY] * fortify_threads

    # Suppress must also undo the defense the full fortify adds
    after_fortify = replace(target, defense=target.defense + model.fortify_security(fortify_threads))
    time_suppress = latencies[OperationKind.SUPPRESS] * model.threads_to_suppress(after_fortify)

    fraction = harvest_fraction(target, model.operator_level, model.constants)
    if fraction <= 0:
        return 0.0
    time_harvest = latencies[OperationKind.HARVEST] * math.ceil(1.0 / fraction)

    total = time_fortify + time_suppress + time_harvest
    if total <= 0:
        return 0.0
    return target.max_yield / total


def harvest_rate_score(target: TargetSnapshot, harvest_latency_ms: float) -> float:
    """Naive score: yield ceiling per harvest latency (current yield when unknown)."""
    value = target.max_yield if target.max_yield > 0 else target.yield_
    if harvest_latency_ms <= 0:
        return 0.0
    return value / harvest_latency_ms


def rank_targets(scored: Sequence[RankedTarget]) -> List[RankedTarget]:
    """Descending by score; ties keep discovery order (``sorted`` is stable)."""
    return sorted(scored, key=lambda r: r.score, reverse=True)
