"""Operation effect model.

Forward functions predict how a batch of threads changes a target; inverse
functions give the thread count needed for a given effect. Both are closed
form: growth compounds multiplicatively with thread count while every
operation's defense cost scales linearly, so the inverse of each kind is
solved analytically rather than searched.

All functions are pure. The harvest fraction depends on the operator level,
which is why the functions are bundled in :class:`OperationModel`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from farm.errors import SchedulerInvariantError
from farm.state import Operation, OperationKind, TargetSnapshot, clamp


@dataclass(frozen=True)
class ModelConstants:
    harvest_security_per_thread: float = 0.002
    fortify_security_per_thread: float = 0.004
    suppress_amount_per_thread: float = 0.05
    base_growth_rate: float = 1.03
    max_growth_rate: float = 1.0035
    harvest_balance_factor: float = 240.0
    # Growth compounds on at least this much yield so empty targets can recover
    yield_floor: float = 1.0


DEFAULT_CONSTANTS = ModelConstants()


@dataclass(frozen=True)
class Effect:
    yield_delta: float = 0.0
    defense_delta: float = 0.0


def core_bonus(cores: int) -> float:
    """Diminishing return of extra parallelism on a single node."""
    return 1.0 + (max(1, int(cores)) - 1) / 16.0


def growth_rate(defense: float, constants: ModelConstants = DEFAULT_CONSTANTS) -> float:
    """Per-cycle growth rate, damped by defense and capped."""
    if defense <= 0:
        return constants.max_growth_rate
    adjusted = 1.0 + (constants.base_growth_rate - 1.0) / defense
    return min(adjusted, constants.max_growth_rate)


def harvest_fraction(
    target: TargetSnapshot,
    operator_level: int,
    constants: ModelConstants = DEFAULT_CONSTANTS,
) -> float:
    """Fraction of the current yield a single harvest thread extracts."""
    if operator_level <= 0 or operator_level < target.required_level:
        return 0.0
    difficulty_mult = (100.0 - target.defense) / 100.0
    skill_mult = (operator_level - (target.required_level - 1)) / operator_level
    return clamp(difficulty_mult * skill_mult / constants.harvest_balance_factor, 0.0, 1.0)


class OperationModel:
    """Forward and inverse effect functions for one operator level."""

    def __init__(self, operator_level: int, constants: ModelConstants = DEFAULT_CONSTANTS) -> None:
        self.operator_level = int(operator_level)
        self.constants = constants

    # ---- forward ------------------------------------------------------

    def fortify_multiplier(self, threads: int, cores: int, target: TargetSnapshot) -> float:
        rate = growth_rate(target.defense, self.constants)
        cycles = max(0, threads) * target.growth * core_bonus(cores)
        return rate ** cycles

    def effect(self, kind: OperationKind, threads: int, cores: int, target: TargetSnapshot) -> Effect:
        threads = max(0, int(threads))
        c = self.constants
        if kind is OperationKind.HARVEST:
            fraction = harvest_fraction(target, self.operator_level, c)
            taken = min(target.yield_ * fraction * threads, target.yield_)
            return Effect(-taken, c.harvest_security_per_thread * threads)
        if kind is OperationKind.FORTIFY:
            base = max(target.yield_, c.yield_floor) if threads > 0 else target.yield_
            grown = base * self.fortify_multiplier(threads, cores, target)
            return Effect(grown - target.yield_, c.fortify_security_per_thread * threads)
        if kind is OperationKind.SUPPRESS:
            return Effect(0.0, -(c.suppress_amount_per_thread * threads * core_bonus(cores)))
        raise SchedulerInvariantError(f"unknown operation kind: {kind!r}")

    def apply(self, kind: OperationKind, threads: int, cores: int, target: TargetSnapshot) -> TargetSnapshot:
        eff = self.effect(kind, threads, cores, target)
        return target.with_delta(eff.yield_delta, eff.defense_delta).clamped()

    def fold(self, target: TargetSnapshot, operations: Iterable[Operation]) -> TargetSnapshot:
        """Apply ``operations`` in completion order to ``target``."""
        state = target
        for op in sorted(operations, key=lambda o: o.completion_ms):
            state = self.apply(op.kind, op.threads, op.cores, state)
        return state.clamped()

    # ---- inverse ------------------------------------------------------

    def threads_to_harvest(self, target: TargetSnapshot, amount: float) -> Optional[int]:
        """Threads needed to take ``amount`` of yield; ``None`` if impossible."""
        if amount <= 0:
            return 0
        per_thread = target.yield_ * harvest_fraction(target, self.operator_level, self.constants)
        if per_thread <= 0:
            return None
        threads = max(1, math.ceil(amount / per_thread))
        if threads * per_thread < amount:
            threads += 1
        return threads

    def threads_to_fortify(self, target: TargetSnapshot, goal_yield: float, cores: int = 1) -> Optional[int]:
        """Threads needed to grow ``target`` to at least ``goal_yield``."""
        base = max(target.yield_, self.constants.yield_floor)
        if target.yield_ >= goal_yield:
            return 0
        multiplier = goal_yield / base
        if multiplier <= 1.0:
            # Below the floor; a single thread lifts the yield onto it
            return 1
        per_thread = target.growth * core_bonus(cores)
        if per_thread <= 0:
            return None
        rate = growth_rate(target.defense, self.constants)
        threads = max(1, math.ceil(math.log(multiplier) / (math.log(rate) * per_thread)))
        if base * self.fortify_multiplier(threads, cores, target) < goal_yield:
            threads += 1
        return threads

    def threads_to_suppress(self, target: TargetSnapshot, cores: int = 1) -> int:
        """Threads needed to bring defense down to its minimum."""
        excess = target.defense - target.min_defense
        if excess <= 0:
            return 0
        per_thread = self.constants.suppress_amount_per_thread * core_bonus(cores)
        threads = max(1, math.ceil(excess / per_thread))
        if threads * per_thread < excess:
            threads += 1
        return threads

    def fortify_security(self, threads: int) -> float:
        return self.constants.fortify_security_per_thread * max(0, threads)

    def harvest_security(self, threads: int) -> float:
        return self.constants.harvest_security_per_thread * max(0, threads)
