from __future__ import annotations

from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional
import time


# ----------------------------- helpers -----------------------------

def utc_ms() -> int:
    return int(time.time() * 1000)


def clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def safe_float(x: Any, default: Optional[float] = 0.0) -> Optional[float]:
    try:
        return float(x)
    except Exception:
        return default


def safe_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


# ----------------------------- data classes -----------------------------

class OperationKind(Enum):
    """Remote operation types a worker can run against a target."""
    HARVEST = "harvest"
    FORTIFY = "fortify"
    SUPPRESS = "suppress"

    @classmethod
    def parse(cls, value: Any) -> "OperationKind":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


# Fixed evaluation order used by the scheduler each tick.
PRIORITY_ORDER = (OperationKind.SUPPRESS, OperationKind.FORTIFY, OperationKind.HARVEST)


@dataclass(frozen=True)
class NodeSnapshot:
    """Point-in-time view of a node; re-read every tick."""
    name: str
    total_capacity: float
    used_capacity: float = 0.0
    cores: int = 1
    is_home: bool = False
    has_access: bool = False
    # Targets are nodes with a non-zero yield ceiling
    max_yield: float = 0.0
    required_level: int = 0

    @property
    def is_usable_source(self) -> bool:
        return self.has_access and self.total_capacity > 0

    def is_usable_target(self, operator_level: int) -> bool:
        return (
            self.has_access
            and not self.is_home
            and self.max_yield > 0
            and self.required_level <= operator_level
        )


@dataclass(frozen=True)
class TargetSnapshot:
    """Observable state of a target resource.

    ``yield_`` is kept in [0, max_yield] and ``defense`` never drops below
    ``min_defense``; :meth:`clamped` restores both after deltas are folded in.
    """
    name: str
    yield_: float
    max_yield: float
    defense: float
    min_defense: float
    growth: float = 1.0
    required_level: int = 0

    def clamped(self) -> "TargetSnapshot":
        return replace(
            self,
            yield_=clamp(self.yield_, 0.0, self.max_yield),
            defense=max(self.defense, self.min_defense),
        )

    def with_delta(self, yield_delta: float, defense_delta: float) -> "TargetSnapshot":
        return replace(self, yield_=self.yield_ + yield_delta, defense=self.defense + defense_delta)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["yield"] = data.pop("yield_")
        return data


@dataclass(frozen=True)
class Operation:
    """A launched batch of threads of one kind from one worker against one target."""
    kind: OperationKind
    source: str
    target: str
    threads: int
    start_ms: int
    completion_ms: int
    cores: int = 1

    def has_finished_by(self, at_ms: float) -> bool:
        return at_ms >= self.completion_ms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "source": self.source,
            "target": self.target,
            "threads": self.threads,
            "start_ms": self.start_ms,
            "completion_ms": self.completion_ms,
            "cores": self.cores,
        }


@dataclass
class RunningProcess:
    """Entry of a worker's live process list as reported by the host."""
    payload: str
    args: List[Any] = field(default_factory=list)
    threads: int = 1


# Payload file each operation kind runs as on a worker.
PAYLOADS: Dict[OperationKind, str] = {
    OperationKind.HARVEST: "harvest.py",
    OperationKind.FORTIFY: "fortify.py",
    OperationKind.SUPPRESS: "suppress.py",
}


def kind_for_payload(payload: str) -> Optional[OperationKind]:
    """Classify a running payload by file name; ``None`` for foreign processes."""
    name = payload.rsplit("/", 1)[-1]
    for kind, path in PAYLOADS.items():
        if path == name:
            return kind
    return None
