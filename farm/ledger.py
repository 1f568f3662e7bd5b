"""In-flight operation ledger.

Maps target name to the operations still running against it. Entries are
pruned lazily at the start of a tick; projection folds the effects of the
operations landing inside a horizon into a fresh ground-truth snapshot so
decisions are made against the state the target is about to be in.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Dict, List

from farm.model import OperationModel
from farm.state import Operation, TargetSnapshot

logger = logging.getLogger(__name__)


class InFlightLedger:
    def __init__(self) -> None:
        self._ops: Dict[str, List[Operation]] = defaultdict(list)

    def __len__(self) -> int:
        return sum(len(ops) for ops in self._ops.values())

    def __contains__(self, target: str) -> bool:
        return bool(self._ops.get(target))

    def prune(self, now_ms: float) -> int:
        """Drop operations whose completion time has passed. Returns the count removed."""
        removed = 0
        for target in list(self._ops.keys()):
            running = [op for op in self._ops[target] if not op.has_finished_by(now_ms)]
            removed += len(self._ops[target]) - len(running)
            if running:
                self._ops[target] = running
            else:
                del self._ops[target]
        if removed:
            logger.debug(f"Pruned {removed} finished operations")
        return removed

    def record(self, op: Operation, now_ms: float) -> bool:
        """Track ``op`` unless it has already completed."""
        if op.has_finished_by(now_ms):
            logger.debug(f"Not recording {op.kind.value} on {op.target}: already complete")
            return False
        ops = self._ops[op.target]
        ops.append(op)
        ops.sort(key=lambda o: o.completion_ms)
        return True

    def operations_for(self, target: str) -> List[Operation]:
        return list(self._ops.get(target, ()))

    def landing_within(self, target: str, now_ms: float, horizon_ms: float) -> List[Operation]:
        deadline = now_ms + horizon_ms
        return [op for op in self._ops.get(target, ()) if op.completion_ms <= deadline]

    def project_state(
        self,
        target: TargetSnapshot,
        horizon_ms: float,
        now_ms: float,
        model: OperationModel,
    ) -> TargetSnapshot:
        """Ground truth with every operation completing by ``now + horizon`` applied."""
        return model.fold(target, self.landing_within(target.name, now_ms, horizon_ms))

    def targets(self) -> List[str]:
        return [t for t, ops in self._ops.items() if ops]

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {target: [op.to_dict() for op in ops] for target, ops in self._ops.items() if ops}
