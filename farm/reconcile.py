"""Startup reconciliation: rebuild the ledger from live worker processes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from farm.state import NodeSnapshot, Operation, RunningProcess, kind_for_payload, safe_int

if TYPE_CHECKING:
    from farm.host.base import HostEnvironment
    from farm.ledger import InFlightLedger

logger = logging.getLogger(__name__)


def operation_from_process(node: NodeSnapshot, proc: RunningProcess) -> Optional[Operation]:
    """Rebuild an operation from a process launched as ``[target, completion_ms, uniquifier]``."""
    kind = kind_for_payload(proc.payload)
    if kind is None or len(proc.args) < 2:
        return None
    target = str(proc.args[0])
    completion_ms = safe_int(proc.args[1], -1)
    if completion_ms < 0:
        return None
    start_ms = safe_int(proc.args[2], completion_ms) if len(proc.args) > 2 else completion_ms
    return Operation(
        kind=kind,
        source=node.name,
        target=target,
        threads=max(1, safe_int(proc.threads, 1)),
        start_ms=start_ms,
        completion_ms=completion_ms,
        cores=node.cores,
    )


def reconcile(
    host: "HostEnvironment",
    ledger: "InFlightLedger",
    nodes: Iterable[NodeSnapshot],
    now_ms: float,
) -> int:
    """Insert every still-running operation found on ``nodes`` into ``ledger``."""
    restored = 0
    for node in nodes:
        for proc in host.list_running_processes(node.name):
            op = operation_from_process(node, proc)
            if op is None:
                logger.debug(f"Ignoring foreign process {proc.payload} on {node.name}")
                continue
            if ledger.record(op, now_ms):
                restored += 1
    return restored
