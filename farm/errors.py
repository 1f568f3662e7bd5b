"""Exception hierarchy for the farm scheduler.

Transient failures (capacity, launch) are absorbed by the scheduler and never
leave a tick. Invariant violations propagate out of the run loop and stop it;
restart plus reconciliation is the recovery path.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "FarmError",
    "ConfigurationError",
    "LaunchError",
    "SchedulerInvariantError",
    "PayloadMissingError",
    "NoStageAvailableError",
]


class FarmError(Exception):
    """Base exception for all farm errors."""
    code: str = "FARM_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"[{self.code}] {self.message} ({ctx})"
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(FarmError):
    """Invalid scheduler configuration value."""
    code: str = "CONFIGURATION"


class LaunchError(FarmError):
    """Payload distribution or process start failed on one worker.

    Host adapters raise it internally; the scheduler skips the worker for the
    current operation and creates no ledger entry.
    """
    code: str = "LAUNCH_FAILED"

    def __init__(self, message: str, node: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context)
        self.node = node
        if node:
            self.context["node"] = node


class SchedulerInvariantError(FarmError):
    """Programming or deployment error; aborts the run loop."""
    code: str = "INVARIANT"


class PayloadMissingError(SchedulerInvariantError):
    """A required operation payload is not present on the source host."""
    code: str = "PAYLOAD_MISSING"

    def __init__(self, payload: str, source: Optional[str] = None):
        super().__init__(f"payload '{payload}' not found", context={"payload": payload})
        self.payload = payload
        if source:
            self.context["source"] = source


class NoStageAvailableError(FarmError):
    """No scheduler stage has its requirements met."""
    code: str = "NO_STAGE"
