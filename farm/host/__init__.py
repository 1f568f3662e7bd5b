"""Host environments: the scheduler's view of workers, targets and processes."""

from farm.host.base import HostEnvironment

__all__ = ["HostEnvironment"]
