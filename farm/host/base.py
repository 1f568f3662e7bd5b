from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from farm.state import NodeSnapshot, OperationKind, RunningProcess, TargetSnapshot

# Latency of each kind relative to a harvest against the same target
LATENCY_FACTORS = {
	OperationKind.HARVEST: 1.0,
	OperationKind.FORTIFY: 3.2,
	OperationKind.SUPPRESS: 4.0,
}


class HostEnvironment(ABC):
	"""Contract the scheduler uses to observe and act on the outside world.

	Every read is a best-effort snapshot: capacity may be consumed by someone
	else between a read and the following launch, in which case the launch
	simply fails.
	"""

	@abstractmethod
	def list_nodes(self) -> List[NodeSnapshot]:
		raise NotImplementedError

	@abstractmethod
	def ensure_access(self, node: str) -> bool:
		"""Try to gain operating rights on ``node``; idempotent."""
		raise NotImplementedError

	@abstractmethod
	def node_free_capacity(self, node: str) -> float:
		raise NotImplementedError

	@abstractmethod
	def target_snapshot(self, target: str) -> TargetSnapshot:
		raise NotImplementedError

	@abstractmethod
	def operation_latency(self, kind: OperationKind, target: str) -> float:
		"""Execution time in milliseconds of ``kind`` against ``target`` right now."""
		raise NotImplementedError

	@abstractmethod
	def operation_cost(self, kind: OperationKind) -> float:
		"""Capacity consumed by one thread of ``kind``."""
		raise NotImplementedError

	@abstractmethod
	def operator_level(self) -> int:
		raise NotImplementedError

	@abstractmethod
	def distribute_payload(self, kind: OperationKind, source: str, dest: str) -> bool:
		raise NotImplementedError

	@abstractmethod
	def launch(
		self,
		kind: OperationKind,
		node: str,
		threads: int,
		target: str,
		completion_ms: int,
		uniquifier: int,
	) -> Optional[str]:
		"""Start ``threads`` instances; returns a handle, or ``None`` on failure."""
		raise NotImplementedError

	@abstractmethod
	def list_running_processes(self, node: str) -> List[RunningProcess]:
		raise NotImplementedError

	@abstractmethod
	def now_ms(self) -> int:
		raise NotImplementedError

	@abstractmethod
	def sleep(self, ms: float) -> None:
		raise NotImplementedError

	def home_node(self) -> Optional[NodeSnapshot]:
		for node in self.list_nodes():
			if node.is_home:
				return node
		return None
