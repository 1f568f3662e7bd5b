"""Scheduler stages.

A stage is one strategy for keeping the workers busy. The controller runs the
most capable stage whose requirements are met, so a small deployment starts on
the naive harvester and moves to the projected scheduler once the home node is
large enough to host it.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import List, Optional, Sequence

from farm.capacity import free_capacity, usable_sources, usable_targets
from farm.config import SchedulerConfig
from farm.errors import NoStageAvailableError
from farm.host.base import HostEnvironment
from farm.scheduler import BatchScheduler, OperationLauncher, TickResult
from farm.scoring import harvest_rate_score
from farm.state import NodeSnapshot, OperationKind, TargetSnapshot

logger = logging.getLogger(__name__)


class Stage(ABC):
	name: str = "stage"

	@abstractmethod
	def has_requirements(self) -> bool:
		raise NotImplementedError

	@abstractmethod
	def run(self) -> TickResult:
		"""Run one scheduling pass."""
		raise NotImplementedError


class BasicStage(Stage):
	"""Point every worker at the single best target and harvest.

	No ledger, no projection: the stage fills all free capacity with Harvest
	threads against the target with the highest yield per harvest latency,
	then asks to be called again once that harvest has landed.
	"""
	name = "basic"

	def __init__(
		self,
		host: HostEnvironment,
		config: Optional[SchedulerConfig] = None,
		launcher: Optional[OperationLauncher] = None,
	) -> None:
		self.host = host
		self.config = config or SchedulerConfig()
		self.launcher = launcher or OperationLauncher(host, self.config.completion_margin_ms)

	def has_requirements(self) -> bool:
		return True

	def best_target(self, targets: Sequence[NodeSnapshot]) -> Optional[TargetSnapshot]:
		best: Optional[TargetSnapshot] = None
		best_score = -1.0
		for node in targets:
			snapshot = self.host.target_snapshot(node.name)
			score = harvest_rate_score(snapshot, self.host.operation_latency(OperationKind.HARVEST, node.name))
			if score > best_score:
				best, best_score = snapshot, score
		return best

	def run(self) -> TickResult:
		result = TickResult()
		nodes: List[NodeSnapshot] = []
		for node in self.host.list_nodes():
			if not node.has_access and self.host.ensure_access(node.name):
				node = replace(node, has_access=True)
			if node.has_access:
				nodes.append(node)
		target = self.best_target(usable_targets(nodes, self.host.operator_level()))
		if target is None:
			logger.info("No targets found")
			return result

		result.ranked = [target.name]
		result.decisions[target.name] = OperationKind.HARVEST
		home = self.host.home_node()
		home_name = home.name if home is not None else None
		cost = self.host.operation_cost(OperationKind.HARVEST)
		latency = self.host.operation_latency(OperationKind.HARVEST, target.name)

		for node in usable_sources(nodes, self.config.home_reserved):
			threads = math.floor(free_capacity(node, self.config.home_reserved) / cost)
			if threads <= 0:
				continue
			op = self.launcher.launch(OperationKind.HARVEST, node, threads, target.name, latency, home_name)
			if op is None:
				continue
			result.launched.append(op)
			logger.info(f"Harvesting {target.name} with {threads} threads on {node.name}")

		# Slightly past the landing so the next pass sees the freed capacity
		result.wait_ms = latency * 1.001
		return result


class ProjectedStage(Stage):
	"""The ledger-backed batch scheduler."""
	name = "projected"

	def __init__(self, scheduler: BatchScheduler) -> None:
		self.scheduler = scheduler

	def has_requirements(self) -> bool:
		return self.scheduler.has_requirements()

	def run(self) -> TickResult:
		return self.scheduler.run()


class StageController:
	"""Runs the last stage, in ascending order of capability, that can run."""

	def __init__(self, stages: Sequence[Stage]) -> None:
		if not stages:
			raise ValueError("at least one stage is required")
		self.stages = list(stages)
		self.current: Optional[Stage] = None

	def select(self) -> Stage:
		for stage in reversed(self.stages):
			if stage.has_requirements():
				if stage is not self.current:
					logger.info(f"Switching to {stage.name} stage")
					self.current = stage
				return stage
		raise NoStageAvailableError("no stage has its requirements met")

	def run(self) -> TickResult:
		return self.select().run()


def default_controller(
	host: HostEnvironment,
	config: Optional[SchedulerConfig] = None,
	scheduler: Optional[BatchScheduler] = None,
) -> StageController:
	config = config or SchedulerConfig()
	scheduler = scheduler or BatchScheduler(host, config=config)
	return StageController([BasicStage(host, config, scheduler.launcher), ProjectedStage(scheduler)])
