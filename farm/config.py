"""Scheduler configuration: YAML file with ``FARM_*`` environment overrides."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from farm.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerConfig:
	max_harvest_fraction: float = 0.3
	grow_threshold: float = 0.9
	home_reserved: float = 16.0
	tick_interval_ms: int = 500
	completion_margin_ms: int = 250
	defense_epsilon: float = 1e-9
	home_capacity_required: float = 32.0
	world_path: str = "sim/world.yaml"
	backend: str = "simulated"  # simulated | kubernetes
	namespace: str = "farm"
	payload_dir: str = "payloads"

	@classmethod
	def from_dict(cls, data: Dict[str, Any]) -> "SchedulerConfig":
		known = {f.name: f for f in fields(cls)}
		kwargs: Dict[str, Any] = {}
		for key, value in (data or {}).items():
			f = known.get(key)
			if f is None:
				logger.warning(f"Ignoring unknown config key: {key}")
				continue
			kwargs[key] = _coerce(key, getattr(cls, key), value)
		return cls(**kwargs)

	@classmethod
	def from_yaml(cls, path: str) -> "SchedulerConfig":
		p = Path(path)
		if not p.exists():
			logger.info(f"Config file {path} not found, using defaults")
			return cls()
		data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
		if not isinstance(data, dict):
			raise ConfigurationError(f"config file {path} must contain a mapping")
		return cls.from_dict(data.get("scheduler", data))

	def with_env_overrides(self, environ: Optional[Dict[str, str]] = None) -> "SchedulerConfig":
		env = os.environ if environ is None else environ
		changes: Dict[str, Any] = {}
		for f in fields(self):
			raw = env.get(f"FARM_{f.name.upper()}")
			if raw is not None:
				changes[f.name] = _coerce(f.name, getattr(self, f.name), raw)
		return replace(self, **changes) if changes else self

	def validate(self) -> "SchedulerConfig":
		if not 0.0 < self.max_harvest_fraction <= 1.0:
			raise ConfigurationError("max_harvest_fraction must be in (0, 1]")
		if not 0.0 < self.grow_threshold <= 1.0:
			raise ConfigurationError("grow_threshold must be in (0, 1]")
		if self.tick_interval_ms <= 0:
			raise ConfigurationError("tick_interval_ms must be positive")
		if self.completion_margin_ms < 0 or self.home_reserved < 0:
			raise ConfigurationError("margins must not be negative")
		if self.backend not in ("simulated", "kubernetes"):
			raise ConfigurationError(f"unknown backend: {self.backend}")
		return self


def _coerce(key: str, default: Any, value: Any) -> Any:
	try:
		if isinstance(default, bool):
			return str(value).lower() in ("1", "true", "yes", "on")
		if isinstance(default, int):
			return int(value)
		if isinstance(default, float):
			return float(value)
	except (TypeError, ValueError) as e:
		raise ConfigurationError(f"invalid value for {key}: {value!r}") from e
	return str(value)


def load_config(path: Optional[str] = None) -> SchedulerConfig:
	path = path or os.getenv("FARM_CONFIG", "farm.yaml")
	return SchedulerConfig.from_yaml(path).with_env_overrides().validate()
