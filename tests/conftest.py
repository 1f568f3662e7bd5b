import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from farm.config import SchedulerConfig
from farm.host.simulated import SimNode, SimTarget, SimulatedHost
from farm.state import TargetSnapshot


def make_target(**overrides) -> TargetSnapshot:
    data = dict(
        name="t1",
        yield_=100_000.0,
        max_yield=1_000_000.0,
        defense=10.0,
        min_defense=5.0,
        growth=10.0,
        required_level=1,
    )
    data.update(overrides)
    return TargetSnapshot(**data)


def sim_target(**overrides) -> SimTarget:
    data = dict(
        yield_=100_000.0,
        max_yield=1_000_000.0,
        defense=10.0,
        min_defense=5.0,
        growth=10.0,
        required_level=1,
        base_latency_ms=100.0,
    )
    data.update(overrides)
    return SimTarget(**data)


def make_world(targets=None, workers=None, home_capacity=64.0, operator_level=100, **kwargs) -> SimulatedHost:
    """Home node, accessible workers and one node per target."""
    nodes = [SimNode("home", total_capacity=home_capacity, is_home=True)]
    for name, capacity in (workers if workers is not None else {"w1": 512.0}).items():
        nodes.append(SimNode(name, total_capacity=capacity, has_access=True))
    for name, target in (targets if targets is not None else {"t1": sim_target()}).items():
        nodes.append(SimNode(name, has_access=True, target=target))
    return SimulatedHost(nodes, operator_level=operator_level, **kwargs)


@pytest.fixture
def config():
    return SchedulerConfig()


@pytest.fixture
def world():
    return make_world()
