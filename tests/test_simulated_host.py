from pathlib import Path

import pytest

from farm.errors import PayloadMissingError
from farm.host.simulated import SimNode, SimulatedHost
from farm.state import OperationKind

from conftest import make_world, sim_target

WORLD = """
operator_level: 40
port_openers: 1
start_ms: 5000
payload_costs:
  harvest: 2
  fortify: 2.5
  suppress: 2.5
nodes:
  - name: home
    home: true
    capacity: 32
    cores: 2
  - name: open
    capacity: 8
  - name: locked
    capacity: 8
    ports_required: 3
    target:
      yield: 10
      max_yield: 100
      defense: 20
      min_defense: 4
      growth: 5
      required_level: 30
      base_latency_ms: 250
"""


@pytest.fixture
def yaml_world(tmp_path: Path):
    path = tmp_path / "world.yaml"
    path.write_text(WORLD, encoding="utf-8")
    return SimulatedHost.from_yaml(str(path))


def test_loads_world_from_yaml(yaml_world):
    assert yaml_world.operator_level() == 40
    assert yaml_world.now_ms() == 5000
    assert yaml_world.operation_cost(OperationKind.FORTIFY) == 2.5

    nodes = {n.name: n for n in yaml_world.list_nodes()}
    assert nodes["home"].is_home and nodes["home"].has_access and nodes["home"].cores == 2
    assert not nodes["open"].has_access
    assert nodes["locked"].max_yield == 100
    assert nodes["locked"].required_level == 30

    target = yaml_world.target_snapshot("locked")
    assert (target.yield_, target.defense, target.min_defense, target.growth) == (10, 20, 4, 5)


def test_access_depends_on_port_openers(yaml_world):
    assert yaml_world.ensure_access("open")
    assert yaml_world.ensure_access("open")
    assert not yaml_world.ensure_access("locked")
    yaml_world.port_openers = 3
    assert yaml_world.ensure_access("locked")


def test_latency_scales_with_defense_and_kind(yaml_world):
    harvest = yaml_world.operation_latency(OperationKind.HARVEST, "locked")
    assert harvest == pytest.approx(250 * 1.2)
    assert yaml_world.operation_latency(OperationKind.FORTIFY, "locked") == pytest.approx(harvest * 3.2)
    assert yaml_world.operation_latency(OperationKind.SUPPRESS, "locked") == pytest.approx(harvest * 4.0)


def test_launch_holds_capacity_until_landing(world):
    world.distribute_payload(OperationKind.SUPPRESS, "home", "w1")
    assert world.launch(OperationKind.SUPPRESS, "w1", 10, "t1", 2_000, 1) is not None
    assert world.node_free_capacity("w1") == pytest.approx(512 - 17.5)
    assert len(world.list_running_processes("w1")) == 1

    # Suppress against t1 takes about 440 ms
    world.advance(400)
    assert world.target_snapshot("t1").defense == 10.0

    assert world.advance(100) == 1
    assert world.node_free_capacity("w1") == 512
    assert world.target_snapshot("t1").defense == pytest.approx(9.5)
    assert world.list_running_processes("w1") == []


def test_launch_rejections(world):
    world.distribute_payload(OperationKind.HARVEST, "home", "w1")
    assert world.launch(OperationKind.HARVEST, "w1", 1, "t1", 2_000, 1) is not None
    # Same kind, node and arguments
    assert world.launch(OperationKind.HARVEST, "w1", 1, "t1", 2_000, 1) is None
    assert world.launch(OperationKind.HARVEST, "w1", 1_000, "t1", 2_000, 2) is None
    # Payload never copied to this node
    world.nodes["w2"] = SimNode("w2", total_capacity=64.0, has_access=True)
    assert world.launch(OperationKind.FORTIFY, "w2", 1, "t1", 2_000, 3) is None


def test_distribution_requires_payload_on_source(world):
    with pytest.raises(PayloadMissingError):
        world.distribute_payload(OperationKind.HARVEST, "w1", "home")
    world.fail_distribution.add("w1")
    assert not world.distribute_payload(OperationKind.HARVEST, "home", "w1")


def test_missing_payload_cost_is_fatal():
    world = make_world(costs={OperationKind.HARVEST: 1.7})
    with pytest.raises(PayloadMissingError):
        world.operation_cost(OperationKind.SUPPRESS)


def test_landing_uses_the_operation_model():
    world = make_world(targets={"t1": sim_target(yield_=1e6, max_yield=1e6, defense=10.0, min_defense=10.0)})
    world.distribute_payload(OperationKind.HARVEST, "home", "w1")
    world.launch(OperationKind.HARVEST, "w1", 10, "t1", 0, 1)
    world.advance(10_000)
    snapshot = world.target_snapshot("t1")
    assert snapshot.yield_ < 1e6
    assert snapshot.defense == pytest.approx(10.02)
