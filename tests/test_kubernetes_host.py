from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from farm.errors import PayloadMissingError
from farm.host.kubernetes import (
    KubernetesHost,
    generate_operation_pod,
    parse_cpu,
    parse_memory_gib,
)
from farm.ledger import InFlightLedger
from farm.reconcile import reconcile
from farm.state import NodeSnapshot, OperationKind


def k8s_node(name, memory, cpu, home=False, ready=True, cordoned=False):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels={"farm.io/home": "true"} if home else {}),
        spec=SimpleNamespace(unschedulable=cordoned),
        status=SimpleNamespace(
            allocatable={"memory": memory, "cpu": cpu},
            conditions=[SimpleNamespace(type="Ready", status="True" if ready else "False")],
        ),
    )


def k8s_pod(payload, args, threads, phase="Running", memory="2Gi"):
    container = SimpleNamespace(
        command=["python", f"/payload/{payload}"],
        args=args,
        resources=SimpleNamespace(requests={"memory": memory}),
    )
    return SimpleNamespace(
        metadata=SimpleNamespace(annotations={"farm.io/threads": str(threads)}),
        spec=SimpleNamespace(containers=[container]),
        status=SimpleNamespace(phase=phase),
    )


@pytest.fixture
def core():
    api = MagicMock()
    api.list_pod_for_all_namespaces.return_value = SimpleNamespace(items=[])
    return api


@pytest.fixture
def custom():
    return MagicMock()


@pytest.fixture
def host(core, custom, tmp_path: Path):
    for name in ("harvest.py", "fortify.py", "suppress.py"):
        (tmp_path / name).write_text("print('ok')\n", encoding="utf-8")
    return KubernetesHost(namespace="farm", payload_dir=str(tmp_path), operator_level=50, core_api=core, custom_api=custom)


def test_quantity_parsing():
    assert parse_memory_gib("16Gi") == 16.0
    assert parse_memory_gib("512Mi") == 0.5
    assert parse_memory_gib("1048576Ki") == 1.0
    assert parse_memory_gib(str(1024 ** 3)) == 1.0
    assert parse_memory_gib("") == 0.0
    assert parse_memory_gib("lots") == 0.0
    assert parse_cpu("4") == 4
    assert parse_cpu("2500m") == 2
    assert parse_cpu("500m") == 1
    assert parse_cpu(None) == 1


def test_memory_quantities_in_exponent_and_decimal_forms(caplog):
    assert parse_memory_gib("129e6") == pytest.approx(129e6 / 1024 ** 3)
    assert parse_memory_gib("1.5E9") == pytest.approx(1.5e9 / 1024 ** 3)
    assert parse_memory_gib("2G") == pytest.approx(2e9 / 1024 ** 3)
    assert parse_memory_gib("1Ei") == 1024.0 ** 3
    assert parse_memory_gib("1E") == pytest.approx(1e18 / 1024 ** 3)
    assert parse_memory_gib("8589934592000m") == pytest.approx(8.0)

    with caplog.at_level("WARNING", logger="farm.host.kubernetes"):
        assert parse_memory_gib("12Qi") == 0.0
    assert "12Qi" in caplog.text


def test_operation_pod_carries_reconciliation_arguments():
    pod = generate_operation_pod(OperationKind.FORTIFY, "node-a", 2, "T1", 123, 7, namespace="farm", cost_gib=1.75)
    container = pod.spec.containers[0]

    assert pod.spec.node_name == "node-a"
    assert pod.metadata.name == "fortify-t1-node-a-7"
    assert pod.metadata.labels["farm.io/kind"] == "fortify"
    assert pod.metadata.annotations["farm.io/threads"] == "2"
    assert container.command == ["python", "/payload/fortify.py"]
    assert container.args == ["T1", "123", "7"]
    assert container.resources.requests == {"memory": "3584Mi"}


def test_list_nodes_includes_workers_and_targets(host, core, custom):
    core.list_node.return_value = SimpleNamespace(items=[
        k8s_node("home", "64Gi", "4", home=True),
        k8s_node("n1", "16Gi", "2", ready=False),
    ])
    core.list_pod_for_all_namespaces.return_value = SimpleNamespace(items=[k8s_pod("harvest.py", [], 1)])
    custom.list_namespaced_custom_object.return_value = {
        "items": [{"metadata": {"name": "t1"}, "status": {"maxYield": 1000, "requiredLevel": 5}}],
    }

    nodes = {n.name: n for n in host.list_nodes()}
    assert nodes["home"].is_home and nodes["home"].has_access
    assert nodes["home"].total_capacity == 64.0
    assert nodes["home"].used_capacity == 2.0
    assert nodes["home"].cores == 4
    assert not nodes["n1"].has_access
    assert nodes["t1"].max_yield == 1000.0
    assert nodes["t1"].total_capacity == 0.0
    assert nodes["t1"].is_usable_target(host.operator_level())


def test_access_requires_ready_and_uncordoned(host, core):
    core.read_node.return_value = k8s_node("n1", "16Gi", "2", cordoned=True)
    assert not host.ensure_access("n1")
    core.read_node.return_value = k8s_node("n1", "16Gi", "2")
    assert host.ensure_access("n1")
    core.read_node.side_effect = ApiException(status=404, reason="Not Found")
    assert not host.ensure_access("gone")


def test_target_snapshot_and_latency(host, custom):
    custom.get_namespaced_custom_object.return_value = {"status": {
        "yield": 500, "maxYield": 1000, "defense": 20, "minDefense": 5,
        "growth": 3, "requiredLevel": 10, "baseLatencyMs": 2000,
    }}
    snapshot = host.target_snapshot("t1")
    assert (snapshot.yield_, snapshot.max_yield, snapshot.defense, snapshot.min_defense) == (500, 1000, 20, 5)
    assert host.operation_latency(OperationKind.HARVEST, "t1") == pytest.approx(2400.0)
    assert host.operation_latency(OperationKind.SUPPRESS, "t1") == pytest.approx(9600.0)


def test_running_pods_reconcile_into_the_ledger(host, core):
    core.list_namespaced_pod.return_value = SimpleNamespace(items=[
        k8s_pod("harvest.py", ["t1", "5000", "1"], 6),
        k8s_pod("suppress.py", ["t1", "6000", "2"], 3, phase="Succeeded"),
    ])
    procs = host.list_running_processes("home")
    assert len(procs) == 1

    ledger = InFlightLedger()
    assert reconcile(host, ledger, [NodeSnapshot("home", 64.0, cores=4)], now_ms=1_000) == 1
    [op] = ledger.operations_for("t1")
    assert (op.kind, op.threads, op.completion_ms) == (OperationKind.HARVEST, 6, 5_000)


def test_launch_creates_pinned_pod(host, core):
    core.create_namespaced_pod.return_value = SimpleNamespace(metadata=SimpleNamespace(name="harvest-t1-home-9"))
    assert host.launch(OperationKind.HARVEST, "home", 4, "t1", 9_000, 9) == "harvest-t1-home-9"
    body = core.create_namespaced_pod.call_args.kwargs["body"]
    assert body.spec.node_name == "home"

    core.create_namespaced_pod.side_effect = ApiException(status=409, reason="Conflict")
    assert host.launch(OperationKind.HARVEST, "home", 4, "t1", 9_000, 9) is None


def test_distribute_payload_creates_config_map_once(host, core):
    core.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")
    assert host.distribute_payload(OperationKind.FORTIFY, "home", "n1")
    body = core.create_namespaced_config_map.call_args.args[1]
    assert body.metadata.name == "farm-payload-fortify"
    assert "fortify.py" in body.data

    core.create_namespaced_config_map.side_effect = ApiException(status=409, reason="Conflict")
    assert host.distribute_payload(OperationKind.FORTIFY, "home", "n1")

    core.read_namespaced_config_map.side_effect = ApiException(status=500, reason="Server Error")
    assert not host.distribute_payload(OperationKind.FORTIFY, "home", "n1")

    core.read_namespaced_config_map.side_effect = None
    assert host.distribute_payload(OperationKind.FORTIFY, "home", "n1")


def test_missing_payload_file_is_fatal(host, tmp_path: Path):
    (tmp_path / "suppress.py").unlink()
    with pytest.raises(PayloadMissingError):
        host.distribute_payload(OperationKind.SUPPRESS, "home", "n1")
