"""Kubernetes-backed host.

Workers are cluster nodes and every launched operation is a pod pinned to its
worker. The pod arguments carry ``[target, completion_ms, uniquifier]``, so
the live pod list is all the state a restarted scheduler needs. Targets are
namespaced ``targets.farm.io/v1`` custom objects whose ``status`` reports the
yield and defense figures.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client import (
    V1ConfigMap,
    V1ConfigMapVolumeSource,
    V1Container,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1ResourceRequirements,
    V1Volume,
    V1VolumeMount,
)
from kubernetes.client.exceptions import ApiException

from farm.errors import PayloadMissingError
from farm.host.base import LATENCY_FACTORS, HostEnvironment
from farm.state import (
    PAYLOADS,
    NodeSnapshot,
    OperationKind,
    RunningProcess,
    TargetSnapshot,
    safe_float,
    safe_int,
    utc_ms,
)

logger = logging.getLogger(__name__)

HOME_LABEL = "farm.io/home"
KIND_LABEL = "farm.io/kind"
TARGET_LABEL = "farm.io/target"
THREADS_ANNOTATION = "farm.io/threads"

TARGET_GROUP = "farm.io"
TARGET_VERSION = "v1"
TARGET_PLURAL = "targets"

_MEMORY_UNITS = {
    "": 1024 ** -3, "m": 1e-3 / 1024 ** 3,
    "Ki": 1024 ** -2, "Mi": 1024 ** -1, "Gi": 1.0, "Ti": 1024.0, "Pi": 1024.0 ** 2, "Ei": 1024.0 ** 3,
    "k": 1e3 / 1024 ** 3, "K": 1e3 / 1024 ** 3, "M": 1e6 / 1024 ** 3, "G": 1e9 / 1024 ** 3,
    "T": 1e12 / 1024 ** 3, "P": 1e15 / 1024 ** 3, "E": 1e18 / 1024 ** 3,
}

_QUANTITY = re.compile(r"([+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?)([A-Za-z]*)")


def parse_memory_gib(quantity: Optional[str]) -> float:
    """Convert a Kubernetes memory quantity (``"16Gi"``, ``"512Mi"``, ``"129e6"``) to GiB."""
    if not quantity:
        return 0.0
    m = _QUANTITY.fullmatch(str(quantity).strip())
    if not m or m.group(2) not in _MEMORY_UNITS:
        logger.warning(f"Unparseable memory quantity {quantity!r}, treating as 0")
        return 0.0
    return max(float(m.group(1)) * _MEMORY_UNITS[m.group(2)], 0.0)


def parse_cpu(quantity: Optional[str]) -> int:
    if not quantity:
        return 1
    q = str(quantity)
    if q.endswith("m"):
        return max(1, safe_int(q[:-1], 1000) // 1000)
    return max(1, int(safe_float(q, 1.0)))


def _label_safe(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "-", value)[:63].strip("-_.")


def _pod_name(value: str) -> str:
    return re.sub(r"[^a-z0-9-]", "-", value.lower())[-63:].strip("-")


def generate_operation_pod(
    kind: OperationKind,
    node: str,
    threads: int,
    target: str,
    completion_ms: int,
    uniquifier: int,
    namespace: str,
    cost_gib: float,
    image: str = "farm/payload-runner:latest",
) -> V1Pod:
    payload = PAYLOADS[kind]
    pod_name = _pod_name(f"{kind.value}-{target}-{node}-{uniquifier}")
    container = V1Container(
        name="payload",
        image=image,
        image_pull_policy="IfNotPresent",
        command=["python", f"/payload/{payload}"],
        args=[target, str(completion_ms), str(uniquifier)],
        resources=V1ResourceRequirements(
            requests={"memory": f"{int(round(threads * cost_gib * 1024))}Mi"},
        ),
        volume_mounts=[V1VolumeMount(name="payload", mount_path="/payload")],
    )
    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=V1ObjectMeta(
            name=pod_name,
            namespace=namespace,
            labels={
                KIND_LABEL: kind.value,
                TARGET_LABEL: _label_safe(target),
                "app": "farm-payload",
            },
            annotations={THREADS_ANNOTATION: str(threads)},
        ),
        spec=V1PodSpec(
            node_name=node,
            containers=[container],
            restart_policy="Never",
            volumes=[V1Volume(
                name="payload",
                config_map=V1ConfigMapVolumeSource(name=payload_configmap_name(kind)),
            )],
        ),
    )


def payload_configmap_name(kind: OperationKind) -> str:
    return f"farm-payload-{kind.value}"


class KubernetesHost(HostEnvironment):
    def __init__(
        self,
        namespace: str = "farm",
        payload_dir: str = "payloads",
        operator_level: int = 1,
        costs: Optional[Dict[OperationKind, float]] = None,
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
    ) -> None:
        self.namespace = namespace
        self.payload_dir = Path(payload_dir)
        self.level = int(operator_level)
        self.costs = dict(costs or {kind: 1.75 for kind in OperationKind})

        if core_api is None or custom_api is None:
            try:
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes config")
            except Exception:
                try:
                    config.load_kube_config()
                    logger.info("Loaded kubeconfig")
                except Exception as e:
                    logger.warning(f"Could not load Kubernetes config: {e}")
        self.core = core_api or client.CoreV1Api()
        self.custom = custom_api or client.CustomObjectsApi()

    # -------- observation --------

    def list_nodes(self) -> List[NodeSnapshot]:
        nodes = []
        for item in self.core.list_node().items:
            name = item.metadata.name
            allocatable = (item.status.allocatable or {}) if item.status else {}
            labels = item.metadata.labels or {}
            nodes.append(NodeSnapshot(
                name=name,
                total_capacity=parse_memory_gib(allocatable.get("memory")),
                used_capacity=self._requested_gib(name),
                cores=parse_cpu(allocatable.get("cpu")),
                is_home=labels.get(HOME_LABEL) == "true",
                has_access=self._schedulable(item),
            ))
        for obj in self._list_targets():
            status = obj.get("status") or {}
            nodes.append(NodeSnapshot(
                name=obj["metadata"]["name"],
                total_capacity=0.0,
                has_access=True,
                max_yield=safe_float(status.get("maxYield"), 0.0),
                required_level=safe_int(status.get("requiredLevel"), 0),
            ))
        return nodes

    def ensure_access(self, node: str) -> bool:
        try:
            return self._schedulable(self.core.read_node(node))
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def node_free_capacity(self, node: str) -> float:
        item = self.core.read_node(node)
        allocatable = (item.status.allocatable or {}) if item.status else {}
        return max(parse_memory_gib(allocatable.get("memory")) - self._requested_gib(node), 0.0)

    def target_snapshot(self, target: str) -> TargetSnapshot:
        status = self._read_target(target).get("status") or {}
        return TargetSnapshot(
            name=target,
            yield_=safe_float(status.get("yield"), 0.0),
            max_yield=safe_float(status.get("maxYield"), 0.0),
            defense=safe_float(status.get("defense"), 1.0),
            min_defense=safe_float(status.get("minDefense"), 1.0),
            growth=safe_float(status.get("growth"), 1.0),
            required_level=safe_int(status.get("requiredLevel"), 0),
        )

    def operation_latency(self, kind: OperationKind, target: str) -> float:
        status = self._read_target(target).get("status") or {}
        base = safe_float(status.get("baseLatencyMs"), 1000.0)
        defense = safe_float(status.get("defense"), 1.0)
        return base * (1.0 + defense / 100.0) * LATENCY_FACTORS[kind]

    def operation_cost(self, kind: OperationKind) -> float:
        if kind not in self.costs:
            raise PayloadMissingError(PAYLOADS[kind])
        return self.costs[kind]

    def operator_level(self) -> int:
        return self.level

    def list_running_processes(self, node: str) -> List[RunningProcess]:
        pods = self.core.list_namespaced_pod(
            self.namespace,
            label_selector=KIND_LABEL,
            field_selector=f"spec.nodeName={node}",
        ).items
        procs = []
        for pod in pods:
            phase = pod.status.phase if pod.status else None
            if phase not in ("Pending", "Running"):
                continue
            container = pod.spec.containers[0]
            payload = (container.command or [""])[-1]
            annotations = pod.metadata.annotations or {}
            procs.append(RunningProcess(
                payload=payload,
                args=list(container.args or []),
                threads=safe_int(annotations.get(THREADS_ANNOTATION), 1),
            ))
        return procs

    def now_ms(self) -> int:
        return utc_ms()

    def sleep(self, ms: float) -> None:
        time.sleep(max(0.0, ms) / 1000.0)

    # -------- actions --------

    def distribute_payload(self, kind: OperationKind, source: str, dest: str) -> bool:
        """Make sure the payload ConfigMap exists; pods on ``dest`` mount it."""
        payload = PAYLOADS[kind]
        path = self.payload_dir / payload
        if not path.exists():
            raise PayloadMissingError(payload, source=source)
        name = payload_configmap_name(kind)
        try:
            self.core.read_namespaced_config_map(name, self.namespace)
            return True
        except ApiException as e:
            if e.status != 404:
                logger.error(f"Failed to read payload config map {name}: status={e.status}, reason={e.reason}")
                return False
        body = V1ConfigMap(
            metadata=V1ObjectMeta(name=name, namespace=self.namespace, labels={KIND_LABEL: kind.value}),
            data={payload: path.read_text(encoding="utf-8")},
        )
        try:
            self.core.create_namespaced_config_map(self.namespace, body)
            logger.info(f"Created payload config map {name}")
            return True
        except ApiException as e:
            if e.status == 409:
                return True
            logger.error(f"Failed to create payload config map {name}: status={e.status}, reason={e.reason}")
            return False

    def launch(
        self,
        kind: OperationKind,
        node: str,
        threads: int,
        target: str,
        completion_ms: int,
        uniquifier: int,
    ) -> Optional[str]:
        pod = generate_operation_pod(
            kind, node, threads, target, completion_ms, uniquifier,
            namespace=self.namespace,
            cost_gib=self.operation_cost(kind),
        )
        try:
            created = self.core.create_namespaced_pod(namespace=self.namespace, body=pod)
        except ApiException as e:
            logger.error(f"Failed to create pod for {kind.value} on {node}: status={e.status}, reason={e.reason}")
            return None
        return created.metadata.name

    # -------- internal --------

    def _schedulable(self, item: Any) -> bool:
        if item.spec is not None and item.spec.unschedulable:
            return False
        for cond in (item.status.conditions or []) if item.status else []:
            if cond.type == "Ready":
                return cond.status == "True"
        return False

    def _requested_gib(self, node: str) -> float:
        pods = self.core.list_pod_for_all_namespaces(
            field_selector=f"spec.nodeName={node},status.phase!=Succeeded,status.phase!=Failed",
        ).items
        total = 0.0
        for pod in pods:
            for container in pod.spec.containers or []:
                requests = (container.resources.requests or {}) if container.resources else {}
                total += parse_memory_gib(requests.get("memory"))
        return total

    def _list_targets(self) -> List[Dict[str, Any]]:
        try:
            resp = self.custom.list_namespaced_custom_object(
                TARGET_GROUP, TARGET_VERSION, self.namespace, TARGET_PLURAL,
            )
        except ApiException as e:
            logger.error(f"Failed to list targets: status={e.status}, reason={e.reason}")
            return []
        return list(resp.get("items", []))

    def _read_target(self, target: str) -> Dict[str, Any]:
        return self.custom.get_namespaced_custom_object(
            TARGET_GROUP, TARGET_VERSION, self.namespace, TARGET_PLURAL, target,
        )
