"""Translate between kubernetes client objects (V1Pod, V1Node) and kcp models."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Union

from kubernetes.client import (
    V1Container,
    V1ContainerState,
    V1ContainerStateRunning,
    V1ContainerStateTerminated,
    V1ContainerStateWaiting,
    V1ContainerStatus,
    V1Node,
    V1NodeCondition,
    V1NodeSpec,
    V1NodeStatus,
    V1ObjectMeta,
    V1Pod,
    V1PodCondition,
    V1PodSpec,
    V1PodStatus,
    V1ResourceRequirements,
)

from kcp.model import (
    Container,
    ContainerStatus,
    Node,
    NodeCapacity,
    NodeStatus,
    ObjectMeta,
    Pod,
    PodCondition,
    PodPhase,
    PodSpec,
    PodStatus,
)

_MEMORY_UNITS = {
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "K": 1000,
    "M": 1000 ** 2,
    "G": 1000 ** 3,
    "T": 1000 ** 4,
}


def parse_cpu(quantity: Union[str, int, float, None], default: int = 0) -> int:
    """CPU quantity ("250m", "2", "0.5") to millicores."""
    if quantity is None or quantity == "":
        return default
    text = str(quantity).strip()
    try:
        if text.endswith("m"):
            return int(float(text[:-1]))
        return int(float(text) * 1000)
    except ValueError:
        return default


def parse_memory(quantity: Union[str, int, float, None], default: int = 0) -> int:
    """Memory quantity ("64Mi", "1Gi", "500M", bytes) to MiB."""
    if quantity is None or quantity == "":
        return default
    text = str(quantity).strip()
    try:
        for suffix in sorted(_MEMORY_UNITS, key=len, reverse=True):
            if text.endswith(suffix):
                return int(float(text[: -len(suffix)]) * _MEMORY_UNITS[suffix] / (1024 ** 2))
        return int(float(text) / (1024 ** 2))
    except ValueError:
        return default


def _ts(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(value)


def _version(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def meta_from_k8s(meta: Optional[V1ObjectMeta]) -> ObjectMeta:
    if meta is None:
        return ObjectMeta()
    return ObjectMeta(
        name=meta.name,
        namespace=meta.namespace,
        uid=meta.uid,
        labels=dict(meta.labels or {}),
        resource_version=_version(meta.resource_version),
        creation_timestamp=_ts(meta.creation_timestamp),
        deletion_timestamp=_ts(meta.deletion_timestamp),
    )


def meta_to_k8s(meta: ObjectMeta, namespaced: bool = True) -> V1ObjectMeta:
    return V1ObjectMeta(
        name=meta.name,
        namespace=meta.namespace if namespaced else None,
        uid=meta.uid,
        labels=dict(meta.labels) or None,
        resource_version=str(meta.resource_version) if meta.resource_version else None,
    )


# ----------------------------- pods -----------------------------

def _container_from_k8s(c: V1Container) -> Container:
    requests: Dict[str, Any] = {}
    if c.resources is not None and c.resources.requests:
        requests = c.resources.requests
    return Container(
        name=c.name,
        image=c.image or "",
        cpu_millicores=parse_cpu(requests.get("cpu"), 100),
        memory_mb=parse_memory(requests.get("memory"), 64),
    )


def _container_status_from_k8s(cs: V1ContainerStatus) -> ContainerStatus:
    state, reason, message, exit_code = "waiting", None, None, None
    if cs.state is not None:
        if cs.state.terminated is not None:
            t = cs.state.terminated
            state, reason, message, exit_code = "terminated", t.reason, t.message, t.exit_code
        elif cs.state.running is not None:
            state = "running"
        elif cs.state.waiting is not None:
            reason, message = cs.state.waiting.reason, cs.state.waiting.message
    return ContainerStatus(
        name=cs.name,
        image=cs.image or "",
        ready=bool(cs.ready),
        restart_count=cs.restart_count or 0,
        state=state,
        reason=reason,
        message=message,
        exit_code=exit_code,
    )


def _container_status_to_k8s(cs: ContainerStatus) -> V1ContainerStatus:
    if cs.state == "terminated":
        state = V1ContainerState(
            terminated=V1ContainerStateTerminated(
                exit_code=cs.exit_code or 0, reason=cs.reason, message=cs.message
            )
        )
    elif cs.state == "running":
        state = V1ContainerState(running=V1ContainerStateRunning())
    else:
        state = V1ContainerState(waiting=V1ContainerStateWaiting(reason=cs.reason, message=cs.message))
    return V1ContainerStatus(
        name=cs.name,
        image=cs.image,
        image_id="",
        ready=cs.ready,
        restart_count=cs.restart_count,
        state=state,
    )


def pod_from_k8s(pod: V1Pod) -> Pod:
    spec = pod.spec or V1PodSpec(containers=[])
    status = pod.status or V1PodStatus()
    phase = None
    if status.phase:
        try:
            phase = PodPhase(status.phase)
        except ValueError:
            phase = PodPhase.UNKNOWN
    return Pod(
        metadata=meta_from_k8s(pod.metadata),
        spec=PodSpec(
            containers=[_container_from_k8s(c) for c in spec.containers or []],
            node_name=spec.node_name,
            restart_policy=spec.restart_policy or "Never",
        ),
        status=PodStatus(
            phase=phase,
            conditions=[
                PodCondition(
                    type=c.type,
                    status=c.status,
                    reason=c.reason,
                    message=c.message,
                    last_transition_time=_ts(c.last_transition_time),
                )
                for c in status.conditions or []
            ],
            container_statuses=[_container_status_from_k8s(cs) for cs in status.container_statuses or []],
            host_ip=status.host_ip,
            pod_ip=status.pod_ip,
            start_time=_ts(status.start_time),
            reason=status.reason,
            message=status.message,
        ),
    )


def pod_to_k8s(pod: Pod) -> V1Pod:
    containers = [
        V1Container(
            name=c.name,
            image=c.image,
            resources=V1ResourceRequirements(
                requests={"cpu": f"{c.cpu_millicores}m", "memory": f"{c.memory_mb}Mi"},
            ),
        )
        for c in pod.spec.containers
    ]
    status = pod.status
    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=meta_to_k8s(pod.metadata),
        spec=V1PodSpec(
            containers=containers,
            node_name=pod.spec.node_name,
            restart_policy=pod.spec.restart_policy,
        ),
        status=V1PodStatus(
            phase=getattr(status.phase, "value", status.phase),
            conditions=[
                V1PodCondition(
                    type=str(getattr(c.type, "value", c.type)),
                    status=str(getattr(c.status, "value", c.status)),
                    reason=c.reason,
                    message=c.message,
                    last_transition_time=c.last_transition_time,
                )
                for c in status.conditions
            ]
            or None,
            container_statuses=[_container_status_to_k8s(cs) for cs in status.container_statuses] or None,
            host_ip=status.host_ip,
            pod_ip=status.pod_ip,
            start_time=status.start_time,
            reason=status.reason,
            message=status.message,
        ),
    )


# ----------------------------- nodes -----------------------------

def node_from_k8s(node: V1Node) -> Node:
    spec = node.spec or V1NodeSpec()
    status = node.status or V1NodeStatus()
    capacity = status.allocatable or status.capacity or {}
    conditions = [
        PodCondition(
            type=c.type,
            status=c.status,
            reason=c.reason,
            message=c.message,
            last_transition_time=_ts(c.last_transition_time),
        )
        for c in status.conditions or []
    ]
    ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
    address = None
    for addr in status.addresses or []:
        if addr.type == "InternalIP":
            address = addr.address
            break
    return Node(
        metadata=meta_from_k8s(node.metadata),
        capacity=NodeCapacity(
            cpu_millicores=parse_cpu(capacity.get("cpu"), 4000),
            memory_mb=parse_memory(capacity.get("memory"), 8192),
            pods=int(capacity.get("pods", 110)),
        ),
        unschedulable=bool(spec.unschedulable),
        status=NodeStatus(ready=ready, conditions=conditions, address=address),
    )


def node_to_k8s(node: Node) -> V1Node:
    capacity = {
        "cpu": f"{node.capacity.cpu_millicores}m",
        "memory": f"{node.capacity.memory_mb}Mi",
        "pods": str(node.capacity.pods),
    }
    conditions = [
        V1NodeCondition(
            type=str(getattr(c.type, "value", c.type)),
            status=str(getattr(c.status, "value", c.status)),
            reason=c.reason,
            message=c.message,
        )
        for c in node.status.conditions
    ]
    if not any(c.type == "Ready" for c in conditions):
        conditions.append(V1NodeCondition(type="Ready", status="True" if node.status.ready else "False"))
    return V1Node(
        api_version="v1",
        kind="Node",
        metadata=meta_to_k8s(node.metadata, namespaced=False),
        spec=V1NodeSpec(unschedulable=node.unschedulable or None),
        status=V1NodeStatus(capacity=capacity, allocatable=dict(capacity), conditions=conditions),
    )
