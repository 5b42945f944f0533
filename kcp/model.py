from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import time


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class ConditionType(str, Enum):
    POD_SCHEDULED = "PodScheduled"
    INITIALIZED = "Initialized"
    READY = "Ready"
    CONTAINERS_READY = "ContainersReady"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ResourceKind(str, Enum):
    POD = "Pod"
    NODE = "Node"


class EventType(str, Enum):
    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"


TERMINAL_PHASES = (PodPhase.SUCCEEDED, PodPhase.FAILED)


def pod_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def split_key(key: str) -> Tuple[str, str]:
    namespace, _, name = key.partition("/")
    return namespace, name


def utc_iso(ts: Optional[float] = None) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(time.time() if ts is None else ts))


# ----------------------------- metadata -----------------------------

@dataclass
class ObjectMeta:
    name: Optional[str] = None
    namespace: Optional[str] = None
    uid: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    resource_version: int = 0  # assigned by the store on every accepted write
    creation_timestamp: Optional[str] = None
    deletion_timestamp: Optional[str] = None


# ----------------------------- pods -----------------------------

@dataclass
class Container:
    name: str
    image: str
    cpu_millicores: int = 100
    memory_mb: int = 64


@dataclass
class PodSpec:
    containers: List[Container] = field(default_factory=list)
    node_name: Optional[str] = None
    restart_policy: str = "Never"


@dataclass
class PodCondition:
    type: str
    status: str
    reason: Optional[str] = None
    message: Optional[str] = None
    last_transition_time: Optional[str] = None


@dataclass
class ContainerStatus:
    name: str
    image: str = ""
    ready: bool = False
    restart_count: int = 0
    state: str = "waiting"  # waiting | running | terminated
    reason: Optional[str] = None
    message: Optional[str] = None
    exit_code: Optional[int] = None


@dataclass
class PodStatus:
    phase: Optional[PodPhase] = None
    conditions: List[PodCondition] = field(default_factory=list)
    container_statuses: List[ContainerStatus] = field(default_factory=list)
    host_ip: Optional[str] = None
    pod_ip: Optional[str] = None
    start_time: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    def condition(self, cond_type: str) -> Optional[PodCondition]:
        for cond in self.conditions:
            if cond.type == cond_type:
                return cond
        return None


@dataclass
class Pod:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: PodSpec = field(default_factory=PodSpec)
    status: PodStatus = field(default_factory=PodStatus)

    kind = ResourceKind.POD

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    @property
    def name(self) -> Optional[str]:
        return self.metadata.name

    @property
    def key(self) -> str:
        return pod_key(self.metadata.namespace or "", self.metadata.name or "")

    @property
    def resource_version(self) -> int:
        return self.metadata.resource_version

    @property
    def node_name(self) -> Optional[str]:
        return self.spec.node_name

    def requests(self) -> Tuple[int, int]:
        """Total (cpu millicores, memory MiB) requested by all containers."""
        cpu = sum(c.cpu_millicores for c in self.spec.containers)
        mem = sum(c.memory_mb for c in self.spec.containers)
        return cpu, mem

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pod":
        meta = data.get("metadata") or {}
        spec = data.get("spec") or {}
        status = data.get("status") or {}
        phase = status.get("phase")
        return cls(
            metadata=_meta_from_dict(meta),
            spec=PodSpec(
                containers=[
                    Container(
                        name=c["name"],
                        image=c.get("image", ""),
                        cpu_millicores=int(c.get("cpu_millicores", 100)),
                        memory_mb=int(c.get("memory_mb", 64)),
                    )
                    for c in spec.get("containers") or []
                ],
                node_name=spec.get("node_name"),
                restart_policy=spec.get("restart_policy", "Never"),
            ),
            status=PodStatus(
                phase=PodPhase(phase) if phase else None,
                conditions=[PodCondition(**c) for c in status.get("conditions") or []],
                container_statuses=[ContainerStatus(**c) for c in status.get("container_statuses") or []],
                host_ip=status.get("host_ip"),
                pod_ip=status.get("pod_ip"),
                start_time=status.get("start_time"),
                reason=status.get("reason"),
                message=status.get("message"),
            ),
        )


# ----------------------------- nodes -----------------------------

@dataclass
class NodeCapacity:
    cpu_millicores: int = 4000
    memory_mb: int = 8192
    pods: int = 110


@dataclass
class NodeStatus:
    ready: bool = True
    conditions: List[PodCondition] = field(default_factory=list)
    last_heartbeat: Optional[float] = None
    address: Optional[str] = None


@dataclass
class Node:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    capacity: NodeCapacity = field(default_factory=NodeCapacity)
    unschedulable: bool = False
    status: NodeStatus = field(default_factory=NodeStatus)

    kind = ResourceKind.NODE

    @property
    def name(self) -> Optional[str]:
        return self.metadata.name

    @property
    def key(self) -> str:
        return self.metadata.name or ""

    @property
    def resource_version(self) -> int:
        return self.metadata.resource_version

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        capacity = data.get("capacity") or {}
        status = data.get("status") or {}
        return cls(
            metadata=_meta_from_dict(data.get("metadata") or {"name": data.get("name")}),
            capacity=NodeCapacity(
                cpu_millicores=int(capacity.get("cpu_millicores", 4000)),
                memory_mb=int(capacity.get("memory_mb", 8192)),
                pods=int(capacity.get("pods", 110)),
            ),
            unschedulable=bool(data.get("unschedulable", False)),
            status=NodeStatus(
                ready=bool(status.get("ready", True)),
                conditions=[PodCondition(**c) for c in status.get("conditions") or []],
                last_heartbeat=status.get("last_heartbeat"),
                address=status.get("address"),
            ),
        )


Resource = Union[Pod, Node]


def _meta_from_dict(meta: Dict[str, Any]) -> ObjectMeta:
    return ObjectMeta(
        name=meta.get("name"),
        namespace=meta.get("namespace"),
        uid=meta.get("uid"),
        labels=dict(meta.get("labels") or {}),
        resource_version=int(meta.get("resource_version") or 0),
        creation_timestamp=meta.get("creation_timestamp"),
        deletion_timestamp=meta.get("deletion_timestamp"),
    )


# ----------------------------- events & snapshots -----------------------------

@dataclass(frozen=True)
class WatchEvent:
    type: EventType
    resource: Resource
    # store sequence the event was delivered at; 0 for local write-backs
    revision: int = 0

    @property
    def kind(self) -> ResourceKind:
        return self.resource.kind

    @property
    def key(self) -> str:
        return self.resource.key

    @property
    def version(self) -> int:
        return self.resource.resource_version


@dataclass(frozen=True)
class StateSnapshot:
    """Immutable point-in-time view produced by the StateManager.

    Records inside the mappings are shared with the cache, which never
    mutates a record in place. Copy a record before changing it.
    """

    pods: Mapping[str, Pod]
    unscheduled: Tuple[Pod, ...]
    nodes: Mapping[str, Node]
    revision: int = 0
    stale: bool = False
    taken_at: float = field(default_factory=time.time)

    @classmethod
    def build(
        cls,
        pods: Dict[str, Pod],
        nodes: Dict[str, Node],
        revision: int = 0,
        stale: bool = False,
    ) -> "StateSnapshot":
        unscheduled = tuple(
            pods[key] for key in sorted(pods)
            if not pods[key].spec.node_name and pods[key].metadata.deletion_timestamp is None
        )
        return cls(
            pods=MappingProxyType(dict(pods)),
            unscheduled=unscheduled,
            nodes=MappingProxyType(dict(nodes)),
            revision=revision,
            stale=stale,
        )

    def pods_on_node(self, node_name: str) -> List[Pod]:
        return [self.pods[k] for k in sorted(self.pods) if self.pods[k].spec.node_name == node_name]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision": self.revision,
            "stale": self.stale,
            "taken_at": self.taken_at,
            "pods": {k: p.to_dict() for k, p in sorted(self.pods.items())},
            "unscheduled": [p.key for p in self.unscheduled],
            "nodes": {k: n.to_dict() for k, n in sorted(self.nodes.items())},
        }
