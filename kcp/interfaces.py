"""
Collaborator contracts consumed by the core.

Kubelet:
* Receives Pod specs from the Master, reconciles them against what runs locally.
* Publishes Pod status back to the Master whenever it changes.
* Reports its Node record on start and on every heartbeat.

The Master connects to Kubelets, never the reverse, so a fleet of Kubelets
starting at once does not stampede the Master.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from kcp.model import Node, Pod, pod_key


class PodProvider(ABC):
    """Container runtime facade. Calls may be slow and are retried."""

    @abstractmethod
    def fetch(self, pod: Pod) -> None:
        """Pull every image the pod needs."""

    @abstractmethod
    def run(self, pod: Pod) -> None:
        """Start the pod's containers."""

    @abstractmethod
    def kill(self, namespace: str, name: str) -> None:
        """Stop the pod's containers. Also aborts an in-flight fetch/run."""


class ProviderError(Exception):
    """Runtime failure with a Kubernetes-style reason (e.g. ErrImagePull)."""

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(f"{reason}: {message}" if message else reason)
        self.reason = reason
        self.message = message


class MasterConnection(ABC):
    """Outbound channel from a Kubelet to the Master."""

    @abstractmethod
    def update_node(self, node: Node) -> None:
        ...

    @abstractmethod
    def update_pod(self, pod: Pod) -> None:
        ...


class KubeletTransport(ABC):
    """Inbound assignment push from the Master to a Kubelet."""

    @abstractmethod
    def register_pod(self, pod: Pod) -> bool:
        """Returns False when the pod is rejected."""

    @abstractmethod
    def deregister_pod(self, namespace: str, name: str) -> None:
        ...


class ContainerEventKind(str, Enum):
    READY = "ready"
    UNREADY = "unready"
    EXITED = "exited"
    ERROR = "error"


@dataclass
class ContainerEvent:
    """Lifecycle notification from the container runtime."""
    namespace: str
    name: str
    container: str
    kind: ContainerEventKind
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    message: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> str:
        return pod_key(self.namespace, self.name)
