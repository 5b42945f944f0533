from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

from kcp.model import Node, Pod, StateSnapshot, TERMINAL_PHASES


@dataclass
class NodeUsage:
	cpu_millicores: int = 0
	memory_mb: int = 0
	pods: int = 0

	def add(self, pod: Pod) -> None:
		cpu, mem = pod.requests()
		self.cpu_millicores += cpu
		self.memory_mb += mem
		self.pods += 1


def node_usage(snapshot: StateSnapshot) -> Dict[str, NodeUsage]:
	"""Resources held by bound, non-terminal pods, per node."""
	usage: Dict[str, NodeUsage] = {name: NodeUsage() for name in snapshot.nodes}
	for pod in snapshot.pods.values():
		if not pod.spec.node_name or pod.status.phase in TERMINAL_PHASES:
			continue
		usage.setdefault(pod.spec.node_name, NodeUsage()).add(pod)
	return usage


def fits(node: Node, usage: NodeUsage, pod: Pod) -> bool:
	cpu, mem = pod.requests()
	cap = node.capacity
	if usage.pods + 1 > cap.pods:
		return False
	if usage.cpu_millicores + cpu > cap.cpu_millicores:
		return False
	if usage.memory_mb + mem > cap.memory_mb:
		return False
	return True


class PlacementPolicy(ABC):
	name = "base"

	def candidate_nodes(self, pod: Pod, snapshot: StateSnapshot, usage: Dict[str, NodeUsage]) -> List[Node]:
		nodes: List[Node] = []
		for name in sorted(snapshot.nodes):
			node = snapshot.nodes[name]
			if not node.status.ready or node.unschedulable:
				continue
			if not fits(node, usage.get(name, NodeUsage()), pod):
				continue
			nodes.append(node)
		return nodes

	@abstractmethod
	def select_node(self, pod: Pod, snapshot: StateSnapshot, usage: Dict[str, NodeUsage]) -> Optional[str]:
		raise NotImplementedError
