from __future__ import annotations

from typing import Dict, Optional

from kcp.model import Pod, StateSnapshot
from kcp.policy.base import NodeUsage, PlacementPolicy


class LeastLoadedPolicy(PlacementPolicy):
	"""Any node with room for the pod; fewest bound pods wins, then node name."""

	name = "least-loaded"

	def select_node(self, pod: Pod, snapshot: StateSnapshot, usage: Dict[str, NodeUsage]) -> Optional[str]:
		best_name: Optional[str] = None
		best_key = None
		for node in self.candidate_nodes(pod, snapshot, usage):
			load = usage.get(node.name, NodeUsage()).pods
			key = (load, node.name)
			if best_key is None or key < best_key:
				best_key = key
				best_name = node.name
		return best_name


class FirstFitPolicy(PlacementPolicy):
	"""Baseline: first node by name with room for the pod."""

	name = "first-fit"

	def select_node(self, pod: Pod, snapshot: StateSnapshot, usage: Dict[str, NodeUsage]) -> Optional[str]:
		for node in self.candidate_nodes(pod, snapshot, usage):
			return node.name
		return None
