"""Placement policies for the scheduler."""

from kcp.policy.base import NodeUsage, PlacementPolicy, fits, node_usage
from kcp.policy.least_loaded import FirstFitPolicy, LeastLoadedPolicy

__all__ = ["NodeUsage", "PlacementPolicy", "fits", "node_usage", "FirstFitPolicy", "LeastLoadedPolicy", "select_policy"]


def select_policy(name: str) -> PlacementPolicy:
	name = (name or "least-loaded").lower()
	if name == "first-fit":
		return FirstFitPolicy()
	return LeastLoadedPolicy()
