"""Optimistic, snapshot-based Pod placement."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kcp.config import SchedulerConfig
from kcp.errors import Conflict, ControlPlaneError, NotFound, TransportLost
from kcp.model import Pod, StateSnapshot
from kcp.policy import PlacementPolicy, node_usage, select_policy
from kcp.policy.base import NodeUsage
from kcp.state import StateManager

logger = logging.getLogger(__name__)


@dataclass
class ScheduleResult:
    bound: Dict[str, str] = field(default_factory=dict)  # pod key -> node name
    conflicts: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)  # conflicted before the cache caught up
    unschedulable: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "bound": dict(self.bound),
            "conflicts": list(self.conflicts),
            "dropped": list(self.dropped),
            "deferred": list(self.deferred),
            "unschedulable": list(self.unschedulable),
            "errors": list(self.errors),
        }


class Scheduler:
    """Assigns each unscheduled pod in a snapshot to exactly one node.

    No locking: a binding is committed with a conditional spec write against
    the version seen in the snapshot. Losing that race means re-reading the
    pod and either retrying with the fresh version or dropping it when it is
    gone or already bound.
    """

    def __init__(
        self,
        state: StateManager,
        policy: Optional[PlacementPolicy] = None,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self.state = state
        self.config = config or SchedulerConfig()
        self.policy = policy or select_policy(self.config.policy)

    def run_once(self) -> ScheduleResult:
        return self.schedule(self.state.snapshot())

    def schedule(self, snapshot: StateSnapshot) -> ScheduleResult:
        result = ScheduleResult()
        if snapshot.stale:
            logger.warning("Skipping scheduling pass on a stale snapshot")
            return result
        if not snapshot.unscheduled:
            return result

        usage = node_usage(snapshot)
        for pod in sorted(snapshot.unscheduled, key=lambda p: p.key):
            try:
                self._schedule_pod(pod, snapshot, usage, result)
            except TransportLost as e:
                logger.warning(f"Scheduling pass aborted, state is stale: {e}")
                result.errors.append(pod.key)
                break
            except ControlPlaneError as e:
                logger.error(f"Failed to schedule pod {pod.key}: {e}")
                result.errors.append(pod.key)

        if result.bound or result.unschedulable or result.conflicts:
            logger.info(
                f"Scheduling pass at revision {snapshot.revision}: bound={len(result.bound)} "
                f"conflicts={len(result.conflicts)} dropped={len(result.dropped)} "
                f"unschedulable={len(result.unschedulable)}"
            )
        return result

    def _schedule_pod(
        self,
        pod: Pod,
        snapshot: StateSnapshot,
        usage: Dict[str, NodeUsage],
        result: ScheduleResult,
    ) -> None:
        candidate = pod
        for attempt in range(self.config.max_conflict_retries + 1):
            node_name = self.policy.select_node(candidate, snapshot, usage)
            if node_name is None:
                logger.info(f"No feasible node for pod {candidate.key}")
                result.unschedulable.append(candidate.key)
                return

            binding = copy.deepcopy(candidate)
            binding.spec.node_name = node_name
            try:
                written = self.state.update_spec(binding, candidate.resource_version)
            except Conflict:
                result.conflicts.append(candidate.key)
                fresh = self._refetch(candidate)
                if fresh is None:
                    result.dropped.append(candidate.key)
                    return
                if fresh.resource_version <= candidate.resource_version:
                    # the winning write has not reached the cache yet; the next pass sees it
                    logger.debug(f"Deferring pod {candidate.key}, cache still at v{fresh.resource_version}")
                    result.deferred.append(candidate.key)
                    return
                logger.debug(f"Retrying pod {candidate.key} at v{fresh.resource_version} (attempt {attempt + 1})")
                candidate = fresh
                continue
            except NotFound:
                logger.info(f"Pod {candidate.key} vanished before binding")
                result.dropped.append(candidate.key)
                return

            usage.setdefault(node_name, NodeUsage()).add(written)
            result.bound[candidate.key] = node_name
            logger.info(f"Bound pod {candidate.key} to node {node_name} (v{written.resource_version})")
            return

        logger.warning(f"Giving up on pod {pod.key} after {self.config.max_conflict_retries} conflict retries")
        result.errors.append(pod.key)

    def _refetch(self, pod: Pod) -> Optional[Pod]:
        """Fresh copy of the pod, or None when it no longer needs scheduling."""
        try:
            fresh = self.state.get_pod(pod.metadata.namespace, pod.metadata.name)
        except NotFound:
            logger.info(f"Pod {pod.key} was deleted while scheduling")
            return None
        if fresh.spec.node_name:
            logger.info(f"Pod {pod.key} already bound to {fresh.spec.node_name}")
            return None
        if fresh.metadata.deletion_timestamp:
            return None
        return fresh
