"""
Master: the composition point between the StateManager, the Scheduler and
the Kubelets.

* Pushes every observed pod change to the Kubelet that owns it (at least once).
* Feeds every Kubelet status report back into the StateManager (at least once).
* Runs the Scheduler whenever unscheduled pods show up, plus on an interval.

Duplicates on either path are harmless: Kubelet registration is keyed by
pod identity and the StateManager fold is idempotent.
"""

from __future__ import annotations

import copy
import itertools
import logging
import queue
import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from kcp import pod_util
from kcp.config import MasterConfig
from kcp.errors import AlreadyExists, Conflict, ControlPlaneError, NotFound, ResourceExhausted, TransportLost
from kcp.interfaces import KubeletTransport, MasterConnection
from kcp.model import EventType, Node, Pod, PodPhase, PodSpec, ResourceKind, WatchEvent, split_key
from kcp.scheduler import ScheduleResult, Scheduler
from kcp.state import StateManager, Subscription

logger = logging.getLogger(__name__)


@dataclass
class _StatusReport:
    resource: object  # Pod | Node
    seq: int = 0
    attempts: int = 0

    @property
    def identity(self) -> Tuple[str, str]:
        return type(self.resource).__name__, self.resource.key  # type: ignore[attr-defined]


def _phase_name(phase: Optional[PodPhase]) -> str:
    return getattr(phase, "value", str(phase))


@dataclass
class _Assignment:
    node_name: str
    spec: PodSpec


class Master(MasterConnection):
    def __init__(
        self,
        state: StateManager,
        scheduler: Optional[Scheduler] = None,
        config: Optional[MasterConfig] = None,
    ) -> None:
        self.state = state
        self.scheduler = scheduler
        self.config = config or MasterConfig()

        self._lock = threading.RLock()
        self._kubelets: Dict[str, KubeletTransport] = {}
        self._assigned: Dict[str, _Assignment] = {}  # pod key -> what the owning kubelet was told
        self._dirty_nodes: Set[str] = set()

        self._status_queue: "queue.Queue[_StatusReport]" = queue.Queue()
        self._report_seq = itertools.count(1)
        self._latest_report: Dict[Tuple[str, str], int] = {}  # identity -> newest queued seq
        self._outstanding_reports: "Counter[Tuple[str, str]]" = Counter()
        self._schedule_wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._pod_sub: Optional[Subscription] = None
        self._node_sub: Optional[Subscription] = None
        self.last_schedule: Optional[ScheduleResult] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop_event.clear()
        self._pod_sub = self.state.watch(ResourceKind.POD)
        self._node_sub = self.state.watch(ResourceKind.NODE)
        if not self.state.running:
            self.state.start()

        self._threads = [
            threading.Thread(target=self._dispatch_loop, name="MasterDispatch", daemon=True),
            threading.Thread(target=self._schedule_loop, name="MasterScheduler", daemon=True),
            threading.Thread(target=self._status_loop, name="MasterStatus", daemon=True),
        ]
        for t in self._threads:
            t.start()
        self.kick_scheduler()
        logger.info("Master started")

    def stop(self) -> None:
        self._stop_event.set()
        self._schedule_wakeup.set()
        for sub in (self._pod_sub, self._node_sub):
            if sub is not None:
                sub.stop()
        for t in self._threads:
            t.join(timeout=2.0)
        logger.info("Master stopped")

    def kick_scheduler(self) -> None:
        self._schedule_wakeup.set()

    # ------------------------------------------------------------------
    # Kubelet connections (Master initiated)
    # ------------------------------------------------------------------

    def connect_kubelet(self, node_name: str, transport: KubeletTransport) -> None:
        with self._lock:
            self._kubelets[node_name] = transport
        logger.info(f"Connected kubelet {node_name}")
        self.sync_node(node_name)

    def disconnect_kubelet(self, node_name: str) -> None:
        with self._lock:
            self._kubelets.pop(node_name, None)
            self._dirty_nodes.discard(node_name)
            for key in [k for k, a in self._assigned.items() if a.node_name == node_name]:
                del self._assigned[key]
        logger.info(f"Disconnected kubelet {node_name}")

    def connected_nodes(self) -> List[str]:
        with self._lock:
            return sorted(self._kubelets)

    def sync_node(self, node_name: str) -> bool:
        """Push the node's full assignment set: register what is bound, deregister the rest."""
        with self._lock:
            transport = self._kubelets.get(node_name)
            previously = {k for k, a in self._assigned.items() if a.node_name == node_name}
        if transport is None:
            return False

        bound = [p for p in self.state.list_pods() if p.spec.node_name == node_name]
        ok = True
        for pod in bound:
            ok = self._register(node_name, transport, pod) and ok
        for key in sorted(previously - {p.key for p in bound}):
            ok = self._deregister(node_name, key) and ok

        with self._lock:
            if ok:
                self._dirty_nodes.discard(node_name)
            else:
                self._dirty_nodes.add(node_name)
        logger.debug(f"Synced {len(bound)} pod(s) to kubelet {node_name}")
        return ok

    def _register(self, node_name: str, transport: KubeletTransport, pod: Pod) -> bool:
        try:
            accepted = transport.register_pod(copy.deepcopy(pod))
        except Exception as e:
            logger.error(f"Failed to register pod {pod.key} with kubelet {node_name}: {e}")
            self._mark_dirty(node_name)
            return False
        with self._lock:
            if pod.metadata.deletion_timestamp:
                self._assigned.pop(pod.key, None)
            else:
                self._assigned[pod.key] = _Assignment(node_name=node_name, spec=copy.deepcopy(pod.spec))
        if not accepted:
            logger.warning(f"Kubelet {node_name} rejected pod {pod.key}")
        return True

    def _deregister(self, node_name: str, key: str) -> bool:
        with self._lock:
            transport = self._kubelets.get(node_name)
        if transport is None:
            return True
        namespace, name = split_key(key)
        try:
            transport.deregister_pod(namespace, name)
        except Exception as e:
            logger.error(f"Failed to deregister pod {key} from kubelet {node_name}: {e}")
            self._mark_dirty(node_name)
            return False
        with self._lock:
            current = self._assigned.get(key)
            if current is not None and current.node_name == node_name:
                del self._assigned[key]
        return True

    def _mark_dirty(self, node_name: str) -> None:
        with self._lock:
            self._dirty_nodes.add(node_name)

    # ------------------------------------------------------------------
    # StateManager -> Kubelets
    # ------------------------------------------------------------------

    def handle_pod_event(self, event: WatchEvent) -> None:
        pod: Pod = event.resource  # type: ignore[assignment]
        key = pod.key
        with self._lock:
            previous = self._assigned.get(key)

        if event.type == EventType.DELETED:
            node_name = previous.node_name if previous else pod.spec.node_name
            if node_name:
                logger.info(f"Pod {key} deleted, deregistering from {node_name}")
                self._deregister(node_name, key)
            return

        node_name = pod.spec.node_name
        if not node_name:
            if previous is not None:
                self._deregister(previous.node_name, key)
            if not pod.metadata.deletion_timestamp:
                self.kick_scheduler()
            return

        if previous is not None and previous.node_name != node_name:
            logger.info(f"Pod {key} moved from {previous.node_name} to {node_name}")
            self._deregister(previous.node_name, key)
            previous = None

        deleting = bool(pod.metadata.deletion_timestamp)
        if previous is not None and previous.spec == pod.spec and not deleting:
            return  # status-only change

        with self._lock:
            transport = self._kubelets.get(node_name)
        if transport is None:
            logger.debug(f"No kubelet connected for node {node_name}, pod {key} waits for connect")
            return
        self._register(node_name, transport, pod)

    def handle_node_event(self, event: WatchEvent) -> None:
        # capacity, readiness or cordon changes can make pending pods placeable
        if event.type != EventType.DELETED:
            self.kick_scheduler()

    def _dispatch_loop(self) -> None:
        last_full_sync = time.monotonic()
        while not self._stop_event.is_set():
            try:
                event = self._pod_sub.next(timeout=0.2) if self._pod_sub else None
                if event is not None:
                    self.handle_pod_event(event)
                node_event = self._node_sub.next(timeout=0) if self._node_sub else None
                if node_event is not None:
                    self.handle_node_event(node_event)

                with self._lock:
                    dirty = sorted(self._dirty_nodes)
                for node_name in dirty:
                    self.sync_node(node_name)

                if time.monotonic() - last_full_sync >= self.config.kubelet_resync_interval_s:
                    last_full_sync = time.monotonic()
                    for node_name in self.connected_nodes():
                        self.sync_node(node_name)
            except ResourceExhausted as e:
                logger.error(f"Master dispatch worker stopping: {e}")
                return
            except Exception as e:
                logger.exception(f"Master dispatch iteration failed: {e}")
                self._stop_event.wait(0.5)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule_loop(self) -> None:
        while not self._stop_event.is_set():
            self._schedule_wakeup.wait(timeout=self.config.schedule_interval_s)
            self._schedule_wakeup.clear()
            if self._stop_event.is_set() or self.scheduler is None:
                continue
            try:
                snapshot = self.state.snapshot()
                if snapshot.unscheduled:
                    self.last_schedule = self.scheduler.schedule(snapshot)
            except ResourceExhausted as e:
                logger.error(f"Scheduling worker stopping: {e}")
                return
            except Exception as e:
                logger.exception(f"Scheduling pass failed: {e}")

    # ------------------------------------------------------------------
    # Kubelets -> StateManager
    # ------------------------------------------------------------------

    def update_pod(self, pod: Pod) -> None:
        self._enqueue_report(copy.deepcopy(pod))

    def update_node(self, node: Node) -> None:
        self._enqueue_report(copy.deepcopy(node))

    def _enqueue_report(self, resource: object) -> None:
        report = _StatusReport(resource=resource, seq=next(self._report_seq))
        with self._lock:
            self._latest_report[report.identity] = report.seq
            self._outstanding_reports[report.identity] += 1
        self._status_queue.put(report)

    @property
    def pending_status(self) -> int:
        return self._status_queue.qsize()

    def drain_status(self) -> int:
        """Apply the status reports queued so far in the caller's thread.

        A report deferred on a stale cache goes back on the queue without
        waiting; it is picked up by the next drain or by the status loop.
        """
        count = 0
        for _ in range(self._status_queue.qsize()):
            try:
                report = self._status_queue.get_nowait()
            except queue.Empty:
                break
            self._apply_report(report, backoff=False)
            count += 1
        return count

    def _status_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                report = self._status_queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._apply_report(report)

    def _apply_report(self, report: _StatusReport, backoff: bool = True) -> None:
        with self._lock:
            if self._latest_report.get(report.identity, report.seq) > report.seq:
                logger.debug(f"Skipping status for {report.resource.key}, a newer report is queued")  # type: ignore[attr-defined]
                self._forget_report_locked(report)
                return
        try:
            if isinstance(report.resource, Pod):
                self.apply_pod_status(report.resource)
            else:
                self.apply_node_status(report.resource)  # type: ignore[arg-type]
        except TransportLost as e:
            # state is stale; hold the report until the watch resyncs
            report.attempts += 1
            delay = min(5.0, 0.1 * (2 ** min(report.attempts, 6)))
            logger.warning(f"Status for {report.resource.key} deferred {delay:.1f}s: {e}")  # type: ignore[attr-defined]
            if backoff:
                self._stop_event.wait(delay)
            self._status_queue.put(report)
            return
        except ControlPlaneError as e:
            logger.error(f"Dropping status report for {report.resource.key}: {e}")  # type: ignore[attr-defined]
        except Exception as e:
            logger.exception(f"Status report for {report.resource.key} failed: {e}")  # type: ignore[attr-defined]
        with self._lock:
            self._forget_report_locked(report)

    def _forget_report_locked(self, report: _StatusReport) -> None:
        self._outstanding_reports[report.identity] -= 1
        if self._outstanding_reports[report.identity] <= 0:
            del self._outstanding_reports[report.identity]
            self._latest_report.pop(report.identity, None)

    def apply_pod_status(self, reported: Pod) -> bool:
        """Write a Kubelet's pod status into the StateManager.

        Re-reads the pod on every Conflict. Returns False when the report is
        dropped: the pod is gone, it is no longer assigned to the reporting
        node, or its phase would move backwards.
        """
        namespace, name = reported.metadata.namespace, reported.metadata.name
        if not namespace or not name:
            logger.warning(f"Dropping status report without pod identity: {reported.metadata}")
            return False

        for _ in range(self.config.status_max_retries + 1):
            try:
                current = self.state.get_pod(namespace, name)
            except NotFound:
                logger.info(f"Dropping status for deleted pod {reported.key}")
                return False
            if current.spec.node_name != reported.spec.node_name:
                logger.info(
                    f"Dropping status for {reported.key} from {reported.spec.node_name}, "
                    f"pod is assigned to {current.spec.node_name}"
                )
                return False
            previous = current.status.phase
            if previous is not None and not pod_util.can_transition(previous, reported.status.phase):
                logger.warning(
                    f"Dropping status for {reported.key}: phase {_phase_name(reported.status.phase)} "
                    f"cannot follow {_phase_name(previous)}"
                )
                return False
            if current.status == reported.status:
                return True

            updated = copy.deepcopy(current)
            updated.status = copy.deepcopy(reported.status)
            try:
                written = self.state.update_live(updated, current.resource_version)
            except Conflict:
                logger.debug(f"Status write for {reported.key} conflicted, re-reading")
                continue
            except NotFound:
                logger.info(f"Dropping status for deleted pod {reported.key}")
                return False
            logger.debug(f"Pod {reported.key} status {written.status.phase} (v{written.resource_version})")
            return True

        logger.warning(f"Giving up on status for {reported.key} after {self.config.status_max_retries} conflicts")
        return False

    def apply_node_status(self, reported: Node) -> bool:
        """Create or refresh a Node record from a Kubelet report."""
        name = reported.metadata.name
        if not name:
            logger.warning("Dropping node report without a name")
            return False

        for _ in range(self.config.status_max_retries + 1):
            try:
                current = self.state.get_node(name)
            except NotFound:
                fresh = copy.deepcopy(reported)
                fresh.metadata.resource_version = 0
                try:
                    self.state.create(fresh)
                except AlreadyExists:
                    continue
                logger.info(f"Registered node {name}")
                self.kick_scheduler()
                return True

            try:
                if current.capacity != reported.capacity:
                    resized = copy.deepcopy(current)
                    resized.capacity = copy.deepcopy(reported.capacity)
                    current = self.state.update_spec(resized, current.resource_version)
                if current.status != reported.status:
                    updated = copy.deepcopy(current)
                    updated.status = copy.deepcopy(reported.status)
                    self.state.update_live(updated, current.resource_version)
            except (Conflict, NotFound):
                continue
            return True

        logger.warning(f"Giving up on node report for {name}")
        return False

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def assignments(self) -> Dict[str, str]:
        with self._lock:
            return {k: a.node_name for k, a in sorted(self._assigned.items())}

    def stats(self) -> Dict[str, object]:
        with self._lock:
            nodes = sorted(self._kubelets)
            dirty = sorted(self._dirty_nodes)
        return {
            "kubelets": nodes,
            "dirty_nodes": dirty,
            "assigned": len(self.assignments()),
            "pending_status": self.pending_status,
            "last_schedule": self.last_schedule.to_dict() if self.last_schedule else None,
        }

