"""Node agent: reconciles the pods assigned to this node against what runs."""

from __future__ import annotations

import copy
import itertools
import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from kcp import pod_util
from kcp.config import KubeletConfig
from kcp.errors import InvalidTransition, ResourceExhausted
from kcp.interfaces import (
    ContainerEvent,
    ContainerEventKind,
    KubeletTransport,
    MasterConnection,
    PodProvider,
    ProviderError,
)
from kcp.model import (
    ConditionStatus,
    ConditionType,
    Node,
    NodeCapacity,
    NodeStatus,
    ObjectMeta,
    Pod,
    PodCondition,
    split_key,
    utc_iso,
)
from kcp.pusher import StatusPusher

logger = logging.getLogger(__name__)


@dataclass
class _LivePod:
    """What this node is actually doing for one pod generation."""
    pod: Pod
    generation: int
    cancel: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None
    started: bool = False
    removed_at: Optional[float] = None
    killing: bool = False


class Kubelet(KubeletTransport):
    """
    Per-node agent.

    * Keeps the pods registered by the Master (spec) and the pods it runs (live).
    * A reconcile loop diffs the two on every assignment change, runtime
      event, or resync tick.
    * Pod start sequences and kills run on worker pools, so one slow image
      pull or kill does not hold up other pods. Deregistering a pod cancels
      its start sequence at once, before the loop gets to the kill.
    * Status changes go out through a StatusPusher and never block the loop.
    """

    def __init__(
        self,
        node_name: str,
        conn: MasterConnection,
        provider: PodProvider,
        config: Optional[KubeletConfig] = None,
        capacity: Optional[NodeCapacity] = None,
    ) -> None:
        self.node_name = node_name
        self.conn = conn
        self.provider = provider
        self.config = config or KubeletConfig()
        self.capacity = capacity or NodeCapacity()

        self._lock = threading.RLock()
        self._spec: Dict[str, Pod] = {}
        self._live: Dict[str, _LivePod] = {}
        self._force_remove: Set[str] = set()
        self._events: "queue.Queue[ContainerEvent]" = queue.Queue()
        self._generation = itertools.count(1)
        self._inflight: Set[Future] = set()

        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_parallel_starts),
            thread_name_prefix=f"kubelet-{node_name}",
        )
        # separate pool: a kill is what unblocks a stuck fetch
        self._kill_executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.max_parallel_starts),
            thread_name_prefix=f"kubelet-{node_name}-kill",
        )
        self.pusher = StatusPusher(
            conn,
            retry_backoff_s=self.config.push_retry_backoff_s,
            max_backoff_s=self.config.push_max_backoff_s,
            name=f"kubelet-{node_name}-push",
        )

        self._wakeup = threading.Event()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_heartbeat = 0.0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self.pusher.start()
        self.report_node()
        self._thread = threading.Thread(target=self._loop, name=f"kubelet-{self.node_name}", daemon=True)
        self._thread.start()
        logger.info(f"Kubelet {self.node_name} started")

    def stop(self) -> None:
        self._stop_event.set()
        self._wakeup.set()
        if self._thread:
            self._thread.join(timeout=2.0)
        with self._lock:
            for live in self._live.values():
                live.cancel.set()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._kill_executor.shutdown(wait=False)
        self.pusher.stop()
        logger.info(f"Kubelet {self.node_name} stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self._wakeup.wait(timeout=self._next_wait())
            self._wakeup.clear()
            if self._stop_event.is_set():
                break
            try:
                self.reconcile_once()
            except ResourceExhausted as e:
                logger.error(f"Kubelet {self.node_name} worker stopping: {e}")
                return
            except Exception as e:
                logger.exception(f"Kubelet {self.node_name} reconcile failed: {e}")
            if time.monotonic() - self._last_heartbeat >= self.config.heartbeat_interval_s:
                self.report_node()

    def _next_wait(self) -> float:
        timeout = self.config.resync_interval_s
        grace = self.config.eviction_grace_period_s
        now = time.monotonic()
        with self._lock:
            for live in self._live.values():
                if live.removed_at is not None:
                    timeout = min(timeout, max(0.01, live.removed_at + grace - now))
        return max(0.01, timeout)

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Wait for in-flight start sequences and kills. Returns False on timeout."""
        with self._lock:
            futures = list(self._inflight)
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Inbound from the Master
    # ------------------------------------------------------------------

    def register_pod(self, pod: Pod) -> bool:
        pod_id = pod_util.get_id(pod)
        if pod_id is None:
            logger.warning(f"Kubelet {self.node_name}: rejecting pod without namespace/name: {pod.metadata}")
            return False
        if pod.spec.node_name and pod.spec.node_name != self.node_name:
            logger.warning(f"Kubelet {self.node_name}: pod {pod_id} is assigned to {pod.spec.node_name}, ignoring")
            return False
        with self._lock:
            if pod.metadata.deletion_timestamp:
                self._spec.pop(pod_id, None)
                self._force_remove.add(pod_id)
                self._cancel_locked(pod_id)
                logger.info(f"Kubelet {self.node_name}: pod {pod_id} deleted")
            else:
                self._spec[pod_id] = copy.deepcopy(pod)
                self._force_remove.discard(pod_id)
        self._wakeup.set()
        return True

    def deregister_pod(self, namespace: str, name: str) -> None:
        pod_id = f"{namespace}/{name}"
        with self._lock:
            removed = self._spec.pop(pod_id, None)
            self._cancel_locked(pod_id)
        if removed is not None:
            logger.info(f"Kubelet {self.node_name}: pod {pod_id} deregistered")
        self._wakeup.set()

    def _cancel_locked(self, pod_id: str) -> None:
        entry = self._live.get(pod_id)
        if entry is not None and not self._evicts_gracefully(pod_id, entry):
            entry.cancel.set()

    def _evicts_gracefully(self, pod_id: str, entry: _LivePod) -> bool:
        return (
            self.config.eviction_grace_period_s > 0
            and entry.started
            and pod_id not in self._force_remove
            and not pod_util.is_terminal(entry.pod)
        )

    def registered(self) -> List[str]:
        with self._lock:
            return sorted(self._spec)

    def live_pods(self) -> Dict[str, Pod]:
        with self._lock:
            return {k: copy.deepcopy(v.pod) for k, v in self._live.items()}

    # ------------------------------------------------------------------
    # Inbound from the runtime
    # ------------------------------------------------------------------

    def handle_runtime_event(self, event: ContainerEvent) -> None:
        self._events.put(event)
        self._wakeup.set()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_once(self) -> None:
        self._drain_runtime_events()

        with self._lock:
            desired = dict(self._spec)
            live = dict(self._live)

        for pod_id in sorted(desired.keys() - live.keys()):
            self._create(pod_id, desired[pod_id])

        # a cancelled entry is killed even if the pod came back; it restarts afterwards
        for pod_id in sorted(live):
            if pod_id not in desired or live[pod_id].cancel.is_set():
                self._remove(pod_id, live[pod_id])

        with self._lock:
            for pod_id in desired.keys() & live.keys():
                entry = self._live.get(pod_id)
                if entry is not None and not entry.cancel.is_set() and entry.removed_at is not None:
                    logger.info(f"Kubelet {self.node_name}: pod {pod_id} re-registered during grace period")
                    entry.removed_at = None

    def _create(self, pod_id: str, pod: Pod) -> None:
        live_pod = copy.deepcopy(pod)
        entry = _LivePod(pod=live_pod, generation=next(self._generation))

        if pod_util.is_terminal(live_pod):
            # finished in an earlier life of this pod; nothing to start
            with self._lock:
                self._live[pod_id] = entry
            return

        pod_util.set_initial_pod_status(live_pod)
        if self.config.host_ip:
            live_pod.status.host_ip = self.config.host_ip
        with self._lock:
            self._live[pod_id] = entry
            self.pusher.push_pod(live_pod)
        logger.info(f"Kubelet {self.node_name}: starting pod {pod_id} (generation {entry.generation})")
        future = self._executor.submit(self._start_pod, pod_id, entry)
        with self._lock:
            entry.future = future
            self._inflight.add(future)
        future.add_done_callback(self._task_done)

    def _task_done(self, future: Future) -> None:
        with self._lock:
            self._inflight.discard(future)

    def _start_pod(self, pod_id: str, entry: _LivePod) -> None:
        with self._lock:
            pod = copy.deepcopy(entry.pod)
        try:
            if entry.cancel.is_set():
                return
            self.provider.fetch(pod)
            if entry.cancel.is_set():
                logger.info(f"Kubelet {self.node_name}: start of {pod_id} abandoned after fetch")
                return
            self.provider.run(pod)
        except ProviderError as e:
            self._fail(pod_id, entry, e.reason, e.message)
            return
        except Exception as e:
            logger.exception(f"Kubelet {self.node_name}: provider failed for {pod_id}: {e}")
            self._fail(pod_id, entry, "RuntimeError", str(e))
            return

        with self._lock:
            moot = entry.cancel.is_set()
            if not moot:
                try:
                    pod_util.mark_running(entry.pod, host_ip=self.config.host_ip)
                except InvalidTransition as e:
                    logger.warning(f"Kubelet {self.node_name}: {e}")
                    return
                pod_util.refresh_readiness(entry.pod)
                entry.started = True
                self.pusher.push_pod(entry.pod)
        if not moot:
            logger.info(f"Kubelet {self.node_name}: pod {pod_id} running")
            return

        # cancelled while run was in flight; the kill may have landed first
        namespace, name = split_key(pod_id)
        logger.info(f"Kubelet {self.node_name}: pod {pod_id} cancelled during run, killing again")
        try:
            self.provider.kill(namespace, name)
        except Exception as e:
            logger.error(f"Kubelet {self.node_name}: kill of {pod_id} after cancelled run failed: {e}")

    def _fail(self, pod_id: str, entry: _LivePod, reason: str, message: str) -> None:
        with self._lock:
            if entry.cancel.is_set():
                return
            try:
                pod_util.mark_failed(entry.pod, reason, message)
            except InvalidTransition as e:
                logger.warning(f"Kubelet {self.node_name}: {e}")
                return
            self.pusher.push_pod(entry.pod)
        logger.warning(f"Kubelet {self.node_name}: pod {pod_id} failed: {reason} {message}")

    def _remove(self, pod_id: str, entry: _LivePod) -> None:
        grace = self.config.eviction_grace_period_s
        with self._lock:
            if entry.killing:
                return
            if not entry.cancel.is_set() and self._evicts_gracefully(pod_id, entry):
                now = time.monotonic()
                if entry.removed_at is None:
                    entry.removed_at = now
                    logger.info(f"Kubelet {self.node_name}: pod {pod_id} removed, evicting in {grace:.1f}s")
                    return
                if now - entry.removed_at < grace:
                    return
            # in-flight start sequences become moot from here on
            entry.cancel.set()
            entry.killing = True
            future = self._kill_executor.submit(self._kill, pod_id, entry)
            self._inflight.add(future)
        future.add_done_callback(self._task_done)

    def _kill(self, pod_id: str, entry: _LivePod) -> None:
        namespace, name = split_key(pod_id)
        try:
            self.provider.kill(namespace, name)
        except Exception as e:
            logger.error(f"Kubelet {self.node_name}: kill of {pod_id} failed, will retry: {e}")
            with self._lock:
                entry.killing = False
            return

        with self._lock:
            if self._live.get(pod_id) is entry:
                del self._live[pod_id]
            self._force_remove.discard(pod_id)
        logger.info(f"Kubelet {self.node_name}: pod {pod_id} killed")
        # a pod registered again while dying starts over
        self._wakeup.set()

    def _drain_runtime_events(self) -> None:
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                return
            self._apply_runtime_event(event)

    def _apply_runtime_event(self, event: ContainerEvent) -> None:
        with self._lock:
            entry = self._live.get(event.key)
            if entry is None or entry.cancel.is_set():
                logger.debug(f"Kubelet {self.node_name}: ignoring event for unknown pod {event.key}")
                return
            pod = entry.pod
            if pod_util.is_terminal(pod):
                return
            try:
                if event.kind == ContainerEventKind.READY:
                    pod_util.mark_container_ready(pod, event.container, True)
                elif event.kind == ContainerEventKind.UNREADY:
                    pod_util.mark_container_ready(pod, event.container, False)
                elif event.kind == ContainerEventKind.EXITED:
                    pod_util.mark_container_terminated(
                        pod, event.container, event.exit_code or 0, event.reason, event.message
                    )
                    pod_util.settle_terminal_phase(pod)
                elif event.kind == ContainerEventKind.ERROR:
                    pod_util.mark_failed(pod, event.reason or "RuntimeError", event.message)
            except InvalidTransition as e:
                logger.warning(f"Kubelet {self.node_name}: {e}")
                return
            self.pusher.push_pod(pod)
        logger.debug(f"Kubelet {self.node_name}: {event.kind.value} {event.key}/{event.container}")

    # ------------------------------------------------------------------
    # Node reporting
    # ------------------------------------------------------------------

    def node_status(self) -> Node:
        now = time.time()
        return Node(
            metadata=ObjectMeta(name=self.node_name),
            capacity=copy.deepcopy(self.capacity),
            status=NodeStatus(
                ready=not self._stop_event.is_set(),
                conditions=[
                    PodCondition(
                        type=ConditionType.READY,
                        status=ConditionStatus.TRUE,
                        reason="KubeletReady",
                        message="kubelet is posting ready status",
                        last_transition_time=utc_iso(now),
                    )
                ],
                last_heartbeat=now,
                address=self.config.host_ip,
            ),
        )

    def report_node(self) -> None:
        self._last_heartbeat = time.monotonic()
        self.pusher.push_node(self.node_status())
