import threading
import time

import pytest

from conftest import make_pod, wait_until
from kcp.config import KubeletConfig
from kcp.interfaces import ContainerEvent, ContainerEventKind, MasterConnection, PodProvider
from kcp.kubelet import Kubelet
from kcp.model import ConditionStatus, ConditionType, PodPhase
from kcp.provider import SimulatedPodProvider


class RecordingConnection(MasterConnection):
    def __init__(self):
        self._lock = threading.Lock()
        self.pods = []
        self.nodes = []

    def update_pod(self, pod):
        with self._lock:
            self.pods.append(pod)

    def update_node(self, node):
        with self._lock:
            self.nodes.append(node)

    def pushes_for(self, key):
        with self._lock:
            return [p for p in self.pods if p.key == key]


class ScriptedProvider(PodProvider):
    """Records calls; fetch blocks until released or killed when ``block`` is set."""

    def __init__(self, block=False):
        self.calls = []
        self.block = block
        self.fetching = threading.Event()
        self.release = threading.Event()
        self.killed = threading.Event()

    def fetch(self, pod):
        self.calls.append(("fetch", pod.key))
        self.fetching.set()
        if self.block:
            while not (self.release.is_set() or self.killed.is_set()):
                time.sleep(0.01)

    def run(self, pod):
        self.calls.append(("run", pod.key))

    def kill(self, namespace, name):
        self.calls.append(("kill", f"{namespace}/{name}"))
        self.killed.set()

    def names(self):
        return [name for name, _ in self.calls]


@pytest.fixture
def conn():
    return RecordingConnection()


def _kubelet(conn, provider, **config):
    return Kubelet("node-a", conn, provider, KubeletConfig(push_retry_backoff_s=0.01, **config))


def _ready(pod):
    cond = pod.status.condition(ConditionType.READY)
    return cond is not None and cond.status == ConditionStatus.TRUE


def test_pod_goes_pending_then_running_and_ready(conn):
    provider = SimulatedPodProvider(fetch_delay_s=0.01, ready_delay_s=0.01)
    kubelet = Kubelet("node-a", conn, provider, KubeletConfig(host_ip="10.0.0.5"))
    provider.attach(kubelet.handle_runtime_event)
    kubelet.start()
    try:
        assert kubelet.register_pod(make_pod("web", node_name="node-a"))
        assert wait_until(
            lambda: any(p.status.phase == PodPhase.RUNNING and _ready(p) for p in conn.pushes_for("default/web"))
        )
    finally:
        kubelet.stop()

    first = conn.pushes_for("default/web")[0]
    assert first.status.phase == PodPhase.PENDING
    ready = first.status.condition(ConditionType.READY)
    assert ready.status == ConditionStatus.FALSE
    assert ready.reason == "ContainersNotReady"
    last = conn.pushes_for("default/web")[-1]
    assert last.status.host_ip == "10.0.0.5"
    assert last.status.condition(ConditionType.CONTAINERS_READY).status == ConditionStatus.TRUE


def test_pod_without_namespace_is_rejected_silently(conn):
    provider = ScriptedProvider()
    kubelet = _kubelet(conn, provider)

    assert not kubelet.register_pod(make_pod("web", namespace=None))
    kubelet.reconcile_once()
    kubelet.pusher.drain()

    assert kubelet.registered() == []
    assert conn.pods == []
    assert provider.calls == []


def test_pod_bound_to_another_node_is_rejected(conn):
    kubelet = _kubelet(conn, ScriptedProvider())
    assert not kubelet.register_pod(make_pod("web", node_name="node-b"))
    assert kubelet.registered() == []


def test_deregister_during_fetch_kills_and_never_runs(conn):
    provider = ScriptedProvider(block=True)
    kubelet = _kubelet(conn, provider)
    try:
        kubelet.register_pod(make_pod("web", node_name="node-a"))
        kubelet.reconcile_once()
        assert provider.fetching.wait(timeout=2)

        kubelet.deregister_pod("default", "web")
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
        kubelet.pusher.drain()
    finally:
        kubelet.stop()

    assert ("kill", "default/web") in provider.calls
    assert "run" not in provider.names()
    assert kubelet.live_pods() == {}
    # only the initial Pending status went out for the cancelled start
    assert [p.status.phase for p in conn.pushes_for("default/web")] == [PodPhase.PENDING]


def test_deregister_cancels_start_while_loop_is_busy_killing_another_pod(conn):
    kill_gate = threading.Event()
    web_release = threading.Event()

    class SlowKillProvider(ScriptedProvider):
        def fetch(self, pod):
            self.calls.append(("fetch", pod.key))
            if pod.metadata.name == "web":
                self.fetching.set()
                web_release.wait(timeout=5)

        def kill(self, namespace, name):
            self.calls.append(("kill", f"{namespace}/{name}"))
            if name == "aaa":
                kill_gate.wait(timeout=5)

    provider = SlowKillProvider()
    kubelet = _kubelet(conn, provider)
    kubelet.start()
    try:
        kubelet.register_pod(make_pod("aaa", node_name="node-a"))
        kubelet.register_pod(make_pod("web", node_name="node-a"))
        assert wait_until(lambda: ("run", "default/aaa") in provider.calls, timeout=2)
        assert provider.fetching.wait(timeout=2)

        kubelet.deregister_pod("default", "aaa")
        assert wait_until(lambda: ("kill", "default/aaa") in provider.calls, timeout=2)
        kubelet.deregister_pod("default", "web")
        web_release.set()

        # not queued behind the stuck kill of aaa
        assert wait_until(lambda: ("kill", "default/web") in provider.calls, timeout=2)
        assert wait_until(lambda: "default/web" not in kubelet.live_pods(), timeout=2)
    finally:
        kill_gate.set()
        web_release.set()
        kubelet.stop()

    assert ("run", "default/web") not in provider.calls
    assert [p.status.phase for p in conn.pushes_for("default/web")] == [PodPhase.PENDING]


def test_pod_registered_again_while_being_killed_starts_over(conn):
    provider = ScriptedProvider(block=True)
    kubelet = _kubelet(conn, provider)
    pod = make_pod("web", node_name="node-a")
    try:
        kubelet.register_pod(pod)
        kubelet.reconcile_once()
        assert provider.fetching.wait(timeout=2)

        kubelet.deregister_pod("default", "web")
        kubelet.register_pod(pod)
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
        assert kubelet.live_pods() == {}

        provider.block = False
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
    finally:
        kubelet.stop()

    assert provider.names() == ["fetch", "kill", "fetch", "run"]
    assert list(kubelet.live_pods()) == ["default/web"]


def test_slow_fetch_does_not_hold_up_other_pods(conn):
    slow = threading.Event()

    class OneSlowProvider(ScriptedProvider):
        def fetch(self, pod):
            self.calls.append(("fetch", pod.key))
            if pod.metadata.name == "slow":
                slow.wait(timeout=5)

    provider = OneSlowProvider()
    kubelet = _kubelet(conn, provider)
    try:
        kubelet.register_pod(make_pod("slow", node_name="node-a"))
        kubelet.register_pod(make_pod("fast", node_name="node-a"))
        kubelet.reconcile_once()
        assert wait_until(lambda: ("run", "default/fast") in provider.calls, timeout=2)
        assert ("run", "default/slow") not in provider.calls
    finally:
        slow.set()
        kubelet.stop()


def test_container_exit_sets_terminal_phase_with_runtime_reason(conn):
    provider = ScriptedProvider()
    kubelet = _kubelet(conn, provider)
    try:
        kubelet.register_pod(make_pod("job", node_name="node-a"))
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)

        kubelet.handle_runtime_event(
            ContainerEvent("default", "job", "app", ContainerEventKind.EXITED, exit_code=2, reason="Error", message="boom")
        )
        kubelet.reconcile_once()
        kubelet.pusher.drain()
    finally:
        kubelet.stop()

    last = conn.pushes_for("default/job")[-1]
    assert last.status.phase == PodPhase.FAILED
    assert last.status.reason == "Error"
    ready = last.status.condition(ConditionType.READY)
    assert ready.status == ConditionStatus.FALSE
    assert ready.message == "boom"


def test_successful_exit_marks_pod_succeeded(conn):
    kubelet = _kubelet(conn, ScriptedProvider())
    try:
        kubelet.register_pod(make_pod("job", node_name="node-a"))
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
        kubelet.handle_runtime_event(ContainerEvent("default", "job", "app", ContainerEventKind.EXITED, exit_code=0))
        kubelet.reconcile_once()
        kubelet.pusher.drain()
    finally:
        kubelet.stop()

    assert conn.pushes_for("default/job")[-1].status.phase == PodPhase.SUCCEEDED


def test_image_pull_failure_marks_pod_failed(conn):
    provider = SimulatedPodProvider(fetch_delay_s=0.01, failing_images={"app:latest"})
    kubelet = _kubelet(conn, provider)
    try:
        kubelet.register_pod(make_pod("web", node_name="node-a"))
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
        kubelet.pusher.drain()
    finally:
        kubelet.stop()

    last = conn.pushes_for("default/web")[-1]
    assert last.status.phase == PodPhase.FAILED
    assert last.status.reason == "ErrImagePull"


def test_grace_period_delays_eviction_of_running_pod(conn):
    provider = ScriptedProvider()
    kubelet = _kubelet(conn, provider, eviction_grace_period_s=0.2)
    try:
        kubelet.register_pod(make_pod("web", node_name="node-a"))
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)

        kubelet.deregister_pod("default", "web")
        kubelet.reconcile_once()
        assert "kill" not in provider.names()

        time.sleep(0.25)
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
        assert ("kill", "default/web") in provider.calls
        assert kubelet.live_pods() == {}
    finally:
        kubelet.stop()


def test_reregister_within_grace_period_keeps_pod(conn):
    provider = ScriptedProvider()
    kubelet = _kubelet(conn, provider, eviction_grace_period_s=0.2)
    pod = make_pod("web", node_name="node-a")
    try:
        kubelet.register_pod(pod)
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)

        kubelet.deregister_pod("default", "web")
        kubelet.reconcile_once()
        kubelet.register_pod(pod)
        kubelet.reconcile_once()
        time.sleep(0.25)
        kubelet.reconcile_once()
    finally:
        kubelet.stop()

    assert "kill" not in provider.names()
    assert provider.names().count("run") == 1


def test_deleted_pod_is_killed_immediately_despite_grace_period(conn):
    provider = ScriptedProvider()
    kubelet = _kubelet(conn, provider, eviction_grace_period_s=30)
    pod = make_pod("web", node_name="node-a")
    try:
        kubelet.register_pod(pod)
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)

        pod.metadata.deletion_timestamp = "2024-01-01T00:00:00Z"
        assert kubelet.register_pod(pod)
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
    finally:
        kubelet.stop()

    assert ("kill", "default/web") in provider.calls
    assert kubelet.registered() == []


def test_failed_push_is_retried_without_blocking_reconcile(conn):
    attempts = []

    class FlakyConnection(RecordingConnection):
        def update_pod(self, pod):
            attempts.append(pod.key)
            if len(attempts) == 1:
                raise ConnectionError("master unreachable")
            super().update_pod(pod)

    flaky = FlakyConnection()
    kubelet = _kubelet(flaky, ScriptedProvider())
    try:
        kubelet.register_pod(make_pod("web", node_name="node-a"))
        kubelet.reconcile_once()
        assert kubelet.wait_idle(timeout=2)
        kubelet.pusher.drain()
        assert kubelet.pusher.failures == 1
        assert wait_until(lambda: kubelet.pusher.drain() == 0 and kubelet.pusher.pending == 0, timeout=2)
    finally:
        kubelet.stop()

    assert flaky.pushes_for("default/web")[-1].status.phase == PodPhase.RUNNING


def test_start_reports_node(conn):
    kubelet = _kubelet(conn, ScriptedProvider())
    kubelet.start()
    try:
        assert wait_until(lambda: len(conn.nodes) >= 1)
    finally:
        kubelet.stop()
    node = conn.nodes[0]
    assert node.name == "node-a"
    assert node.status.ready
    assert node.status.last_heartbeat is not None
