import copy
import threading

from conftest import make_node, make_pod
from kcp.config import SchedulerConfig
from kcp.model import PodPhase
from kcp.policy import FirstFitPolicy, LeastLoadedPolicy, node_usage, select_policy
from kcp.scheduler import Scheduler


def _seed(state, *nodes):
    for node in nodes:
        state.create(node)


def test_schedule_binds_pod_and_bumps_version_by_one(state):
    _seed(state, make_node("node-a"))
    created = state.create(make_pod("web"))

    result = Scheduler(state).run_once()

    pod = state.get_pod("default", "web")
    assert result.bound == {"default/web": "node-a"}
    assert pod.spec.node_name == "node-a"
    assert pod.resource_version == created.resource_version + 1


def test_version_bump_ignores_writes_to_other_objects(state):
    node = state.create(make_node("node-a"))
    created = state.create(make_pod("web"))
    # heartbeat from the node lands between submit and bind
    beat = copy.deepcopy(node)
    beat.status.last_heartbeat = 42.0
    state.update_live(beat, node.resource_version)
    state.create(make_pod("other", namespace="team-a", node_name="node-a"))

    result = Scheduler(state).run_once()

    assert result.bound == {"default/web": "node-a"}
    assert state.get_pod("default", "web").resource_version == created.resource_version + 1


def test_least_loaded_spreads_and_breaks_ties_by_name(state):
    _seed(state, make_node("node-b"), make_node("node-a"))
    for name in ("p1", "p2", "p3"):
        state.create(make_pod(name))

    result = Scheduler(state).run_once()

    assert result.bound == {
        "default/p1": "node-a",
        "default/p2": "node-b",
        "default/p3": "node-a",
    }


def test_first_fit_packs_onto_first_node(state):
    _seed(state, make_node("node-a"), make_node("node-b"))
    for name in ("p1", "p2"):
        state.create(make_pod(name))

    result = Scheduler(state, policy=FirstFitPolicy()).run_once()

    assert set(result.bound.values()) == {"node-a"}


def test_infeasible_pods_stay_unscheduled(state):
    _seed(
        state,
        make_node("small", cpu=500),
        make_node("cordoned", unschedulable=True),
        make_node("down", ready=False),
    )
    state.create(make_pod("big", cpu=1000))

    result = Scheduler(state).run_once()

    assert result.unschedulable == ["default/big"]
    assert state.get_pod("default", "big").spec.node_name is None


def test_pod_slot_capacity_is_respected(state):
    _seed(state, make_node("node-a", pods=1))
    state.create(make_pod("p1"))
    state.create(make_pod("p2"))

    result = Scheduler(state).run_once()

    assert result.bound == {"default/p1": "node-a"}
    assert result.unschedulable == ["default/p2"]


def test_stale_snapshot_is_skipped(state):
    _seed(state, make_node("node-a"))
    state.create(make_pod())
    snap = state.snapshot()
    state.mark_stale("test")

    result = Scheduler(state).schedule(state.snapshot())

    assert result.bound == {}
    assert snap.unscheduled


def test_conflict_refetches_and_retries_with_fresh_version(state):
    _seed(state, make_node("node-a"))
    created = state.create(make_pod())
    snap = state.snapshot()

    # someone relabels the pod after the snapshot was taken
    relabeled = copy.deepcopy(created)
    relabeled.metadata.labels["tier"] = "frontend"
    fresh = state.update_spec(relabeled, created.resource_version)

    result = Scheduler(state).schedule(snap)

    assert result.conflicts == ["default/web"]
    assert result.bound == {"default/web": "node-a"}
    pod = state.get_pod("default", "web")
    assert pod.resource_version == fresh.resource_version + 1
    assert pod.metadata.labels == {"tier": "frontend"}


def test_pod_bound_elsewhere_is_dropped_after_conflict(state):
    _seed(state, make_node("node-a"), make_node("node-b"))
    created = state.create(make_pod())
    snap = state.snapshot()

    other = copy.deepcopy(created)
    other.spec.node_name = "node-b"
    state.update_spec(other, created.resource_version)

    result = Scheduler(state).schedule(snap)

    assert result.dropped == ["default/web"]
    assert result.bound == {}
    assert state.get_pod("default", "web").spec.node_name == "node-b"


def test_deleted_pod_is_dropped(state):
    _seed(state, make_node("node-a"))
    state.create(make_pod())
    snap = state.snapshot()
    state.delete_pod("default", "web")

    result = Scheduler(state).schedule(snap)

    assert result.dropped == ["default/web"]


def test_concurrent_schedulers_commit_exactly_one_binding(state):
    _seed(state, make_node("node-a"), make_node("node-b"))
    created = state.create(make_pod())
    snap = state.snapshot()
    results = []
    barrier = threading.Barrier(2)

    def run(policy):
        scheduler = Scheduler(state, policy=policy, config=SchedulerConfig(max_conflict_retries=3))
        barrier.wait()
        results.append(scheduler.schedule(snap))

    threads = [threading.Thread(target=run, args=(p,)) for p in (FirstFitPolicy(), LeastLoadedPolicy())]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    bound = [r for r in results if r.bound]
    lost = [r for r in results if not r.bound]
    assert len(bound) == 1
    assert len(lost) == 1
    assert lost[0].conflicts == ["default/web"]
    assert lost[0].dropped + lost[0].deferred == ["default/web"]
    pod = state.get_pod("default", "web")
    assert pod.resource_version == created.resource_version + 1
    assert pod.spec.node_name == bound[0].bound["default/web"]


def test_node_usage_ignores_terminal_pods(state):
    _seed(state, make_node("node-a"))
    done = make_pod("done", node_name="node-a", cpu=1000)
    done.status.phase = PodPhase.SUCCEEDED
    state.create(done)
    state.create(make_pod("live", node_name="node-a", cpu=300))

    usage = node_usage(state.snapshot())

    assert usage["node-a"].cpu_millicores == 300
    assert usage["node-a"].pods == 1


def test_select_policy_by_name():
    assert isinstance(select_policy("first-fit"), FirstFitPolicy)
    assert isinstance(select_policy("least-loaded"), LeastLoadedPolicy)
    assert isinstance(select_policy(None), LeastLoadedPolicy)
