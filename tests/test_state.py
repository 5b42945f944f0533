import copy
import threading

import pytest

from conftest import make_node, make_pod, wait_until
from kcp.config import StateManagerConfig
from kcp.errors import Conflict, NotFound, TransportLost
from kcp.model import EventType, ResourceKind, WatchEvent
from kcp.state import StateManager
from kcp.store import InMemoryStore


def _cache(state):
    return [p.to_dict() for p in state.list_pods()], [n.to_dict() for n in state.list_nodes()]


def test_applying_same_event_twice_is_idempotent(state):
    pod = make_pod()
    pod.metadata.resource_version = 5
    event = WatchEvent(EventType.CREATED, pod)

    assert state.apply_event(event)
    once = _cache(state)
    assert not state.apply_event(copy.deepcopy(event))
    assert _cache(state) == once


def test_older_event_does_not_overwrite_newer_record(state):
    newer = make_pod(node_name="node-b")
    newer.metadata.resource_version = 9
    older = make_pod(node_name="node-a")
    older.metadata.resource_version = 4

    state.apply_event(WatchEvent(EventType.UPDATED, newer))
    assert not state.apply_event(WatchEvent(EventType.UPDATED, older))
    assert state.get_pod("default", "web").spec.node_name == "node-b"


def test_late_event_cannot_resurrect_deleted_pod(state):
    pod = make_pod()
    pod.metadata.resource_version = 3
    state.apply_event(WatchEvent(EventType.CREATED, pod))
    tombstone = copy.deepcopy(pod)
    tombstone.metadata.resource_version = 6
    state.apply_event(WatchEvent(EventType.DELETED, tombstone))

    late = copy.deepcopy(pod)
    late.metadata.resource_version = 5
    assert not state.apply_event(WatchEvent(EventType.UPDATED, late))
    with pytest.raises(NotFound):
        state.get_pod("default", "web")


def test_versions_strictly_increase_across_writes(state):
    created = state.create(make_pod())
    versions = [created.resource_version]
    current = created
    for label in ("a", "b", "c"):
        current = copy.deepcopy(current)
        current.metadata.labels["step"] = label
        current = state.update_spec(current, current.resource_version)
        versions.append(current.resource_version)

    assert versions == sorted(set(versions))
    assert state.get_pod("default", "web").metadata.labels == {"step": "c"}


def test_stale_version_conflicts_without_mutation(state, store):
    created = state.create(make_pod())
    before = state.get_pod("default", "web")
    store_before = store.revision

    stale = copy.deepcopy(created)
    stale.spec.node_name = "node-a"
    with pytest.raises(Conflict) as exc:
        state.update_spec(stale, created.resource_version - 1)

    assert exc.value.status == 409
    assert exc.value.actual == created.resource_version
    assert state.get_pod("default", "web") == before
    assert store.revision == store_before


def test_status_write_does_not_touch_spec(state):
    created = state.create(make_pod())
    incoming = copy.deepcopy(created)
    incoming.spec.node_name = "sneaky"
    incoming.status.host_ip = "10.0.0.7"

    written = state.update_live(incoming, created.resource_version)

    assert written.status.host_ip == "10.0.0.7"
    assert written.spec.node_name is None
    assert written.resource_version == created.resource_version + 1


def test_reads_return_copies(state):
    state.create(make_pod())
    pod = state.get_pod("default", "web")
    pod.spec.node_name = "mutated"
    assert state.get_pod("default", "web").spec.node_name is None


def test_snapshot_is_unaffected_by_later_writes(state):
    created = state.create(make_pod())
    snap = state.snapshot()

    bound = copy.deepcopy(created)
    bound.spec.node_name = "node-a"
    state.update_spec(bound, created.resource_version)

    assert [p.key for p in snap.unscheduled] == ["default/web"]
    assert snap.pods["default/web"].spec.node_name is None
    assert state.snapshot().unscheduled == ()


def test_stale_cache_refuses_writes(state):
    created = state.create(make_pod())
    state.mark_stale("test")

    assert state.snapshot().stale
    with pytest.raises(TransportLost):
        state.update_spec(created, created.resource_version)


def test_store_outage_marks_state_stale(state, store):
    created = state.create(make_pod())
    store.available = False

    with pytest.raises(TransportLost):
        state.update_live(created, created.resource_version)
    assert state.is_stale


def test_resync_replaces_cache_from_store(store):
    store.create(make_node("node-a"))
    store.create(make_pod("a"))
    manager = StateManager(store)
    manager.resync()
    assert [p.key for p in manager.list_pods()] == ["default/a"]

    # changes the cache never saw
    store.delete(ResourceKind.POD, "default/a")
    store.create(make_pod("b"))
    manager.mark_stale("lost watch")
    manager.resync()

    assert not manager.is_stale
    assert [p.key for p in manager.list_pods()] == ["default/b"]
    assert [n.name for n in manager.list_nodes()] == ["node-a"]
    assert manager.revision == store.revision


def test_subscription_delivers_changes_once(state):
    sub = state.watch(ResourceKind.POD)
    created = state.create(make_pod())
    # the same change arriving again through the store watch
    state.apply_event(WatchEvent(EventType.CREATED, created))

    first = sub.next(timeout=1)
    assert first.type == EventType.CREATED
    assert first.key == "default/web"
    assert sub.next(timeout=0.05) is None
    sub.stop()
    assert sub.next(timeout=0.05) is None


def test_subscription_filters_by_namespace(state):
    sub = state.watch(ResourceKind.POD, namespace="team-a")
    state.create(make_pod("x", namespace="default"))
    state.create(make_pod("y", namespace="team-a"))

    event = sub.next(timeout=1)
    assert event.key == "team-a/y"
    assert sub.next(timeout=0.05) is None


def test_watch_thread_follows_store_and_recovers_from_disconnect():
    store = InMemoryStore()
    manager = StateManager(store, StateManagerConfig(watch_timeout_s=0.2, retry_backoff_s=0.05))
    manager.start()
    try:
        assert manager.wait_for_sync(timeout=2)
        store.create(make_pod("a"))
        assert wait_until(lambda: [p.key for p in manager.list_pods()] == ["default/a"])

        store.disconnect()
        store.create(make_pod("b"))
        assert wait_until(lambda: len(manager.list_pods()) == 2 and not manager.is_stale)
    finally:
        manager.stop()


def test_concurrent_writers_on_same_version_one_wins(state):
    created = state.create(make_pod())
    outcomes = []
    barrier = threading.Barrier(2)

    def writer(node_name):
        candidate = copy.deepcopy(created)
        candidate.spec.node_name = node_name
        barrier.wait()
        try:
            state.update_spec(candidate, created.resource_version)
            outcomes.append("ok")
        except Conflict:
            outcomes.append("conflict")

    threads = [threading.Thread(target=writer, args=(n,)) for n in ("node-a", "node-b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert sorted(outcomes) == ["conflict", "ok"]
    assert state.get_pod("default", "web").resource_version == created.resource_version + 1


def test_versions_count_writes_per_identity(store):
    pod = store.create(make_pod("web"))
    store.create(make_node("node-a"))
    store.create(make_pod("other"))
    bound = copy.deepcopy(pod)
    bound.spec.node_name = "node-a"
    bound = store.update(bound, pod.resource_version)
    tombstone = store.delete(ResourceKind.POD, "default/web")
    again = store.create(make_pod("web"))

    assert [pod.resource_version, bound.resource_version, tombstone.resource_version] == [1, 2, 3]
    assert again.resource_version == 4
    assert store.revision == 6


def test_local_writes_do_not_move_watch_resume_point(state, store):
    resume = state.revision
    # another writer commits first; the watch has not delivered it yet
    store.create(make_pod("external"))
    state.create(make_pod("mine"))
    assert state.revision == resume

    for event in store.watch(state.revision, timeout_s=0.05):
        state.apply_event(event)

    assert [p.key for p in state.list_pods()] == ["default/external", "default/mine"]
    assert state.revision == store.revision


def test_resync_keeps_records_written_while_listing(store):
    store.create(make_pod("a"))
    manager = StateManager(store)
    manager.resync()
    real_list_nodes = store.list_nodes

    def list_nodes_after_write():
        # a local create lands between the pod list and the node list
        manager.create(make_pod("late"))
        return real_list_nodes()

    store.list_nodes = list_nodes_after_write
    manager.resync()

    assert [p.key for p in manager.list_pods()] == ["default/a", "default/late"]
