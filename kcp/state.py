from __future__ import annotations

import copy
import logging
import queue
import threading
from typing import Dict, List, Optional, Set, Tuple

from kcp.config import StateManagerConfig
from kcp.errors import Conflict, NotFound, ResourceExhausted, TransportLost
from kcp.model import (
    EventType,
    Node,
    Pod,
    Resource,
    ResourceKind,
    StateSnapshot,
    WatchEvent,
    pod_key,
)
from kcp.store import SPEC, STATUS, Store

logger = logging.getLogger(__name__)

_STOP = object()


class Subscription:
    """A blocking stream of watch events for one resource kind.

    Iterating blocks until the next event arrives and ends once ``stop()`` is
    called. Duplicate or older versions of an identity already delivered are
    skipped.
    """

    def __init__(self, manager: "StateManager", kind: ResourceKind, namespace: Optional[str] = None) -> None:
        self._manager = manager
        self.kind = kind
        self.namespace = namespace
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._last_seen: Dict[str, int] = {}
        self._stopped = threading.Event()

    def matches(self, event: WatchEvent) -> bool:
        if event.kind != self.kind:
            return False
        if self.namespace is None or self.kind != ResourceKind.POD:
            return True
        return event.resource.metadata.namespace == self.namespace

    def deliver(self, event: WatchEvent) -> None:
        if not self._stopped.is_set():
            self._queue.put(event)

    def next(self, timeout: Optional[float] = None) -> Optional[WatchEvent]:
        """Return the next fresh event, or None on timeout or after stop()."""
        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
            if item is _STOP:
                self._queue.put(_STOP)
                return None
            event: WatchEvent = item  # type: ignore[assignment]
            if event.version <= self._last_seen.get(event.key, 0):
                continue
            self._last_seen[event.key] = event.version
            return event

    def __iter__(self):
        while True:
            event = self.next()
            if event is None:
                return
            yield event

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._manager._unsubscribe(self)
        self._queue.put(_STOP)


class StateManager:
    """Authoritative cache of cluster state.

    Fed by the store watch, mutated only through conditional writes, and the
    single source of snapshots. The lock guards fold and snapshot only and is
    never held across store calls. Records in the cache are replaced, never
    mutated in place, so snapshots can share them.
    """

    def __init__(
        self,
        store: Store,
        config: Optional[StateManagerConfig] = None,
        auto_start: bool = False,
    ) -> None:
        self.store = store
        self.config = config or StateManagerConfig()

        self._lock = threading.RLock()
        self._pods: Dict[str, Pod] = {}
        self._nodes: Dict[str, Node] = {}
        # last deleted version per identity, so late events cannot resurrect a record
        self._tombstones: Dict[Tuple[ResourceKind, str], int] = {}
        # store revision the watch resumes from
        self._revision: int = 0
        # identities folded while a resync list is in flight
        self._touched: Optional[Set[Tuple[ResourceKind, str]]] = None
        self._stale: bool = True
        self._synced = threading.Event()
        self._subscribers: List[Subscription] = []

        self._watch_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        if auto_start:
            self.start()

    # -------- public lifecycle --------

    def start(self) -> None:
        if self._watch_thread and self._watch_thread.is_alive():
            return
        self._stop_event.clear()
        self._watch_thread = threading.Thread(target=self._watch_loop, name="StateManagerWatch", daemon=True)
        self._watch_thread.start()
        logger.info("StateManager watch started")

    def stop(self) -> None:
        self._stop_event.set()
        # a watch blocked on the store notices the stop after watch_timeout_s
        if self._watch_thread:
            self._watch_thread.join(timeout=2.0)
        for sub in list(self._subscribers):
            sub.stop()
        logger.info("StateManager stopped")

    @property
    def running(self) -> bool:
        return bool(self._watch_thread and self._watch_thread.is_alive())

    @property
    def is_stale(self) -> bool:
        with self._lock:
            return self._stale

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        return self._synced.wait(timeout)

    # -------- watcher loop --------

    def _watch_loop(self) -> None:
        failures = 0
        backoff = self.config.retry_backoff_s
        while not self._stop_event.is_set():
            try:
                if self.is_stale:
                    self.resync()
                for event in self.store.watch(self.revision, timeout_s=self.config.watch_timeout_s):
                    self.apply_event(event)
                    if self._stop_event.is_set():
                        break
                failures = 0
                backoff = self.config.retry_backoff_s
                continue
            except ResourceExhausted as e:
                self.mark_stale(str(e))
                logger.error(f"StateManager watch giving up: {e}")
                return
            except TransportLost as e:
                if self._stop_event.is_set():
                    break
                self.mark_stale(str(e))
            except Exception as e:
                logger.exception(f"StateManager watch iteration failed: {e}")
                self.mark_stale(str(e))

            failures += 1
            limit = self.config.max_watch_failures
            if limit and failures >= limit:
                logger.error(f"StateManager watch failed {failures} times in a row, stopping")
                return
            self._stop_event.wait(backoff)
            backoff = min(self.config.max_backoff_s, backoff * 2)

    def mark_stale(self, reason: str) -> None:
        with self._lock:
            if not self._stale:
                logger.warning(f"State cache marked stale: {reason}")
            self._stale = True
            self._synced.clear()

    def resync(self) -> None:
        """Full list from the store, then fold the differences into the cache.

        Identities folded while the list was in flight (our own writes, or a
        concurrent watch) keep their cached record; the watch replays
        anything after the list revision.
        """
        with self._lock:
            self._touched = set()
        try:
            pods, pods_rev = self.store.list_pods()
            nodes, nodes_rev = self.store.list_nodes()
            list_revision = min(pods_rev, nodes_rev)

            with self._lock:
                touched = self._touched or set()
                events: List[WatchEvent] = []
                events += self._replace_table_locked(ResourceKind.POD, {p.key: p for p in pods}, touched)
                events += self._replace_table_locked(ResourceKind.NODE, {n.key: n for n in nodes}, touched)
                # the list is authoritative for everything it was not racing with
                self._tombstones = {k: v for k, v in self._tombstones.items() if k in touched}
                self._revision = max(self._revision, list_revision) if not self._stale else list_revision
                self._stale = False
                self._synced.set()
                for event in events:
                    self._publish_locked(event)
        finally:
            with self._lock:
                self._touched = None
        logger.info(
            f"Resynced state at revision {list_revision}: {len(pods)} pod(s), "
            f"{len(nodes)} node(s), {len(events)} change(s)"
        )

    def _replace_table_locked(
        self,
        kind: ResourceKind,
        listed: Dict[str, Resource],
        touched: Set[Tuple[ResourceKind, str]],
    ) -> List[WatchEvent]:
        table = self._table(kind)
        events: List[WatchEvent] = []
        for key in list(table):
            if key in listed or (kind, key) in touched:
                continue
            current = table.pop(key)
            tombstone = copy.deepcopy(current)
            tombstone.metadata.resource_version = current.metadata.resource_version + 1
            events.append(WatchEvent(EventType.DELETED, tombstone))
        for key, record in listed.items():
            current = table.get(key)
            if current is None:
                if record.metadata.resource_version <= self._tombstones.get((kind, key), 0):
                    continue
                table[key] = record
                events.append(WatchEvent(EventType.CREATED, record))
            elif record.metadata.resource_version > current.metadata.resource_version:
                table[key] = record
                events.append(WatchEvent(EventType.UPDATED, record))
        return events

    # -------- event fold --------

    def apply_event(self, event: WatchEvent) -> bool:
        """Fold one watch event into the cache.

        No-op unless the event is newer than what is cached (or was last
        deleted) for that identity. Returns True when the cache changed.
        Only events delivered by the store watch move the resume revision.
        """
        with self._lock:
            if event.revision > self._revision:
                self._revision = event.revision
            changed = self._fold_locked(event)
            if changed:
                self._publish_locked(event)
            return changed

    def _fold_locked(self, event: WatchEvent) -> bool:
        table = self._table(event.kind)
        key = event.key
        current = table.get(key)
        if current is not None:
            current_version = current.metadata.resource_version
        else:
            current_version = self._tombstones.get((event.kind, key), 0)
        if event.version <= current_version:
            return False
        if self._touched is not None:
            self._touched.add((event.kind, key))

        if event.type == EventType.DELETED:
            self._tombstones[(event.kind, key)] = event.version
            return table.pop(key, None) is not None

        self._tombstones.pop((event.kind, key), None)
        table[key] = copy.deepcopy(event.resource)
        return True

    def _table(self, kind: ResourceKind) -> Dict[str, Resource]:
        if kind == ResourceKind.POD:
            return self._pods  # type: ignore[return-value]
        if kind == ResourceKind.NODE:
            return self._nodes  # type: ignore[return-value]
        raise ValueError(f"unsupported resource kind {kind}")

    # -------- public API (read) --------

    def get_pod(self, namespace: str, name: str) -> Pod:
        key = pod_key(namespace, name)
        with self._lock:
            pod = self._pods.get(key)
        if pod is None:
            raise NotFound(f"pod {key} not found", key=key)
        return copy.deepcopy(pod)

    def get_node(self, name: str) -> Node:
        with self._lock:
            node = self._nodes.get(name)
        if node is None:
            raise NotFound(f"node {name} not found", key=name)
        return copy.deepcopy(node)

    def list_pods(self, namespace: Optional[str] = None) -> List[Pod]:
        with self._lock:
            pods = [self._pods[k] for k in sorted(self._pods)]
        return [copy.deepcopy(p) for p in pods if namespace is None or p.metadata.namespace == namespace]

    def list_nodes(self) -> List[Node]:
        with self._lock:
            nodes = [self._nodes[k] for k in sorted(self._nodes)]
        return [copy.deepcopy(n) for n in nodes]

    def snapshot(self) -> StateSnapshot:
        """Point-in-time view; the lock is held only for the table copy."""
        with self._lock:
            return StateSnapshot.build(self._pods, self._nodes, revision=self._revision, stale=self._stale)

    def watch(self, kind: ResourceKind = ResourceKind.POD, namespace: Optional[str] = None) -> Subscription:
        """Subscribe to future changes of ``kind``; history is not replayed."""
        sub = Subscription(self, kind, namespace)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def _unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def _publish_locked(self, event: WatchEvent) -> None:
        for sub in self._subscribers:
            if sub.matches(event):
                sub.deliver(event)

    # -------- public API (write) --------

    def update_spec(self, resource: Resource, expected_version: int) -> Resource:
        """Conditional spec write; Conflict unless ``expected_version`` is current."""
        return self._write(resource, expected_version, SPEC)

    def update_live(self, resource: Resource, expected_version: int) -> Resource:
        """Conditional status write; Conflict unless ``expected_version`` is current."""
        return self._write(resource, expected_version, STATUS)

    def _write(self, resource: Resource, expected_version: int, subresource: str) -> Resource:
        key = resource.key
        with self._lock:
            if self._stale:
                raise TransportLost(f"state cache is stale, refusing {subresource} write to {key}", key=key)
            current = self._table(resource.kind).get(key)
            if current is None:
                raise NotFound(f"{resource.kind.value} {key} not found", key=key)
            if current.metadata.resource_version != expected_version:
                raise Conflict(
                    f"{resource.kind.value} {key}: expected version {expected_version}, "
                    f"cached {current.metadata.resource_version}",
                    key=key,
                    expected=expected_version,
                    actual=current.metadata.resource_version,
                )

        written = self._call_store(lambda: self.store.update(resource, expected_version, subresource))
        self.apply_event(WatchEvent(EventType.UPDATED, written))
        logger.debug(
            f"{subresource} write {resource.kind.value} {key}: "
            f"v{expected_version} -> v{written.metadata.resource_version}"
        )
        return copy.deepcopy(written)

    def create(self, resource: Resource) -> Resource:
        with self._lock:
            if self._stale:
                raise TransportLost(f"state cache is stale, refusing create of {resource.key}", key=resource.key)
        created = self._call_store(lambda: self.store.create(resource))
        self.apply_event(WatchEvent(EventType.CREATED, created))
        logger.info(f"Created {created.kind.value} {created.key} (v{created.metadata.resource_version})")
        return copy.deepcopy(created)

    def delete_pod(self, namespace: str, name: str) -> Pod:
        return self._delete(ResourceKind.POD, pod_key(namespace, name))  # type: ignore[return-value]

    def delete_node(self, name: str) -> Node:
        return self._delete(ResourceKind.NODE, name)  # type: ignore[return-value]

    def _delete(self, kind: ResourceKind, key: str) -> Resource:
        tombstone = self._call_store(lambda: self.store.delete(kind, key))
        self.apply_event(WatchEvent(EventType.DELETED, tombstone))
        logger.info(f"Deleted {kind.value} {key}")
        return tombstone

    def _call_store(self, fn):
        try:
            return fn()
        except TransportLost as e:
            self.mark_stale(str(e))
            raise
