"""Store contract and the in-memory reference store.

The store owns durability and version assignment. Every accepted write bumps
the version of that identity by exactly one (deletes included, and a
re-created identity continues from its last version). A separate global
revision orders the watch history, so streams can resume from any retained
revision.
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
import uuid
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, Iterator, List, Optional, Tuple

from kcp.errors import AlreadyExists, Conflict, InvalidResource, NotFound, TransportLost
from kcp.model import EventType, Node, Pod, Resource, ResourceKind, WatchEvent, utc_iso

logger = logging.getLogger(__name__)

SPEC = "spec"
STATUS = "status"


class Store(ABC):
    """What the StateManager needs from durable storage."""

    @abstractmethod
    def list_pods(self) -> Tuple[List[Pod], int]:
        """Return all pods and the revision the list is consistent with."""

    @abstractmethod
    def list_nodes(self) -> Tuple[List[Node], int]:
        ...

    @abstractmethod
    def watch(self, since_revision: int, timeout_s: Optional[float] = None) -> Iterator[WatchEvent]:
        """Yield events newer than ``since_revision``.

        The stream ends normally when nothing arrives for ``timeout_s``
        seconds and raises TransportLost when the connection breaks.
        """

    @abstractmethod
    def create(self, resource: Resource) -> Resource:
        ...

    @abstractmethod
    def update(self, resource: Resource, expected_version: int, subresource: str = SPEC) -> Resource:
        """Conditional write keyed on version equality."""

    @abstractmethod
    def delete(self, kind: ResourceKind, key: str) -> Resource:
        ...

    def close(self) -> None:
        pass


class _WatchChannel:
    def __init__(self) -> None:
        self.queue: "queue.Queue[object]" = queue.Queue()


_DISCONNECT = object()


class InMemoryStore(Store):
    """etcd-like store kept in process memory."""

    def __init__(self, history_size: int = 1024) -> None:
        self._lock = threading.Lock()
        self._revision: int = 0
        self._versions: Dict[Tuple[ResourceKind, str], int] = {}
        self._objects: Dict[Tuple[ResourceKind, str], Resource] = {}
        self._history: Deque[WatchEvent] = deque(maxlen=max(16, history_size))
        self._channels: List[_WatchChannel] = []
        self.available = True

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    # -------- reads --------

    def list_pods(self) -> Tuple[List[Pod], int]:
        return self._list(ResourceKind.POD)  # type: ignore[return-value]

    def list_nodes(self) -> Tuple[List[Node], int]:
        return self._list(ResourceKind.NODE)  # type: ignore[return-value]

    def _list(self, kind: ResourceKind) -> Tuple[List[Resource], int]:
        self._check_available()
        with self._lock:
            items = [copy.deepcopy(obj) for (k, _), obj in sorted(self._objects.items()) if k == kind]
            return items, self._revision

    def get(self, kind: ResourceKind, key: str) -> Resource:
        with self._lock:
            obj = self._objects.get((kind, key))
            if obj is None:
                raise NotFound(f"{kind.value} {key} not found", key=key)
            return copy.deepcopy(obj)

    def watch(self, since_revision: int, timeout_s: Optional[float] = None) -> Iterator[WatchEvent]:
        self._check_available()
        channel = _WatchChannel()
        with self._lock:
            if self._history and since_revision < self._history[0].revision - 1:
                raise TransportLost(f"resource version {since_revision} is too old")
            backlog = [evt for evt in self._history if evt.revision > since_revision]
            self._channels.append(channel)
        return self._stream(channel, backlog, timeout_s)

    def _stream(
        self,
        channel: _WatchChannel,
        backlog: List[WatchEvent],
        timeout_s: Optional[float],
    ) -> Iterator[WatchEvent]:
        try:
            for evt in backlog:
                yield copy.deepcopy(evt)
            while True:
                try:
                    item = channel.queue.get(timeout=timeout_s)
                except queue.Empty:
                    return
                if item is _DISCONNECT:
                    raise TransportLost("watch connection lost")
                yield copy.deepcopy(item)  # type: ignore[arg-type]
        finally:
            with self._lock:
                if channel in self._channels:
                    self._channels.remove(channel)

    # -------- writes --------

    def create(self, resource: Resource) -> Resource:
        self._check_available()
        key = _validate(resource)
        with self._lock:
            if (resource.kind, key) in self._objects:
                raise AlreadyExists(f"{resource.kind.value} {key} already exists", key=key)
            obj = copy.deepcopy(resource)
            obj.metadata.uid = obj.metadata.uid or str(uuid.uuid4())
            obj.metadata.creation_timestamp = obj.metadata.creation_timestamp or utc_iso()
            self._commit_locked(obj, EventType.CREATED)
            return copy.deepcopy(obj)

    def update(self, resource: Resource, expected_version: int, subresource: str = SPEC) -> Resource:
        self._check_available()
        key = _validate(resource)
        with self._lock:
            current = self._objects.get((resource.kind, key))
            if current is None:
                raise NotFound(f"{resource.kind.value} {key} not found", key=key)
            if current.metadata.resource_version != expected_version:
                raise Conflict(
                    f"{resource.kind.value} {key}: expected version {expected_version}, "
                    f"current {current.metadata.resource_version}",
                    key=key,
                    expected=expected_version,
                    actual=current.metadata.resource_version,
                )
            obj = merge_write(current, resource, subresource)
            self._commit_locked(obj, EventType.UPDATED)
            return copy.deepcopy(obj)

    def delete(self, kind: ResourceKind, key: str) -> Resource:
        self._check_available()
        with self._lock:
            obj = self._objects.pop((kind, key), None)
            if obj is None:
                raise NotFound(f"{kind.value} {key} not found", key=key)
            tombstone = copy.deepcopy(obj)
            tombstone.metadata.resource_version = self._next_version_locked(kind, key)
            self._revision += 1
            self._publish_locked(WatchEvent(EventType.DELETED, tombstone, revision=self._revision))
            return copy.deepcopy(tombstone)

    def _commit_locked(self, obj: Resource, event_type: EventType) -> None:
        obj.metadata.resource_version = self._next_version_locked(obj.kind, obj.key)
        self._revision += 1
        self._objects[(obj.kind, obj.key)] = obj
        self._publish_locked(WatchEvent(event_type, copy.deepcopy(obj), revision=self._revision))

    def _next_version_locked(self, kind: ResourceKind, key: str) -> int:
        version = self._versions.get((kind, key), 0) + 1
        self._versions[(kind, key)] = version
        return version

    def _publish_locked(self, event: WatchEvent) -> None:
        self._history.append(event)
        for channel in self._channels:
            channel.queue.put(event)

    # -------- failure injection --------

    def disconnect(self) -> None:
        """Break every open watch stream with TransportLost."""
        with self._lock:
            channels = list(self._channels)
            self._channels.clear()
        for channel in channels:
            channel.queue.put(_DISCONNECT)
        logger.info(f"Disconnected {len(channels)} watch stream(s)")

    def _check_available(self) -> None:
        if not self.available:
            raise TransportLost("store unavailable")


def merge_write(current: Resource, incoming: Resource, subresource: str) -> Resource:
    """Apply the half of ``incoming`` a spec or status write is allowed to touch."""
    obj = copy.deepcopy(current)
    if subresource == STATUS:
        obj.status = copy.deepcopy(incoming.status)
        return obj
    if subresource != SPEC:
        raise ValueError(f"unknown subresource '{subresource}'")
    obj.metadata.labels = dict(incoming.metadata.labels)
    obj.metadata.deletion_timestamp = incoming.metadata.deletion_timestamp
    if isinstance(obj, Pod):
        obj.spec = copy.deepcopy(incoming.spec)
    else:
        obj.capacity = copy.deepcopy(incoming.capacity)
        obj.unschedulable = incoming.unschedulable
    return obj


def _validate(resource: Resource) -> str:
    if isinstance(resource, Pod):
        if not resource.metadata.namespace or not resource.metadata.name:
            raise InvalidResource("pod requires metadata.namespace and metadata.name")
    elif isinstance(resource, Node):
        if not resource.metadata.name:
            raise InvalidResource("node requires metadata.name")
    else:
        raise InvalidResource(f"unsupported resource type {type(resource).__name__}")
    return resource.key
