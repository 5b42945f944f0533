"""Store backed by a Kubernetes API server through the official client."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Iterator, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from kcp.convert import node_from_k8s, node_to_k8s, pod_from_k8s, pod_to_k8s
from kcp.errors import (
    AlreadyExists,
    Conflict,
    ControlPlaneError,
    InvalidResource,
    NotFound,
    TransportLost,
)
from kcp.model import EventType, Node, Pod, Resource, ResourceKind, WatchEvent, split_key
from kcp.store import SPEC, STATUS, Store

logger = logging.getLogger(__name__)

_WATCH_TYPES = {
    "ADDED": EventType.CREATED,
    "MODIFIED": EventType.UPDATED,
    "DELETED": EventType.DELETED,
}
_DONE = object()


def load_core_api(kubeconfig_path: Optional[str] = None) -> client.CoreV1Api:
    if kubeconfig_path:
        config.load_kube_config(config_file=kubeconfig_path)
    else:
        try:
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes config")
        except config.ConfigException:
            config.load_kube_config()
            logger.info("Loaded kubeconfig")
    return client.CoreV1Api()


def translate_api_error(e: ApiException, key: Optional[str] = None, expected: Optional[int] = None) -> ControlPlaneError:
    """Map an ApiException onto the control plane error taxonomy."""
    message = f"{e.status} {e.reason}"
    if e.status == 404:
        return NotFound(message, key=key)
    if e.status == 409:
        if "AlreadyExists" in str(e.body or ""):
            return AlreadyExists(message, key=key)
        return Conflict(message, key=key, expected=expected)
    if e.status == 410:
        return TransportLost(f"resource version expired: {message}", key=key)
    if e.status in (400, 422):
        return InvalidResource(message, key=key)
    return TransportLost(message, key=key)


class KubeStore(Store):
    """
    Store over CoreV1Api.

    Resource versions from the API server are etcd revisions and are
    compared as integers. Conditional writes send ``metadata.resourceVersion``
    so the API server rejects stale writers with 409.
    """

    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        namespace: Optional[str] = None,
        kubeconfig_path: Optional[str] = None,
    ) -> None:
        self.core = core_api or load_core_api(kubeconfig_path)
        self.namespace = namespace

    # -------- reads --------

    def list_pods(self) -> Tuple[List[Pod], int]:
        resp = self._call(self._list_pods_call())
        return [pod_from_k8s(p) for p in resp.items], _revision(resp)

    def list_nodes(self) -> Tuple[List[Node], int]:
        resp = self._call(self.core.list_node)
        return [node_from_k8s(n) for n in resp.items], _revision(resp)

    def _list_pods_call(self) -> Callable[..., Any]:
        if self.namespace:
            namespace = self.namespace
            return lambda **kw: self.core.list_namespaced_pod(namespace, **kw)
        return self.core.list_pod_for_all_namespaces

    def watch(self, since_revision: int, timeout_s: Optional[float] = None) -> Iterator[WatchEvent]:
        events: "queue.Queue[object]" = queue.Queue()
        stop = threading.Event()
        timeout_seconds = int(timeout_s) if timeout_s else None
        if self.namespace:
            pod_list: Any = self.core.list_namespaced_pod
            pod_kwargs = {"namespace": self.namespace}
        else:
            pod_list = self.core.list_pod_for_all_namespaces
            pod_kwargs = {}
        streams = [
            (pod_list, pod_kwargs, pod_from_k8s),
            (self.core.list_node, {}, node_from_k8s),
        ]
        threads = []
        for func, kwargs, convert in streams:
            t = threading.Thread(
                target=self._pump,
                args=(func, kwargs, convert, since_revision, timeout_seconds, events, stop),
                name="KubeStoreWatch",
                daemon=True,
            )
            t.start()
            threads.append(t)
        return self._merge(events, len(threads), stop)

    def _pump(
        self,
        func: Callable[..., Any],
        kwargs: dict,
        convert: Callable[[Any], Resource],
        since_revision: int,
        timeout_seconds: Optional[int],
        events: "queue.Queue[object]",
        stop: threading.Event,
    ) -> None:
        w = watch.Watch()
        try:
            for raw in w.stream(
                func,
                resource_version=str(since_revision) if since_revision else None,
                timeout_seconds=timeout_seconds,
                **kwargs,
            ):
                if stop.is_set():
                    w.stop()
                    break
                event_type = raw.get("type")
                if event_type == "ERROR":
                    obj = raw.get("raw_object") or {}
                    code = obj.get("code") if isinstance(obj, dict) else None
                    events.put(TransportLost(f"watch error {code}: {obj.get('message') if isinstance(obj, dict) else obj}"))
                    return
                if event_type not in _WATCH_TYPES:
                    continue  # BOOKMARK
                resource = convert(raw["object"])
                # etcd revisions are global, so the object version doubles as the stream position
                events.put(WatchEvent(_WATCH_TYPES[event_type], resource, revision=resource.resource_version))
        except ApiException as e:
            events.put(translate_api_error(e))
        except (HTTPError, OSError) as e:
            events.put(TransportLost(f"watch connection lost: {e}"))
        except Exception as e:
            logger.exception(f"Watch stream failed: {e}")
            events.put(TransportLost(str(e)))
        finally:
            events.put(_DONE)

    def _merge(self, events: "queue.Queue[object]", streams: int, stop: threading.Event) -> Iterator[WatchEvent]:
        done = 0
        try:
            while done < streams:
                item = events.get()
                if item is _DONE:
                    done += 1
                    continue
                if isinstance(item, ControlPlaneError):
                    raise item
                yield item  # type: ignore[misc]
        finally:
            stop.set()

    # -------- writes --------

    def create(self, resource: Resource) -> Resource:
        key = resource.key
        try:
            if isinstance(resource, Pod):
                body = pod_to_k8s(resource)
                body.metadata.resource_version = None
                body.status = None
                created = self.core.create_namespaced_pod(resource.metadata.namespace, body)
                return pod_from_k8s(created)
            body = node_to_k8s(resource)
            body.metadata.resource_version = None
            created = self.core.create_node(body)
            return node_from_k8s(created)
        except ApiException as e:
            raise translate_api_error(e, key=key) from e
        except (HTTPError, OSError) as e:
            raise TransportLost(str(e), key=key) from e

    def update(self, resource: Resource, expected_version: int, subresource: str = SPEC) -> Resource:
        key = resource.key
        try:
            if isinstance(resource, Pod):
                return self._update_pod(resource, expected_version, subresource)
            return self._update_node(resource, expected_version, subresource)
        except ApiException as e:
            raise translate_api_error(e, key=key, expected=expected_version) from e
        except (HTTPError, OSError) as e:
            raise TransportLost(str(e), key=key) from e

    def _update_pod(self, pod: Pod, expected_version: int, subresource: str) -> Pod:
        namespace, name = pod.metadata.namespace, pod.metadata.name
        current = self.core.read_namespaced_pod(name, namespace)
        _check_version(current, pod.key, expected_version)

        if subresource == STATUS:
            current.status = pod_to_k8s(pod).status
            current.metadata.resource_version = str(expected_version)
            return pod_from_k8s(self.core.replace_namespaced_pod_status(name, namespace, current))

        if pod.spec.node_name and not current.spec.node_name:
            # pod spec is immutable apart from the binding subresource
            binding = client.V1Binding(
                metadata=client.V1ObjectMeta(name=name, namespace=namespace),
                target=client.V1ObjectReference(api_version="v1", kind="Node", name=pod.spec.node_name),
            )
            self.core.create_namespaced_binding(namespace, binding, _preload_content=False)
            return pod_from_k8s(self.core.read_namespaced_pod(name, namespace))

        current.metadata.labels = dict(pod.metadata.labels) or None
        current.metadata.resource_version = str(expected_version)
        return pod_from_k8s(self.core.replace_namespaced_pod(name, namespace, current))

    def _update_node(self, node: Node, expected_version: int, subresource: str) -> Node:
        name = node.metadata.name
        current = self.core.read_node(name)
        _check_version(current, name, expected_version)
        desired = node_to_k8s(node)
        current.metadata.resource_version = str(expected_version)

        if subresource == STATUS:
            current.status.conditions = desired.status.conditions
            return node_from_k8s(self.core.replace_node_status(name, current))

        current.metadata.labels = dict(node.metadata.labels) or None
        current.spec.unschedulable = node.unschedulable or None
        return node_from_k8s(self.core.replace_node(name, current))

    def delete(self, kind: ResourceKind, key: str) -> Resource:
        try:
            if kind == ResourceKind.POD:
                namespace, name = split_key(key)
                current = pod_from_k8s(self.core.read_namespaced_pod(name, namespace))
                self.core.delete_namespaced_pod(name, namespace)
            else:
                current = node_from_k8s(self.core.read_node(key))
                self.core.delete_node(key)
        except ApiException as e:
            raise translate_api_error(e, key=key) from e
        except (HTTPError, OSError) as e:
            raise TransportLost(str(e), key=key) from e
        # the watch delivers the authoritative DELETED event with the final version
        current.metadata.resource_version += 1
        return current

    # -------- helpers --------

    def _call(self, func: Callable[..., Any]) -> Any:
        try:
            return func()
        except ApiException as e:
            raise translate_api_error(e) from e
        except (HTTPError, OSError) as e:
            raise TransportLost(str(e)) from e

    def close(self) -> None:
        api_client = getattr(self.core, "api_client", None)
        if api_client is not None:
            api_client.close()


def _revision(resp: Any) -> int:
    try:
        return int(resp.metadata.resource_version or 0)
    except (AttributeError, TypeError, ValueError):
        return 0


def _check_version(current: Any, key: str, expected_version: int) -> None:
    actual = int(current.metadata.resource_version or 0)
    if actual != expected_version:
        raise Conflict(
            f"{key}: expected version {expected_version}, current {actual}",
            key=key,
            expected=expected_version,
            actual=actual,
        )
