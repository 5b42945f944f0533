import sys
import time
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from kcp.model import Container, Node, NodeCapacity, ObjectMeta, Pod, PodSpec
from kcp.state import StateManager
from kcp.store import InMemoryStore


def make_pod(name="web", namespace="default", node_name=None, containers=("app",), cpu=100, memory=64):
    return Pod(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=PodSpec(
            containers=[Container(name=c, image=f"{c}:latest", cpu_millicores=cpu, memory_mb=memory) for c in containers],
            node_name=node_name,
        ),
    )


def make_node(name="node-a", cpu=4000, memory=8192, pods=110, ready=True, unschedulable=False):
    node = Node(
        metadata=ObjectMeta(name=name),
        capacity=NodeCapacity(cpu_millicores=cpu, memory_mb=memory, pods=pods),
        unschedulable=unschedulable,
    )
    node.status.ready = ready
    return node


def wait_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def state(store):
    """StateManager synced against the store, without the watch thread."""
    manager = StateManager(store)
    manager.resync()
    try:
        yield manager
    finally:
        manager.stop()
