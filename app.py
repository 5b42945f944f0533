from __future__ import annotations

import os
import logging
from typing import List, Optional

from kcp.api import create_app
from kcp.config import ControlPlaneConfig, load_config
from kcp.errors import AlreadyExists
from kcp.kubelet import Kubelet
from kcp.master import Master
from kcp.model import Node, NodeCapacity, ObjectMeta
from kcp.provider import SimulatedPodProvider
from kcp.scheduler import Scheduler
from kcp.state import StateManager
from kcp.store import InMemoryStore, Store

logger = logging.getLogger(__name__)


def default_nodes() -> List[Node]:
    """Three small workers for local testing."""
    return [
        Node(
            metadata=ObjectMeta(name=f"worker-{i}", labels={"kcp.zone": "zone-a"}),
            capacity=NodeCapacity(cpu_millicores=4000, memory_mb=8192, pods=110),
        )
        for i in range(3)
    ]


def seed_nodes(store: Store, nodes: List[Node]) -> None:
    """Create the configured nodes in the store. Safe to call multiple times."""
    for node in nodes:
        try:
            store.create(node)
            logger.info(f"Seeded node {node.name}")
        except AlreadyExists:
            logger.debug(f"Node {node.name} already present")


def build_store(cfg: ControlPlaneConfig) -> Store:
	if cfg.store == "kubernetes":
		from kcp.kube_store import KubeStore
		return KubeStore(kubeconfig_path=cfg.kubeconfig_path)
	return InMemoryStore()


def build_app(cfg: Optional[ControlPlaneConfig] = None):
	"""Build the Flask app on top of a full control plane composition."""
	if cfg is None:
		cfg = load_config(os.getenv("KCP_CONFIG"))
	logging.basicConfig(
		level=getattr(logging, str(cfg.log_level).upper(), logging.INFO),
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
	)

	store = build_store(cfg)
	nodes = cfg.nodes or default_nodes()
	kubelets: List[Kubelet] = []

	state = StateManager(store, cfg.state)
	scheduler = Scheduler(state, config=cfg.scheduler)
	master = Master(state, scheduler, cfg.master)

	if cfg.store == "memory":
		# simulated nodes: one kubelet per seeded node, all in-process
		seed_nodes(store, nodes)
		state.resync()
		for node in nodes:
			provider = SimulatedPodProvider()
			kubelet = Kubelet(node.name, master, provider, cfg.kubelet, capacity=node.capacity)
			provider.attach(kubelet.handle_runtime_event)
			master.connect_kubelet(node.name, kubelet)
			kubelets.append(kubelet)
		logger.info(f"Built in-memory control plane with {len(kubelets)} simulated node(s)")
	else:
		logger.info("Built control plane against the Kubernetes API server")

	if cfg.auto_workers:
		master.start()
		for kubelet in kubelets:
			kubelet.start()

	app = create_app(state, master=master, scheduler=scheduler)
	app.config['kcp_config'] = cfg
	app.config['kcp_kubelets'] = kubelets
	return app


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	cfg = app.config['kcp_config']
	app.run(host=cfg.api.host, port=cfg.api.port, threaded=True)
