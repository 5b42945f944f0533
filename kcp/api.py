from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from kcp import __version__
from kcp.errors import ControlPlaneError, InvalidResource
from kcp.master import Master
from kcp.model import Container, ObjectMeta, Pod, PodSpec
from kcp.scheduler import Scheduler
from kcp.state import StateManager

logger = logging.getLogger(__name__)


def create_app(
	state: StateManager,
	master: Optional[Master] = None,
	scheduler: Optional[Scheduler] = None,
) -> Flask:
	app = Flask(__name__)
	app.config['kcp_state'] = state
	app.config['kcp_master'] = master
	app.config['kcp_scheduler'] = scheduler

	@app.errorhandler(ControlPlaneError)
	def control_plane_error(e: ControlPlaneError) -> Any:
		return jsonify(e.to_dict()), e.status

	@app.get("/healthz")
	def healthz() -> Any:
		stale = state.is_stale
		body = {
			"status": "stale" if stale else "ok",
			"version": __version__,
			"revision": state.revision,
			"watching": state.running,
		}
		if master is not None:
			body["master"] = master.stats()
		return jsonify(body), (503 if stale else 200)

	@app.get("/snapshot")
	def snapshot() -> Any:
		return jsonify(state.snapshot().to_dict())

	@app.get("/pods")
	def list_pods() -> Any:
		namespace = request.args.get("namespace")
		return jsonify({"items": [p.to_dict() for p in state.list_pods(namespace)], "revision": state.revision})

	@app.get("/pods/<namespace>/<name>")
	def get_pod(namespace: str, name: str) -> Any:
		return jsonify(state.get_pod(namespace, name).to_dict())

	@app.post("/pods")
	def create_pod() -> Any:
		body: Dict[str, Any] = request.get_json(force=True, silent=True) or {}
		pod = _pod_from_request(body)
		created = state.create(pod)
		if master is not None:
			master.kick_scheduler()
		return jsonify(created.to_dict()), 201

	@app.delete("/pods/<namespace>/<name>")
	def delete_pod(namespace: str, name: str) -> Any:
		tombstone = state.delete_pod(namespace, name)
		return jsonify({"status": "deleted", "key": tombstone.key, "resource_version": tombstone.resource_version})

	@app.get("/nodes")
	def list_nodes() -> Any:
		snap = state.snapshot()
		items = []
		for node in state.list_nodes():
			item = node.to_dict()
			item["pods"] = [p.key for p in snap.pods_on_node(node.name)]
			items.append(item)
		return jsonify({"items": items, "revision": snap.revision})

	@app.post("/nodes/<name>/cordon")
	def cordon(name: str) -> Any:
		return _set_unschedulable(name, True)

	@app.post("/nodes/<name>/uncordon")
	def uncordon(name: str) -> Any:
		return _set_unschedulable(name, False)

	@app.post("/schedule")
	def schedule() -> Any:
		if scheduler is None:
			return jsonify({"error": "no scheduler configured"}), 400
		return jsonify(scheduler.run_once().to_dict())

	def _set_unschedulable(name: str, unschedulable: bool) -> Any:
		node = state.get_node(name)
		if node.unschedulable != unschedulable:
			updated = copy.deepcopy(node)
			updated.unschedulable = unschedulable
			node = state.update_spec(updated, node.resource_version)
			logger.info(f"{'Cordoned' if unschedulable else 'Uncordoned'} node {name}")
		return jsonify(node.to_dict())

	return app


def _pod_from_request(body: Dict[str, Any]) -> Pod:
	"""Accept either a full pod document or the short form {namespace, name, image}."""
	try:
		pod = Pod.from_dict(body) if "metadata" in body else _short_form(body)
	except (KeyError, TypeError, ValueError) as e:
		raise InvalidResource(f"malformed pod: {e}")
	if not pod.metadata.namespace or not pod.metadata.name:
		raise InvalidResource("pod requires namespace and name")
	if not pod.spec.containers:
		raise InvalidResource(f"pod {pod.key} has no containers", key=pod.key)
	# server-assigned fields
	pod.metadata.resource_version = 0
	pod.metadata.uid = None
	pod.metadata.deletion_timestamp = None
	return pod


def _short_form(body: Dict[str, Any]) -> Pod:
	image = body.get("image")
	containers = body.get("containers") or ([{"name": body.get("name") or "main", "image": image}] if image else [])
	return Pod(
		metadata=ObjectMeta(
			name=body.get("name"),
			namespace=body.get("namespace", "default"),
			labels=dict(body.get("labels") or {}),
		),
		spec=PodSpec(
			containers=[
				Container(
					name=c["name"],
					image=c.get("image", ""),
					cpu_millicores=int(c.get("cpu_millicores", 100)),
					memory_mb=int(c.get("memory_mb", 64)),
				)
				for c in containers
			],
			node_name=body.get("node_name"),
		),
	)
