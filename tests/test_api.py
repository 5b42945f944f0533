import pytest

from conftest import make_node
from kcp.api import create_app
from kcp.scheduler import Scheduler


@pytest.fixture
def client(state):
    state.create(make_node("node-a"))
    app = create_app(state, scheduler=Scheduler(state))
    return app.test_client()


def test_healthz_reports_revision(client, state):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["status"] == "ok"
    assert data["revision"] == state.revision


def test_healthz_is_unavailable_when_stale(client, state):
    state.mark_stale("test")
    resp = client.get("/healthz")
    assert resp.status_code == 503
    assert resp.get_json()["status"] == "stale"


def test_create_schedule_and_read_pod(client):
    resp = client.post("/pods", json={"namespace": "default", "name": "web", "image": "nginx:1.27"})
    assert resp.status_code == 201
    created = resp.get_json()
    assert created["metadata"]["resource_version"] > 0
    assert created["spec"]["containers"][0]["image"] == "nginx:1.27"

    snap = client.get("/snapshot").get_json()
    assert snap["unscheduled"] == ["default/web"]

    result = client.post("/schedule").get_json()
    assert result["bound"] == {"default/web": "node-a"}

    pod = client.get("/pods/default/web").get_json()
    assert pod["spec"]["node_name"] == "node-a"
    assert pod["metadata"]["resource_version"] == created["metadata"]["resource_version"] + 1

    nodes = client.get("/nodes").get_json()["items"]
    assert nodes[0]["pods"] == ["default/web"]


def test_create_accepts_full_pod_document(client):
    body = {
        "metadata": {"namespace": "team-a", "name": "batch", "labels": {"app": "batch"}},
        "spec": {"containers": [{"name": "worker", "image": "busybox", "cpu_millicores": 250}]},
    }
    resp = client.post("/pods", json=body)
    assert resp.status_code == 201

    items = client.get("/pods?namespace=team-a").get_json()["items"]
    assert [p["metadata"]["name"] for p in items] == ["batch"]
    assert items[0]["spec"]["containers"][0]["cpu_millicores"] == 250


def test_invalid_pods_are_rejected(client):
    resp = client.post("/pods", json={"namespace": "", "name": "web", "image": "nginx"})
    assert resp.status_code == 422
    assert resp.get_json()["error"] == "Invalid"

    resp = client.post("/pods", json={"namespace": "default", "name": "web"})
    assert resp.status_code == 422

    resp = client.post("/pods", json={"metadata": {"namespace": "default", "name": "x"}, "spec": {"containers": [{}]}})
    assert resp.status_code == 422


def test_duplicate_pod_conflicts(client):
    body = {"namespace": "default", "name": "web", "image": "nginx"}
    assert client.post("/pods", json=body).status_code == 201
    resp = client.post("/pods", json=body)
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "AlreadyExists"


def test_missing_pod_is_404(client):
    resp = client.get("/pods/default/nope")
    assert resp.status_code == 404
    assert resp.get_json()["key"] == "default/nope"
    assert client.delete("/pods/default/nope").status_code == 404


def test_delete_pod(client):
    client.post("/pods", json={"namespace": "default", "name": "web", "image": "nginx"})
    resp = client.delete("/pods/default/web")
    assert resp.status_code == 200
    assert resp.get_json()["key"] == "default/web"
    assert client.get("/pods/default/web").status_code == 404


def test_cordon_blocks_scheduling(client):
    resp = client.post("/nodes/node-a/cordon")
    assert resp.status_code == 200
    assert resp.get_json()["unschedulable"] is True

    client.post("/pods", json={"namespace": "default", "name": "web", "image": "nginx"})
    result = client.post("/schedule").get_json()
    assert result["unschedulable"] == ["default/web"]

    client.post("/nodes/node-a/uncordon")
    result = client.post("/schedule").get_json()
    assert result["bound"] == {"default/web": "node-a"}


def test_cordon_unknown_node_is_404(client):
    assert client.post("/nodes/ghost/cordon").status_code == 404
