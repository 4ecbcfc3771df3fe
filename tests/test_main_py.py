import importlib.util
import os

import pytest
from fastapi.testclient import TestClient

from fleet.controller import Controller
from fleet.db import Store


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("fleet_controller_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


@pytest.fixture
def api(tmp_path, monkeypatch):
    project_root = os.path.dirname(os.path.dirname(__file__))
    main = _import_main_module(project_root)

    # Isolated sqlite db, and no background workers: reconciles are triggered explicitly.
    store = Store(str(tmp_path / "api.db"))
    controller = Controller(store)
    monkeypatch.setattr(controller, "start", lambda: None)
    monkeypatch.setattr(main, "store", store)
    monkeypatch.setattr(main, "controller", controller)

    with TestClient(main.app) as client:
        yield client, store


SET_BODY = {
    "name": "web",
    "replicas": 2,
    "selector": {"match_labels": {"app": "web"}},
    "template": {"metadata": {"labels": {"app": "web"}}, "spec": {"version": "1.14.2"}},
}


def test_healthz(api):
    client, _ = api
    assert client.get("/healthz").json() == {"status": "healthy"}


def test_create_get_and_duplicate(api):
    client, _ = api
    r = client.post("/sets", json=SET_BODY)
    assert r.status_code == 201
    assert r.json()["metadata"]["uid"]

    r = client.get("/sets/default/web")
    assert r.status_code == 200
    assert r.json()["spec"]["replicas"] == 2

    assert client.post("/sets", json=SET_BODY).status_code == 409
    assert client.get("/sets/default/missing").status_code == 404
    assert [s["metadata"]["name"] for s in client.get("/sets").json()] == ["web"]


def test_request_validation(api):
    client, _ = api
    assert client.post("/sets", json={**SET_BODY, "replicas": -1}).status_code == 422
    client.post("/sets", json=SET_BODY)
    assert client.put("/sets/default/web/scale", json={"replicas": -3}).status_code == 422


def test_reconcile_scale_and_delete(api):
    client, store = api
    client.post("/sets", json=SET_BODY)

    r = client.post("/sets/default/web/reconcile")
    assert r.json() == {"requeue": False, "requeue_after": None, "error": None}
    units = client.get("/units", params={"set_name": "web"}).json()
    assert len(units) == 2
    assert all(u["spec"]["version"] == "1.14.2" for u in units)
    assert client.get("/sets/default/web").json()["status"]["replicas"] == 2

    r = client.put("/sets/default/web/scale", json={"replicas": 1})
    assert r.status_code == 200
    assert r.json()["metadata"]["generation"] == 2
    client.post("/sets/default/web/reconcile")
    assert len(client.get("/units", params={"namespace": "default"}).json()) == 1

    assert client.delete("/sets/default/web").status_code == 200
    assert client.get("/units").json() == []


def test_deleted_unit_is_replaced(api):
    client, _ = api
    client.post("/sets", json={**SET_BODY, "replicas": 1})
    client.post("/sets/default/web/reconcile")
    [unit] = client.get("/units").json()

    assert client.delete(f"/units/default/{unit['metadata']['name']}").status_code == 200
    client.post("/sets/default/web/reconcile")

    [replacement] = client.get("/units").json()
    assert replacement["metadata"]["name"] != unit["metadata"]["name"]


def test_invalid_spec_reported_by_reconcile(api):
    client, _ = api
    client.post("/sets", json={**SET_BODY, "selector": {"match_labels": {"app": "other"}}})

    r = client.post("/sets/default/web/reconcile")

    assert r.json()["requeue"] is False
    assert "selector does not match" in r.json()["error"]
    conditions = client.get("/sets/default/web").json()["status"]["conditions"]
    assert {"SpecValid": "False"} == {c["type"]: c["status"] for c in conditions}


def test_events_endpoint(api):
    client, _ = api
    client.post("/sets", json=SET_BODY)
    client.post("/sets/default/web/reconcile")
    events = client.get("/events", params={"set_name": "web", "limit": 50}).json()
    assert events
    assert events[-1]["message"] == "Set created"
