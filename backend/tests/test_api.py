"""
Tests for the HTTP API. The app lifespan builds a real engine against
temp directories; runs execute in real sandboxes.
"""

import json
import os
import time

import pytest
from fastapi.testclient import TestClient

from qflow.main import app

SOURCE_NODE = {
    "id": "source",
    "code": "def main():\n    return [1, 2, 3]\n",
    "outputs": [{"key": "out", "type_id": "list"}],
}
SUM_NODE = {
    "id": "total",
    "code": "def main(values):\n    return sum(values)\n",
    "inputs": [{"key": "values", "type_id": "array"}],
    "outputs": [{"key": "out", "type_id": "integer"}],
}


def graph(instances, connections=(), **settings):
    return {
        "name": "api test",
        "instances": [{"instance_id": iid, "definition_id": did} for iid, did in instances],
        "connections": [
            {"source": s, "source_port": sp, "target": t, "target_port": tp}
            for s, sp, t, tp in connections
        ],
        "settings": settings,
    }


def wait_for_run(client, run_id, timeout=60):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        record = client.get(f"/api/v1/workflows/runs/{run_id}").json()
        if record["status"] in ("succeeded", "failed", "cancelled"):
            return record
        time.sleep(0.1)
    raise AssertionError(f"Run {run_id} did not finish within {timeout}s")


@pytest.fixture
def client(tmp_path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("QFLOW_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("qflow.config.load_dotenv", lambda: None)
    monkeypatch.setenv("QFLOW_SANDBOX_ROOT", str(tmp_path / "sandboxes"))
    monkeypatch.setenv("QFLOW_BLOB_ROOT", str(tmp_path / "blobs"))
    monkeypatch.setenv("QFLOW_PERSIST_RUNS", "false")
    monkeypatch.setenv("QFLOW_CPU_SHARE", "1.0")
    monkeypatch.setenv("QFLOW_MEMORY_MB", "512")
    monkeypatch.setenv("QFLOW_WALL_TIMEOUT", "20")
    monkeypatch.setenv("QFLOW_CANCEL_GRACE", "0.5")
    with TestClient(app) as client:
        yield client


class TestWithoutEngine:

    def test_engine_unavailable_outside_lifespan(self):
        client = TestClient(app)
        response = client.get("/api/v1/types")
        assert response.status_code == 503

    def test_root(self):
        client = TestClient(app)
        assert client.get("/api/").json() == {"message": "qflow workflow engine"}


class TestTypesApi:

    def test_builtin_types_listed(self, client):
        ids = {t["id"] for t in client.get("/api/v1/types").json()}
        assert {"any", "string", "integer", "list", "array", "dataframe"} <= ids

    def test_register_and_duplicate(self, client):
        body = {"id": "money", "category": "scalar", "compatible_with": ["float"]}
        created = client.post("/api/v1/types", json=body)
        assert created.status_code == 201
        assert created.json()["compatible_with"] == ["float"]
        assert client.post("/api/v1/types", json=body).status_code == 409

    def test_register_with_unknown_compatible_type(self, client):
        body = {"id": "money", "category": "scalar", "compatible_with": ["nope"]}
        assert client.post("/api/v1/types", json=body).status_code == 422

    def test_compatibility_check(self, client):
        response = client.post(
            "/api/v1/types/compatibility/check",
            json={"source_type": "list", "target_type": "array"},
        )
        assert response.status_code == 200
        assert response.json()["compatible"] is True

        response = client.post(
            "/api/v1/types/compatibility/check",
            json={"source_type": "string", "target_type": "integer"},
        )
        check = response.json()
        assert check["compatible"] is False
        assert check["conversion_method"] == "parse_int"

    def test_compatibility_check_unknown_type(self, client):
        response = client.post(
            "/api/v1/types/compatibility/check",
            json={"source_type": "string", "target_type": "nope"},
        )
        assert response.status_code == 404

    def test_conversions_listed(self, client):
        names = {c["name"] for c in client.get("/api/v1/types/conversions").json()}
        assert {"parse_int", "split_lines"} <= names

    def test_unknown_type(self, client):
        assert client.get("/api/v1/types/nope").status_code == 404


class TestNodesApi:

    def test_register_edit_and_versions(self, client):
        assert client.post("/api/v1/nodes", json=SOURCE_NODE).status_code == 201
        assert client.post("/api/v1/nodes", json=SOURCE_NODE).status_code == 409

        edited = client.put(
            "/api/v1/nodes/source", json={"code": "def main():\n    return [4]\n"}
        )
        assert edited.status_code == 200
        assert edited.json()["version"] == 2
        assert edited.json()["previous_version"] == 1

        versions = client.get("/api/v1/nodes/source/versions").json()
        assert [v["version"] for v in versions] == [1, 2]
        first = client.get("/api/v1/nodes/source", params={"version": 1}).json()
        assert first["code"] == SOURCE_NODE["code"]

    def test_empty_edit_rejected(self, client):
        client.post("/api/v1/nodes", json=SOURCE_NODE)
        assert client.put("/api/v1/nodes/source", json={}).status_code == 400

    def test_invalid_code_rejected(self, client):
        body = dict(SOURCE_NODE, code="def main(:\n    pass\n")
        response = client.post("/api/v1/nodes", json=body)
        assert response.status_code == 422
        assert response.json()["detail"]["errors"]

    def test_unknown_node(self, client):
        assert client.get("/api/v1/nodes/nope").status_code == 404

    def test_validate_code(self, client):
        response = client.post(
            "/api/v1/nodes/validate",
            json={"code": "def main(x: int) -> str:\n    return str(x)\n", "input_ports": ["x"]},
        )
        result = response.json()
        assert result["valid"] is True
        assert "main" in result["functions"]

        response = client.post("/api/v1/nodes/validate", json={"code": "def main(:"})
        assert response.json()["valid"] is False

    def test_delete_blocked_while_run_is_active(self, client):
        client.post("/api/v1/nodes", json={
            "id": "sleepy",
            "code": "import time\ndef main():\n    time.sleep(30)\n",
        })
        submitted = client.post(
            "/api/v1/workflows/runs", json={"graph": graph([("s", "sleepy")])}
        )
        assert submitted.status_code == 202
        run_id = submitted.json()["run_id"]

        response = client.delete("/api/v1/nodes/sleepy")
        assert response.status_code == 409
        assert response.json()["detail"]["referenced_by"] == [run_id]

        client.post(f"/api/v1/workflows/runs/{run_id}/cancel")
        wait_for_run(client, run_id, timeout=20)
        assert client.delete("/api/v1/nodes/sleepy").status_code == 204

    def test_delete_unreferenced(self, client):
        client.post("/api/v1/nodes", json=SOURCE_NODE)
        assert client.delete("/api/v1/nodes/source").status_code == 204
        assert client.get("/api/v1/nodes/source").status_code == 404


class TestWorkflowsApi:

    def test_validate_reports_order(self, client):
        client.post("/api/v1/nodes", json=SOURCE_NODE)
        client.post("/api/v1/nodes", json=SUM_NODE)
        response = client.post(
            "/api/v1/workflows/validate",
            json={"graph": graph([("b", "total"), ("a", "source")], [("a", "out", "b", "values")])},
        )
        result = response.json()
        assert result["valid"] is True
        assert result["execution_order"] == ["a", "b"]

    def test_validate_reports_every_issue(self, client):
        client.post("/api/v1/nodes", json=SUM_NODE)
        response = client.post(
            "/api/v1/workflows/validate",
            json={"graph": graph([("b", "total"), ("c", "missing")])},
        )
        result = response.json()
        assert result["valid"] is False
        assert len(result["issues"]) >= 2

    def test_run_to_completion(self, client):
        client.post("/api/v1/nodes", json=SOURCE_NODE)
        client.post("/api/v1/nodes", json=SUM_NODE)
        submitted = client.post(
            "/api/v1/workflows/runs",
            json={"graph": graph([("a", "source"), ("b", "total")], [("a", "out", "b", "values")])},
        )
        assert submitted.status_code == 202
        run_id = submitted.json()["run_id"]

        record = wait_for_run(client, run_id)
        assert record["status"] == "succeeded"
        assert record["nodes"]["b"]["status"] == "succeeded"
        assert record["nodes"]["b"]["outputs"]["out"]["type_id"] == "integer"

        runs = client.get("/api/v1/workflows/runs").json()
        assert [r["run_id"] for r in runs] == [run_id]

        with client.stream("GET", f"/api/v1/workflows/runs/{run_id}/events") as response:
            assert response.headers["content-type"].startswith("text/event-stream")
            events = [
                json.loads(line[len("data: "):])["event"]
                for line in response.iter_lines()
                if line.startswith("data: ")
            ]
        assert events[0] == "run_started"
        assert events[-1] == "run_completed"
        assert events.count("succeeded") == 2

    def test_rejected_run(self, client):
        client.post("/api/v1/nodes", json=SUM_NODE)
        response = client.post(
            "/api/v1/workflows/runs",
            json={"graph": graph([("b", "total")])},
        )
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["issues"]
        run = client.get(f"/api/v1/workflows/runs/{detail['run_id']}").json()
        assert run["status"] == "failed"
        assert run["validation_errors"]

    def test_cancel_run(self, client):
        client.post("/api/v1/nodes", json={
            "id": "sleepy",
            "code": "import time\ndef main():\n    time.sleep(30)\n",
        })
        submitted = client.post(
            "/api/v1/workflows/runs", json={"graph": graph([("s", "sleepy")])}
        )
        run_id = submitted.json()["run_id"]

        cancelled = client.post(f"/api/v1/workflows/runs/{run_id}/cancel").json()
        assert cancelled["cancelled"] is True

        record = wait_for_run(client, run_id, timeout=20)
        assert record["status"] == "cancelled"
        assert record["nodes"]["s"]["status"] == "cancelled"

        again = client.post(f"/api/v1/workflows/runs/{run_id}/cancel").json()
        assert again["cancelled"] is False

    def test_unknown_run(self, client):
        assert client.get("/api/v1/workflows/runs/nope").status_code == 404
        assert client.post("/api/v1/workflows/runs/nope/cancel").status_code == 404
        assert client.get("/api/v1/workflows/runs/nope/events").status_code == 404


class TestSandboxesApi:

    def test_settings(self, client):
        settings = client.get("/api/v1/settings").json()
        assert settings["default_limits"]["memory_mb"] == 512
        assert settings["default_limits"]["network"] is False
        assert "ctypes" in settings["blocked_imports"]
        assert settings["default_python_version"] in settings["supported_python_versions"]

    def test_health(self, client):
        health = client.get("/api/v1/health").json()
        assert health["status"] == "ok"
        assert health["sandboxes"] == 0
        assert health["active_runs"] == 0

    def test_provision_without_dependencies(self, client):
        response = client.post("/api/v1/sandboxes/provision", json={"dependencies": []})
        assert response.status_code == 200
        report = response.json()
        assert report["success"] is True
        assert report["installed_packages"] == []
        assert report["failed_packages"] == []
        assert client.get("/api/v1/sandboxes").json() == []

    def test_destroy_idle(self, client):
        response = client.post("/api/v1/sandboxes/destroy-idle")
        assert response.json() == {"destroyed": []}
