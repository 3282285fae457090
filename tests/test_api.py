"""Tests for the control API, run against an in-memory container engine."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from api.app import _registry_events, broadcast_registry_event, create_app
from controlplane import RegistryEvent, build_control_plane
from controlplane.config import RegistrySettings, RoutingSettings
from controlplane.interface import HealthStatus

from .conftest import FakeEngine

GPU = "http://gpu-host:11434/api/generate"


@pytest.fixture
def plane(tmp_path):
    registry_settings = RegistrySettings(
        file=tmp_path / "registry.yml",
        port_range_start=11400,
        port_range_end=11401,
        health_check_enabled=False,
    )
    routing = RoutingSettings(gpu_endpoint=GPU, cpu_endpoint="http://cpu-host:8080/completion")
    return build_control_plane(FakeEngine(), registry_settings, routing, stop_grace_period=1)


@pytest.fixture
def client(plane):
    with TestClient(create_app(plane)) as c:
        yield c


def create_model(client, name="mistral:7b", kind="ollama", **extra):
    return client.post("/api/models", json={"model_name": name, "backend_kind": kind, **extra})


class TestModels:

    def test_create(self, client, plane):
        resp = create_model(client)

        assert resp.status_code == 201
        body = resp.json()
        assert body["model_name"] == "mistral:7b"
        assert body["backend_kind"] == "ollama"
        assert body["health"] == "starting"
        assert body["port"] == 11400
        assert body["endpoint"] == "http://localhost:11400/api/generate"
        assert resp.headers["location"] == f"/api/models/{body['id']}"
        assert body["id"] in plane.registry

    def test_list_and_get(self, client):
        created = create_model(client).json()

        listed = client.get("/api/models").json()
        assert [m["id"] for m in listed] == [created["id"]]

        resp = client.get(f"/api/models/{created['id']}")
        assert resp.status_code == 200
        assert resp.json() == created

    def test_get_unknown(self, client):
        resp = client.get("/api/models/missing")

        assert resp.status_code == 404
        assert resp.json() == {"status": 404, "message": "Model backend not found: missing"}

    def test_delete(self, client, plane):
        created = create_model(client).json()

        resp = client.delete(f"/api/models/{created['id']}")

        assert resp.status_code == 204
        assert client.get(f"/api/models/{created['id']}").status_code == 404
        assert len(plane.registry) == 0

    def test_delete_unknown(self, client):
        assert client.delete("/api/models/missing").status_code == 404

    def test_delete_engine_failure(self, client, plane):
        created = create_model(client).json()
        plane.engine.fail_on.add("remove")

        resp = client.delete(f"/api/models/{created['id']}")

        assert resp.status_code == 500
        assert created["id"] in plane.registry

    def test_custom_without_image_is_bad_request(self, client, plane):
        resp = create_model(client, name="phi", kind="custom")

        assert resp.status_code == 400
        assert "Custom image name is required" in resp.json()["message"]
        assert len(plane.registry) == 0

    def test_engine_failure_on_create(self, client, plane):
        plane.engine.fail_on.add("start")

        resp = create_model(client)

        assert resp.status_code == 500
        assert len(plane.registry) == 0

    def test_port_range_exhausted(self, client):
        assert create_model(client, name="a").status_code == 201
        assert create_model(client, name="b").status_code == 201

        resp = create_model(client, name="c")

        assert resp.status_code == 503
        assert "11400-11401" in resp.json()["message"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"model_name": "   ", "backend_kind": "ollama"},
            {"model_name": "mistral", "backend_kind": "vllm"},
            {"backend_kind": "ollama"},
        ],
    )
    def test_invalid_request(self, client, payload):
        assert client.post("/api/models", json=payload).status_code == 422


class TestInspection:

    def test_health(self, client, plane):
        created = create_model(client).json()

        resp = client.get(f"/api/models/{created['id']}/health")
        assert resp.json() == {"id": created["id"], "health": "healthy"}

        plane.engine.set_running(plane.registry.get(created["id"]).container_id, False)
        resp = client.get(f"/api/models/{created['id']}/health")
        assert resp.json()["health"] == "unhealthy"

    def test_health_unknown(self, client):
        assert client.get("/api/models/missing/health").status_code == 404

    def test_logs(self, client, plane):
        created = create_model(client).json()
        container_id = plane.registry.get(created["id"]).container_id

        resp = client.get(f"/api/models/{created['id']}/logs", params={"lines": 5})

        assert resp.status_code == 200
        assert resp.json() == {
            "id": created["id"],
            "lines": 5,
            "logs": f"last 5 lines of {container_id[:12]}\n",
        }

    def test_logs_engine_failure(self, client, plane):
        created = create_model(client).json()
        plane.engine.fail_on.add("tail_logs")

        assert client.get(f"/api/models/{created['id']}/logs").status_code == 502

    def test_logs_line_bounds(self, client):
        created = create_model(client).json()
        assert client.get(f"/api/models/{created['id']}/logs", params={"lines": 0}).status_code == 422

    def test_status(self, client):
        create_model(client)

        body = client.get("/api/status").json()

        assert body == {
            "backends": 1,
            "monitor_running": False,
            "last_sweep_at": None,
            "next_port": 11401,
            "port_range": [11400, 11401],
        }


class TestRouting:

    def test_resolve_falls_back_until_healthy(self, client, plane):
        created = create_model(client).json()
        assert client.get("/api/resolve/mistral:7b").json()["endpoint"] == GPU

        plane.registry.update_health(created["id"], HealthStatus.HEALTHY)

        resp = client.get("/api/resolve/mistral:7b")
        assert resp.json() == {"backend": "mistral:7b", "endpoint": created["endpoint"]}

    def test_generate_proxies_payload(self, client):
        upstream = AsyncMock()
        upstream.post.return_value = httpx.Response(200, json={"response": "hello"})

        with patch("api.app.get_client", return_value=upstream):
            resp = client.post("/api/generate", json={"backend": "gpu", "payload": {"prompt": "hi"}})

        assert resp.status_code == 200
        assert resp.json() == {"response": "hello"}
        upstream.post.assert_awaited_once_with(GPU, json={"prompt": "hi"})

    def test_generate_upstream_unreachable(self, client):
        upstream = AsyncMock()
        upstream.post.side_effect = httpx.ConnectError("connection refused")

        with patch("api.app.get_client", return_value=upstream):
            resp = client.post("/api/generate", json={"payload": {"prompt": "hi"}})

        assert resp.status_code == 502
        assert "Backend request failed" in resp.json()["message"]


class TestEvents:

    def test_registry_changes_are_queued(self, client, plane):
        _registry_events.clear()

        created = create_model(client).json()
        client.delete(f"/api/models/{created['id']}")

        types = [e["type"] for e in _registry_events]
        assert types == ["registered", "health_changed", "unregistered"]
        assert _registry_events[1]["previous_health"] == "starting"
        assert _registry_events[1]["record"]["health"] == "stopped"

    def test_event_ids_increase(self, plane):
        _registry_events.clear()
        record = plane.lifecycle.create("a", "ollama")

        broadcast_registry_event(RegistryEvent("registered", record))
        broadcast_registry_event(RegistryEvent("unregistered", record))

        first, second = list(_registry_events)[-2:]
        assert second["id"] == first["id"] + 1
        assert first["record"]["id"] == record.id
