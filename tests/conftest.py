"""Shared fixtures: an in-memory container engine and registry/lifecycle wiring."""

import threading
import uuid

import pytest

from controlplane.exceptions import OrchestrationFailure
from controlplane.health import HealthMonitor
from controlplane.lifecycle import LifecycleManager
from controlplane.registry import BackendRegistry

PORT_START = 11400
PORT_END = 11410


class FakeEngine:
    """In-memory ContainerEngine with call recording and fault injection.

    Set ``fail_on`` to an operation name ("ensure_image", "create_container",
    "start", "stop", "remove", "is_healthy", "tail_logs") to make it raise
    OrchestrationFailure.
    """

    def __init__(self):
        self.containers: dict[str, dict] = {}
        self.images: set[str] = set()
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self._lock = threading.Lock()

    def _record(self, op: str, *args):
        with self._lock:
            self.calls.append((op, *args))
        if op in self.fail_on:
            raise OrchestrationFailure(op, str(args[0]) if args else "-", "injected fault")

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]

    def ensure_image(self, image):
        self._record("ensure_image", image)
        self.images.add(image)

    def create_container(self, image, name, port_map, env=None):
        self._record("create_container", image, name, dict(port_map), env)
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        with self._lock:
            self.containers[container_id] = {
                "image": image,
                "name": name,
                "ports": dict(port_map),
                "env": env,
                "running": False,
            }
        return container_id

    def start(self, container_id):
        self._record("start", container_id)
        self.containers[container_id]["running"] = True

    def stop(self, container_id, grace_period=None):
        self._record("stop", container_id, grace_period)
        if container_id in self.containers:
            self.containers[container_id]["running"] = False

    def remove(self, container_id, force=True):
        self._record("remove", container_id, force)
        self.containers.pop(container_id, None)

    def is_healthy(self, container_id):
        self._record("is_healthy", container_id)
        container = self.containers.get(container_id)
        return bool(container and container["running"])

    def tail_logs(self, container_id, lines=100):
        self._record("tail_logs", container_id, lines)
        return f"last {lines} lines of {container_id[:12]}\n"

    def set_running(self, container_id, running: bool):
        self.containers[container_id]["running"] = running


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def registry_path(tmp_path):
    return tmp_path / "data" / "registry.yml"


@pytest.fixture
def registry(registry_path):
    return BackendRegistry(registry_path, PORT_START, PORT_END)


@pytest.fixture
def lifecycle(registry, engine):
    return LifecycleManager(registry, engine, endpoint_host="localhost", stop_grace_period=5)


@pytest.fixture
def monitor(registry, engine):
    return HealthMonitor(registry, engine, interval=0.05, initial_delay=0)
