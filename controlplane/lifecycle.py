"""Create/delete workflows for model backends.

The lifecycle manager is the only component that creates or removes
containers. It composes the orchestrator (container state) with the
registry (durable state) and rolls back partial work when a step fails.
"""

import logging
import re
import uuid
from datetime import datetime

from .exceptions import (
    CreationFailure,
    DeletionFailure,
    InvalidBackendRequest,
    OrchestrationFailure,
)
from .interface import (
    KIND_SPECS,
    BackendKind,
    BackendRecord,
    ContainerEngine,
    HealthStatus,
)
from .registry import BackendRegistry

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")


def next_health(running: bool) -> HealthStatus:
    """Health a record should have given the engine's liveness answer."""
    return HealthStatus.HEALTHY if running else HealthStatus.UNHEALTHY


def probe(engine: ContainerEngine, container_id: str) -> bool:
    """Ask the engine whether a container runs; any error counts as 'no'."""
    try:
        return engine.is_healthy(container_id)
    except Exception as e:
        logger.warning(f"Health check failed for container {container_id[:12]}: {e}")
        return False


def container_name(model_name: str, backend_id: str) -> str:
    """Docker-safe container name, e.g. ``llm-mistral-7b-1a2b3c4d``."""
    sanitized = _UNSAFE_NAME_CHARS.sub("-", model_name)
    return f"llm-{sanitized}-{backend_id[:8]}"


def resolve_image(kind: BackendKind, custom_image: str | None = None) -> tuple[str, int]:
    """Image reference and container-internal port for a backend kind.

    Raises:
        InvalidBackendRequest: for a custom kind without an image.
    """
    spec = KIND_SPECS[kind]
    if spec.image is not None:
        return spec.image, spec.container_port
    if custom_image is None or not custom_image.strip():
        raise InvalidBackendRequest("Custom image name is required for custom backend type")
    return custom_image.strip(), spec.container_port


def build_endpoint(host: str, port: int, kind: BackendKind) -> str:
    """Inference URL for a backend, e.g. ``http://localhost:11401/api/generate``."""
    return f"http://{host}:{port}{KIND_SPECS[kind].path_suffix}"


class LifecycleManager:
    """Creates, deletes and inspects model backends.

    Example:
        manager = LifecycleManager(registry, orchestrator)
        record = manager.create("mistral:7b", BackendKind.OLLAMA)
        manager.check_health(record.id)
        manager.delete(record.id)
    """

    def __init__(
        self,
        registry: BackendRegistry,
        engine: ContainerEngine,
        endpoint_host: str = "localhost",
        stop_grace_period: int | None = None,
    ):
        self.registry = registry
        self.engine = engine
        self.endpoint_host = endpoint_host
        self.stop_grace_period = stop_grace_period

    # ─────────────────────────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────────────────────────

    def create(
        self,
        model_name: str,
        kind: BackendKind,
        custom_image: str | None = None,
        env: dict[str, str] | None = None,
    ) -> BackendRecord:
        """
        Start a container for a model and register it.

        Args:
            model_name: Logical model name (e.g., "mistral:7b-instruct")
            kind: Backend kind
            custom_image: Image reference, required for BackendKind.CUSTOM
            env: Extra environment variables for the container

        Returns:
            The registered record, with health STARTING

        Raises:
            CreationFailure: wrapping the first failure; nothing is registered
        """
        kind = BackendKind(kind)
        logger.info(f"Creating model backend: model={model_name}, type={kind.value}")
        backend_id = str(uuid.uuid4())
        port: int | None = None
        container_id: str | None = None

        try:
            port = self.registry.allocate_port()
            logger.debug(f"Allocated port {port} for model {model_name}")

            image, container_port = resolve_image(kind, custom_image)
            logger.info(f"Using Docker image: {image}, container port: {container_port}")

            self.engine.ensure_image(image)
            container_id = self.engine.create_container(
                image,
                container_name(model_name, backend_id),
                {port: container_port},
                env,
            )
            self.engine.start(container_id)

            record = BackendRecord(
                id=backend_id,
                model_name=model_name,
                backend_kind=kind,
                container_id=container_id,
                endpoint=build_endpoint(self.endpoint_host, port, kind),
                port=port,
                created_at=datetime.now(),
                health=HealthStatus.STARTING,
            )
        except Exception as e:
            logger.error(f"Failed to create model backend {model_name}: {e}")
            cleaned = self._rollback(container_id, port)
            raise CreationFailure(model_name, e, cleanup_succeeded=cleaned) from e

        self.registry.register(record)
        logger.info(f"Model backend created successfully: id={backend_id}, endpoint={record.endpoint}")
        return record

    def _rollback(self, container_id: str | None, port: int | None) -> bool:
        """Best-effort undo of a partial create. Returns False if cleanup failed."""
        cleaned = True
        if container_id is not None:
            try:
                self.engine.stop(container_id, self.stop_grace_period)
            except Exception as e:
                # A container that never started may refuse to stop; remove is forced anyway
                logger.warning(f"Failed to stop container after error: {e}")
            try:
                self.engine.remove(container_id, force=True)
            except Exception as e:
                logger.warning(f"Failed to cleanup container after error: {e}")
                cleaned = False

        if port is not None:
            self.registry.release_port(port)
        return cleaned

    # ─────────────────────────────────────────────────────────────────
    # Delete
    # ─────────────────────────────────────────────────────────────────

    def delete(self, backend_id: str):
        """
        Stop and remove a backend's container, then unregister it.

        Raises:
            BackendNotFound: if no record has this id
            DeletionFailure: if the container could not be stopped/removed;
                the record is kept because removal is unconfirmed
        """
        logger.info(f"Deleting model backend: id={backend_id}")
        record = self.registry.require(backend_id)

        try:
            self.engine.stop(record.container_id, self.stop_grace_period)
            self.engine.remove(record.container_id, force=True)
        except OrchestrationFailure as e:
            logger.error(f"Failed to delete model backend {backend_id}: {e}")
            raise DeletionFailure(backend_id, e) from e

        self.registry.update_health(backend_id, HealthStatus.STOPPED)
        self.registry.release_port(record.port)
        self.registry.unregister(backend_id)
        logger.info(f"Model backend deleted successfully: id={backend_id}, model={record.model_name}")

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def list_backends(self) -> list[BackendRecord]:
        return self.registry.list_all()

    def get_backend(self, backend_id: str) -> BackendRecord:
        """Raises BackendNotFound if absent."""
        return self.registry.require(backend_id)

    def check_health(self, backend_id: str) -> HealthStatus:
        """Re-check a backend's container now and persist any change."""
        record = self.registry.require(backend_id)
        if record.health == HealthStatus.STOPPED:
            return record.health

        new_status = next_health(probe(self.engine, record.container_id))
        previous = self.registry.update_health(backend_id, new_status)
        if previous == HealthStatus.STOPPED:
            return previous
        if previous is not None and previous != new_status:
            logger.info(f"Model {backend_id} health updated: {previous.value} -> {new_status.value}")
        return new_status

    def get_logs(self, backend_id: str, lines: int = 100) -> str:
        """Tail a backend's container logs (raises OrchestrationFailure on engine errors)."""
        record = self.registry.require(backend_id)
        return self.engine.tail_logs(record.container_id, lines)
