"""Docker-backed container orchestration.

Thin wrapper around the docker SDK. Each call blocks until the daemon
acknowledges it, and every engine error is re-raised as
OrchestrationFailure naming the operation and its target.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from .config import DockerSettings
from .exceptions import OrchestrationFailure

logger = logging.getLogger(__name__)

# Transport errors from the daemon socket surface as requests exceptions
ENGINE_ERRORS = (DockerException, RequestException)


def _short(container_id: str) -> str:
    return container_id[:12]


class DockerOrchestrator:
    """Container lifecycle operations against one Docker daemon.

    Holds no mutable state beyond the client, so one instance is shared
    by the lifecycle manager and the health monitor.
    """

    def __init__(
        self,
        client: docker.DockerClient,
        image_pull_timeout: float = 300,
        stop_timeout: int = 10,
        pull_workers: int = 4,
    ):
        self.client = client
        self.image_pull_timeout = image_pull_timeout
        self.stop_timeout = stop_timeout
        # Time spent queued behind other pulls counts against image_pull_timeout
        self._pull_executor = ThreadPoolExecutor(max_workers=pull_workers, thread_name_prefix="pull-")

    @classmethod
    def connect(cls, settings: DockerSettings) -> "DockerOrchestrator":
        """Build a client for ``settings.host`` and verify the daemon answers.

        Raises:
            OrchestrationFailure: if the daemon is unreachable. Not retried.
        """
        try:
            client = docker.DockerClient(base_url=settings.host)
            client.ping()
        except ENGINE_ERRORS as e:
            logger.error(f"Failed to initialize Docker client: {e}")
            raise OrchestrationFailure(
                "connect", settings.host, "cannot reach Docker daemon. Is Docker running?", e
            ) from e

        logger.info(f"Docker daemon connectivity verified: {settings.host}")
        return cls(
            client,
            image_pull_timeout=settings.image_pull_timeout,
            stop_timeout=settings.stop_timeout,
            pull_workers=settings.pull_workers,
        )

    # ─────────────────────────────────────────────────────────────────
    # Images
    # ─────────────────────────────────────────────────────────────────

    def ensure_image(self, image: str):
        """Pull ``image`` unless it is already present locally."""
        try:
            self.client.images.get(image)
            logger.debug(f"Image {image} already exists locally, skipping pull")
            return
        except ImageNotFound:
            logger.info(f"Image {image} not found locally, pulling from registry")
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("inspect image", image, str(e), e) from e

        # The SDK has no per-call pull deadline, so wait on it from a worker.
        # A pull that times out keeps running in the daemon and holds its worker.
        future = self._pull_executor.submit(self.client.images.pull, image)
        try:
            future.result(timeout=self.image_pull_timeout)
        except FutureTimeout as e:
            raise OrchestrationFailure(
                "pull image", image, f"timed out after {self.image_pull_timeout}s", e
            ) from e
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("pull image", image, f"pull error: {e}", e) from e

        logger.info(f"Successfully pulled image: {image}")

    # ─────────────────────────────────────────────────────────────────
    # Container lifecycle
    # ─────────────────────────────────────────────────────────────────

    def create_container(
        self,
        image: str,
        name: str,
        port_map: dict[int, int],
        env: dict[str, str] | None = None,
    ) -> str:
        """Create (but do not start) a container.

        Args:
            image: Image reference
            name: Container name, must be unique on the daemon
            port_map: Host port -> container port (TCP)
            env: Extra environment variables

        Returns:
            The engine-assigned container id.
        """
        logger.info(f"Creating container: name={name}, image={image}, ports={port_map}")
        ports = {f"{container_port}/tcp": host_port for host_port, container_port in port_map.items()}
        environment = [f"{k}={v}" for k, v in env.items()] if env else None
        try:
            container = self.client.containers.create(
                image,
                name=name,
                ports=ports,
                environment=environment,
                labels={"managed-by": "llm-control-plane"},
            )
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("create container", name, str(e), e) from e

        logger.info(f"Container created successfully: id={_short(container.id)}, name={name}")
        return container.id

    def start(self, container_id: str):
        logger.info(f"Starting container: {_short(container_id)}")
        try:
            self.client.api.start(container_id)
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("start container", container_id, str(e), e) from e
        logger.info(f"Container started successfully: {_short(container_id)}")

    def stop(self, container_id: str, grace_period: int | None = None):
        """Stop a container, letting the engine kill it after ``grace_period`` seconds."""
        timeout = self.stop_timeout if grace_period is None else grace_period
        logger.info(f"Stopping container: {_short(container_id)} (grace {timeout}s)")
        try:
            self.client.api.stop(container_id, timeout=timeout)
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("stop container", container_id, str(e), e) from e
        logger.info(f"Container stopped successfully: {_short(container_id)}")

    def remove(self, container_id: str, force: bool = True):
        logger.info(f"Removing container: {_short(container_id)} (force={force})")
        try:
            self.client.api.remove_container(container_id, force=force)
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("remove container", container_id, str(e), e) from e
        logger.info(f"Container removed successfully: {_short(container_id)}")

    # ─────────────────────────────────────────────────────────────────
    # Inspection
    # ─────────────────────────────────────────────────────────────────

    def is_healthy(self, container_id: str) -> bool:
        """True if the daemon reports the container as running.

        A missing container is reported as unhealthy rather than raised.
        """
        try:
            info = self.client.api.inspect_container(container_id)
        except NotFound:
            logger.warning(f"Container {_short(container_id)} not found during health check")
            return False
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("inspect container", container_id, str(e), e) from e

        running = bool((info.get("State") or {}).get("Running"))
        if not running:
            logger.debug(f"Container {_short(container_id)} is not running")
        return running

    def tail_logs(self, container_id: str, lines: int = 100) -> str:
        """Last ``lines`` lines of combined stdout/stderr."""
        logger.debug(f"Retrieving last {lines} lines of logs for container {_short(container_id)}")
        try:
            raw = self.client.api.logs(container_id, stdout=True, stderr=True, tail=lines)
        except ENGINE_ERRORS as e:
            raise OrchestrationFailure("read logs", container_id, str(e), e) from e
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return str(raw)

    def close(self):
        """Release the client and the pull worker threads."""
        self._pull_executor.shutdown(wait=False, cancel_futures=True)
        try:
            self.client.close()
        except ENGINE_ERRORS as e:
            logger.debug(f"Error closing Docker client: {e}")
