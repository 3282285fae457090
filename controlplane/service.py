"""Process-level wiring of the control plane.

Components are built once at startup and handed to each other explicitly;
nothing here is a module-level singleton.
"""

import logging
from dataclasses import dataclass

from .config import (
    DockerSettings,
    RegistrySettings,
    RoutingSettings,
    get_docker_settings,
    get_registry_settings,
    get_routing_settings,
)
from .health import HealthMonitor
from .interface import ContainerEngine
from .lifecycle import LifecycleManager
from .orchestrator import DockerOrchestrator
from .registry import BackendRegistry

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    """Everything the API layer needs, constructed once per process."""
    registry: BackendRegistry
    engine: ContainerEngine
    lifecycle: LifecycleManager
    monitor: HealthMonitor | None
    routing: RoutingSettings

    def start(self):
        """Start background work (the health monitor, if enabled)."""
        if self.monitor is not None:
            self.monitor.start()

    def shutdown(self, timeout: float | None = 30.0):
        """Stop the health monitor after its current sweep and release the engine.

        Running backends are left alone; they stay registered for the next start.
        """
        logger.info("Control plane shutting down")
        if self.monitor is not None:
            self.monitor.stop(timeout=timeout)
        close = getattr(self.engine, "close", None)
        if callable(close):
            close()
        logger.info("Control plane shutdown complete")


def build_control_plane(
    engine: ContainerEngine,
    registry_settings: RegistrySettings,
    routing_settings: RoutingSettings,
    stop_grace_period: int | None = None,
) -> ControlPlane:
    """Assemble the components around an already connected engine."""
    registry = BackendRegistry(
        registry_settings.file,
        registry_settings.port_range_start,
        registry_settings.port_range_end,
    )
    lifecycle = LifecycleManager(
        registry,
        engine,
        endpoint_host=registry_settings.endpoint_host,
        stop_grace_period=stop_grace_period,
    )

    monitor = None
    if registry_settings.health_check_enabled:
        monitor = HealthMonitor(
            registry,
            engine,
            interval=registry_settings.health_check_interval,
            initial_delay=registry_settings.health_check_initial_delay,
        )
    else:
        logger.info("Health monitor disabled by configuration")

    return ControlPlane(
        registry=registry,
        engine=engine,
        lifecycle=lifecycle,
        monitor=monitor,
        routing=routing_settings,
    )


def create_control_plane(
    docker_settings: DockerSettings | None = None,
    registry_settings: RegistrySettings | None = None,
    routing_settings: RoutingSettings | None = None,
) -> ControlPlane:
    """Connect to Docker and build the control plane from settings.

    Raises:
        OrchestrationFailure: if the Docker daemon is unreachable (fatal).
    """
    docker_settings = docker_settings or get_docker_settings()
    registry_settings = registry_settings or get_registry_settings()
    routing_settings = routing_settings or get_routing_settings()

    engine = DockerOrchestrator.connect(docker_settings)
    return build_control_plane(
        engine,
        registry_settings,
        routing_settings,
        stop_grace_period=docker_settings.stop_timeout,
    )
