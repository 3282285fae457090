"""Configuration management with environment variable overrides."""

from pathlib import Path
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DockerSettings(BaseSettings):
    """
    Configuration for the container engine connection.

    All settings can be overridden via environment variables with DOCKER_ prefix.
    Example: DOCKER_HOST=tcp://127.0.0.1:2375 to use a TCP daemon.
    """
    model_config = SettingsConfigDict(
        env_prefix="DOCKER_",
        env_file=".env",
        extra="ignore",
    )

    host: str = Field(
        default="unix:///var/run/docker.sock",
        description="Docker daemon address",
    )

    # Timeouts (in seconds)
    # Inference images are several GB, pulls on slow links take minutes
    image_pull_timeout: int = Field(
        default=300,
        description="Timeout for image pulls (seconds)",
    )
    stop_timeout: int = Field(
        default=10,
        description="Graceful stop period before the engine kills a container (seconds)",
    )
    # A pull that times out keeps its worker until the daemon finishes it
    pull_workers: int = Field(
        default=4,
        ge=1,
        description="Concurrent image pulls; size to the expected concurrent creates",
    )


class RegistrySettings(BaseSettings):
    """
    Configuration for the backend registry and health monitor.

    All settings can be overridden via environment variables with REGISTRY_ prefix.
    Example: REGISTRY_PORT_RANGE_END=11600 to allow more backends.
    """
    model_config = SettingsConfigDict(
        env_prefix="REGISTRY_",
        env_file=".env",
        extra="ignore",
    )

    file: Path = Field(
        default=Path("./data/registry.yml"),
        description="Snapshot file for registered backends",
    )

    # Host ports handed to backend containers
    port_range_start: int = Field(default=11400, description="First allocatable host port")
    port_range_end: int = Field(default=11500, description="Last allocatable host port")
    endpoint_host: str = Field(
        default="localhost",
        description="Hostname used when building backend endpoint URLs",
    )

    health_check_enabled: bool = Field(default=True, description="Run the background health monitor")
    health_check_interval: float = Field(
        default=30.0,
        description="Delay between health sweeps (seconds)",
    )
    health_check_initial_delay: float = Field(
        default=10.0,
        description="Delay before the first health sweep (seconds)",
    )

    @model_validator(mode="after")
    def _check_port_range(self) -> "RegistrySettings":
        if self.port_range_start > self.port_range_end:
            raise ValueError(
                f"port_range_start ({self.port_range_start}) must not exceed "
                f"port_range_end ({self.port_range_end})"
            )
        return self


class RoutingSettings(BaseSettings):
    """
    Static endpoints used when no healthy registered backend matches a request.

    All settings can be overridden via environment variables with LLM_ prefix.
    """
    model_config = SettingsConfigDict(
        env_prefix="LLM_",
        env_file=".env",
        extra="ignore",
    )

    gpu_endpoint: str = Field(
        default="http://localhost:11434/api/generate",
        description="Fallback endpoint for 'gpu' and 'auto' requests",
    )
    cpu_endpoint: str = Field(
        default="http://localhost:8080/completion",
        description="Fallback endpoint for 'cpu' requests",
    )


# Singleton instances (created on first access)
_docker_settings: DockerSettings | None = None
_registry_settings: RegistrySettings | None = None
_routing_settings: RoutingSettings | None = None


def get_docker_settings() -> DockerSettings:
    """Get container engine settings."""
    global _docker_settings
    if _docker_settings is None:
        _docker_settings = DockerSettings()
    return _docker_settings


def get_registry_settings() -> RegistrySettings:
    """Get registry and health monitor settings."""
    global _registry_settings
    if _registry_settings is None:
        _registry_settings = RegistrySettings()
    return _registry_settings


def get_routing_settings() -> RoutingSettings:
    """Get fallback routing settings."""
    global _routing_settings
    if _routing_settings is None:
        _routing_settings = RoutingSettings()
    return _routing_settings
