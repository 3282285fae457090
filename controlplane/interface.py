"""Types shared by the registry, orchestrator, lifecycle manager and health monitor."""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable


class BackendKind(str, Enum):
    """Supported backend flavors."""
    OLLAMA = "ollama"
    LLAMA_CPP = "llama_cpp"
    CUSTOM = "custom"


class HealthStatus(str, Enum):
    """Control plane's belief about whether a backend is servable."""
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"


@dataclass(frozen=True)
class KindSpec:
    """How a backend kind maps onto a container."""
    image: str | None  # None means the caller supplies it
    container_port: int
    path_suffix: str = ""


# Well-known kinds have fixed images; custom backends bring their own
# and define their own paths.
KIND_SPECS: dict[BackendKind, KindSpec] = {
    BackendKind.OLLAMA: KindSpec(
        image="ollama/ollama:latest",
        container_port=11434,
        path_suffix="/api/generate",
    ),
    BackendKind.LLAMA_CPP: KindSpec(
        image="ghcr.io/ggerganov/llama.cpp:server",
        container_port=8080,
        path_suffix="/completion",
    ),
    BackendKind.CUSTOM: KindSpec(
        image=None,
        container_port=8080,
    ),
}


@dataclass(frozen=True)
class BackendRecord:
    """One running backend.

    Records are immutable; a health change produces a new record via
    ``dataclasses.replace`` that is registered under the same id.
    """
    id: str
    model_name: str
    backend_kind: BackendKind
    container_id: str
    endpoint: str
    port: int
    created_at: datetime
    health: HealthStatus = HealthStatus.STARTING

    def to_dict(self) -> dict:
        """Plain-data form used for the snapshot file and API responses."""
        data = asdict(self)
        data["backend_kind"] = self.backend_kind.value
        data["health"] = self.health.value
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "BackendRecord":
        created_at = data["created_at"]
        if not isinstance(created_at, datetime):
            created_at = datetime.fromisoformat(str(created_at))
        return cls(
            id=str(data["id"]),
            model_name=str(data["model_name"]),
            backend_kind=BackendKind(data["backend_kind"]),
            container_id=str(data["container_id"]),
            endpoint=str(data["endpoint"]),
            port=int(data["port"]),
            created_at=created_at,
            health=HealthStatus(data.get("health", HealthStatus.STARTING.value)),
        )


@runtime_checkable
class ContainerEngine(Protocol):
    """Container operations the lifecycle manager and health monitor rely on.

    All mutating calls block until the engine acknowledges them and raise
    ``OrchestrationFailure`` on any engine-level error.
    """

    # ─────────────────────────────────────────────────────────────────
    # Images
    # ─────────────────────────────────────────────────────────────────

    def ensure_image(self, image: str) -> None:
        """Pull the image unless it already exists locally."""
        ...

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
        """Create a container with host->container port bindings. Returns its id."""
        ...

    def start(self, container_id: str) -> None:
        ...

    def stop(self, container_id: str, grace_period: int | None = None) -> None:
        ...

    def remove(self, container_id: str, force: bool = True) -> None:
        ...

    # ─────────────────────────────────────────────────────────────────
    # Inspection
    # ─────────────────────────────────────────────────────────────────

    def is_healthy(self, container_id: str) -> bool:
        """True if the engine reports the container as running."""
        ...

    def tail_logs(self, container_id: str, lines: int = 100) -> str:
        """Last lines of combined stdout/stderr (diagnostics only)."""
        ...
