"""Control plane for containerized LLM backends."""

from .exceptions import (
    BackendNotFound,
    ControlPlaneError,
    CreationFailure,
    DeletionFailure,
    ErrorKind,
    InvalidBackendRequest,
    OrchestrationFailure,
    PortRangeExhausted,
)
from .health import HealthMonitor, SweepResult
from .interface import BackendKind, BackendRecord, ContainerEngine, HealthStatus
from .lifecycle import LifecycleManager
from .registry import BackendRegistry, RegistryEvent
from .routing import resolve_endpoint
from .service import ControlPlane, build_control_plane, create_control_plane

__all__ = [
    # Interface
    "BackendKind",
    "BackendRecord",
    "ContainerEngine",
    "HealthStatus",
    # Errors
    "ControlPlaneError",
    "ErrorKind",
    "InvalidBackendRequest",
    "OrchestrationFailure",
    "PortRangeExhausted",
    "BackendNotFound",
    "CreationFailure",
    "DeletionFailure",
    # Components
    "BackendRegistry",
    "RegistryEvent",
    "LifecycleManager",
    "HealthMonitor",
    "SweepResult",
    "resolve_endpoint",
    # Wiring
    "ControlPlane",
    "build_control_plane",
    "create_control_plane",
]
