"""Failure taxonomy for the control plane.

Every error carries an ``ErrorKind`` so callers can branch on ``err.kind``
and cover all cases. Engine errors never leave the orchestrator unwrapped.
"""

from enum import Enum


class ErrorKind(str, Enum):
    ORCHESTRATION = "orchestration"
    PORT_RANGE_EXHAUSTED = "port_range_exhausted"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    CREATION = "creation"
    DELETION = "deletion"


class ControlPlaneError(Exception):
    """Base class for all control plane errors."""
    kind: ErrorKind


class OrchestrationFailure(ControlPlaneError):
    """A container engine call failed (unreachable, pull, create, start, stop, remove)."""
    kind = ErrorKind.ORCHESTRATION

    def __init__(self, operation: str, target: str, message: str, cause: BaseException | None = None):
        self.operation = operation
        self.target = target
        self.cause = cause
        super().__init__(f"{operation} failed for {target}: {message}")


class PortRangeExhausted(ControlPlaneError):
    """The allocator has handed out every port in the configured range."""
    kind = ErrorKind.PORT_RANGE_EXHAUSTED

    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(
            f"Port range {start}-{end} is fully allocated. "
            "Consider widening REGISTRY_PORT_RANGE_END."
        )


class BackendNotFound(ControlPlaneError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, backend_id: str):
        self.backend_id = backend_id
        super().__init__(f"Model backend not found: {backend_id}")


class InvalidBackendRequest(ControlPlaneError, ValueError):
    """A create request that cannot be turned into a container."""
    kind = ErrorKind.INVALID_REQUEST


class CreationFailure(ControlPlaneError):
    """The create workflow failed; no record was registered."""
    kind = ErrorKind.CREATION

    def __init__(self, model_name: str, cause: BaseException, cleanup_succeeded: bool = True):
        self.model_name = model_name
        self.cause = cause
        self.cleanup_succeeded = cleanup_succeeded
        message = f"Failed to create model {model_name}: {cause}"
        if not cleanup_succeeded:
            message += " (container cleanup also failed)"
        super().__init__(message)


class DeletionFailure(ControlPlaneError):
    """Stopping or removing the container failed; the record was kept."""
    kind = ErrorKind.DELETION

    def __init__(self, backend_id: str, cause: BaseException):
        self.backend_id = backend_id
        self.cause = cause
        super().__init__(f"Failed to delete model {backend_id}: {cause}")
