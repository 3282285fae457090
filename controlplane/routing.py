"""Pick the inference endpoint for a request.

Dynamic backends from the registry win when they are healthy; otherwise
requests fall back to the statically configured GPU/CPU endpoints.
"""

import logging

from .config import RoutingSettings
from .interface import HealthStatus
from .registry import BackendRegistry

logger = logging.getLogger(__name__)

AUTO_SELECTORS = ("auto", "gpu")


def resolve_endpoint(registry: BackendRegistry, settings: RoutingSettings, backend: str) -> str:
    """
    Resolve a backend selector to an endpoint URL.

    Args:
        registry: Registry of running backends
        settings: Static fallback endpoints
        backend: A registered model name, or one of "auto", "gpu", "cpu"

    Returns:
        The endpoint URL to send the inference request to
    """
    record = registry.find_by_name(backend)
    if record is not None and record.health == HealthStatus.HEALTHY:
        logger.debug(f"Using dynamic backend from registry: model={backend}, endpoint={record.endpoint}")
        return record.endpoint

    if backend.lower() in AUTO_SELECTORS:
        for candidate in registry.list_all():
            if candidate.health == HealthStatus.HEALTHY:
                logger.debug(
                    f"Using dynamic backend from registry (auto-selected): "
                    f"model={candidate.model_name}, endpoint={candidate.endpoint}"
                )
                return candidate.endpoint

    endpoint = settings.cpu_endpoint if backend.lower() == "cpu" else settings.gpu_endpoint
    logger.debug(f"Using static config endpoint: backend={backend}, endpoint={endpoint}")
    return endpoint
