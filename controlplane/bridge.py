"""Async bridge for consuming the blocking control plane from async contexts.

Lifecycle operations block on the Docker daemon (image pulls can take
minutes), so the FastAPI app awaits them on a thread pool instead of
running them on the event loop. Concurrent creates/deletes are safe: the
registry serializes its own mutations.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, ParamSpec, TypeVar

from .interface import BackendKind, BackendRecord, HealthStatus
from .service import ControlPlane

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Shared executor for all async bridge operations (created on first use)
_executor: ThreadPoolExecutor | None = None


def get_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="bridge-")
    return _executor


async def run_sync(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a synchronous function in the thread pool.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        The return value of func
    """
    logger.debug(f"Bridge: run_sync({func.__name__}) called")
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        get_executor(),
        lambda: func(*args, **kwargs)
    )
    logger.debug(f"Bridge: run_sync({func.__name__}) completed")
    return result


async def async_create(
    plane: ControlPlane,
    model_name: str,
    kind: BackendKind,
    custom_image: str | None = None,
    env: dict[str, str] | None = None,
) -> BackendRecord:
    """Create a backend (async wrapper). Raises CreationFailure."""
    logger.info(f"Bridge: Creating backend for {model_name} ({kind.value})")
    return await run_sync(plane.lifecycle.create, model_name, kind, custom_image, env)


async def async_delete(plane: ControlPlane, backend_id: str):
    """Delete a backend (async wrapper). Raises BackendNotFound/DeletionFailure."""
    logger.info(f"Bridge: Deleting backend {backend_id}")
    await run_sync(plane.lifecycle.delete, backend_id)


async def async_check_health(plane: ControlPlane, backend_id: str) -> HealthStatus:
    logger.debug(f"Bridge: Checking health of {backend_id}")
    return await run_sync(plane.lifecycle.check_health, backend_id)


async def async_get_logs(plane: ControlPlane, backend_id: str, lines: int) -> str:
    logger.debug(f"Bridge: Reading logs of {backend_id}")
    return await run_sync(plane.lifecycle.get_logs, backend_id, lines)


def shutdown():
    """Shutdown the bridge executor without waiting for queued work."""
    global _executor
    logger.info("Bridge: Shutting down")
    if _executor is not None:
        _executor.shutdown(wait=False, cancel_futures=True)
        _executor = None
