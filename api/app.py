"""Control API for model backends.

Exposes create/list/get/delete for containerized backends, on-demand health
checks and logs, endpoint resolution, a thin inference proxy and an SSE
stream of registry changes. Blocking control plane calls go through
controlplane/bridge.py so they never run on the event loop.
"""

import asyncio
import json
import logging
import threading
import time
from collections import deque
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sse_starlette.sse import EventSourceResponse

from controlplane import (
    BackendKind,
    BackendNotFound,
    BackendRecord,
    ControlPlane,
    CreationFailure,
    DeletionFailure,
    InvalidBackendRequest,
    OrchestrationFailure,
    PortRangeExhausted,
    RegistryEvent,
    create_control_plane,
    resolve_endpoint,
)
from controlplane.bridge import (
    async_check_health,
    async_create,
    async_delete,
    async_get_logs,
    shutdown as bridge_shutdown,
)

from .config import config

logger = logging.getLogger("api.app")


# ─────────────────────────────────────────────────────────────────
# Registry Event Broadcasting
# ─────────────────────────────────────────────────────────────────

# Registry events queue for SSE clients; appended from worker threads
_registry_events: deque = deque(maxlen=100)
_event_counter = 0
_event_lock = threading.Lock()

# Event to signal SSE generators to stop (recreated per app lifespan)
_shutdown_event: asyncio.Event | None = None


def broadcast_registry_event(event: RegistryEvent):
    """Queue a registry change for all SSE clients."""
    global _event_counter
    with _event_lock:
        _event_counter += 1
        _registry_events.append({
            "id": _event_counter,
            "type": event.type,
            "record": event.record.to_dict(),
            "previous_health": event.previous_health.value if event.previous_health else None,
            "timestamp": time.time(),
        })
    logger.debug(f"SSE broadcast: {event.type} {event.record.id}")


def get_shutdown_event() -> asyncio.Event:
    global _shutdown_event
    if _shutdown_event is None:
        _shutdown_event = asyncio.Event()
    return _shutdown_event


# Shared HTTP client for proxying
_client: httpx.AsyncClient | None = None


def get_client() -> httpx.AsyncClient:
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=httpx.Timeout(config.proxy_timeout, connect=10.0))
    return _client


# ─────────────────────────────────────────────────────────────────
# Request/Response Models
# ─────────────────────────────────────────────────────────────────

class ModelCreateRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_name: str
    backend_kind: BackendKind
    custom_image: str | None = None
    env: dict[str, str] | None = None

    @field_validator("model_name")
    @classmethod
    def _model_name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Model name is required")
        return v


class ModelBackendResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    model_name: str
    backend_kind: str
    endpoint: str
    port: int
    created_at: str
    health: str

    @classmethod
    def from_record(cls, record: BackendRecord) -> "ModelBackendResponse":
        return cls(
            id=record.id,
            model_name=record.model_name,
            backend_kind=record.backend_kind.value,
            endpoint=record.endpoint,
            port=record.port,
            created_at=record.created_at.isoformat(),
            health=record.health.value,
        )


class HealthResponse(BaseModel):
    id: str
    health: str


class LogsResponse(BaseModel):
    id: str
    lines: int
    logs: str


class ResolveResponse(BaseModel):
    backend: str
    endpoint: str


class ProxyRequest(BaseModel):
    backend: str = "auto"
    payload: dict = Field(default_factory=dict)


class StatusResponse(BaseModel):
    backends: int
    monitor_running: bool
    last_sweep_at: float | None
    next_port: int
    port_range: tuple[int, int]


def error_body(status: int, message: str) -> JSONResponse:
    return JSONResponse({"status": status, "message": message}, status_code=status)


# ─────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/api")


def get_plane(request: Request) -> ControlPlane:
    return request.app.state.plane


@router.post("/models", status_code=201)
async def api_create_model(
    req: ModelCreateRequest,
    response: Response,
    plane: ControlPlane = Depends(get_plane),
) -> ModelBackendResponse:
    """Create and start a model backend."""
    logger.info(f"API: POST /api/models - Creating model: {req.model_name}")
    record = await async_create(plane, req.model_name, req.backend_kind, req.custom_image, req.env)
    response.headers["Location"] = f"/api/models/{record.id}"
    return ModelBackendResponse.from_record(record)


@router.get("/models")
def api_list_models(plane: ControlPlane = Depends(get_plane)) -> list[ModelBackendResponse]:
    logger.debug("API: GET /api/models")
    return [ModelBackendResponse.from_record(r) for r in plane.lifecycle.list_backends()]


@router.get("/models/{backend_id}")
def api_get_model(backend_id: str, plane: ControlPlane = Depends(get_plane)) -> ModelBackendResponse:
    logger.debug(f"API: GET /api/models/{backend_id}")
    return ModelBackendResponse.from_record(plane.lifecycle.get_backend(backend_id))


@router.delete("/models/{backend_id}", status_code=204)
async def api_delete_model(backend_id: str, plane: ControlPlane = Depends(get_plane)) -> Response:
    """Stop and remove a model backend."""
    logger.info(f"API: DELETE /api/models/{backend_id}")
    await async_delete(plane, backend_id)
    return Response(status_code=204)


@router.get("/models/{backend_id}/health")
async def api_model_health(backend_id: str, plane: ControlPlane = Depends(get_plane)) -> HealthResponse:
    """Check a backend's container now instead of waiting for the next sweep."""
    logger.debug(f"API: GET /api/models/{backend_id}/health")
    health = await async_check_health(plane, backend_id)
    return HealthResponse(id=backend_id, health=health.value)


@router.get("/models/{backend_id}/logs")
async def api_model_logs(
    backend_id: str,
    lines: int = Query(default=100, ge=1, le=10000),
    plane: ControlPlane = Depends(get_plane),
) -> LogsResponse:
    logger.debug(f"API: GET /api/models/{backend_id}/logs?lines={lines}")
    logs = await async_get_logs(plane, backend_id, lines)
    return LogsResponse(id=backend_id, lines=lines, logs=logs)


@router.get("/resolve/{backend}")
def api_resolve(backend: str, plane: ControlPlane = Depends(get_plane)) -> ResolveResponse:
    """Show which endpoint a request for ``backend`` would be sent to."""
    return ResolveResponse(
        backend=backend,
        endpoint=resolve_endpoint(plane.registry, plane.routing, backend),
    )


@router.post("/generate")
async def api_generate(req: ProxyRequest, plane: ControlPlane = Depends(get_plane)) -> Response:
    """Forward a JSON inference payload to the resolved backend endpoint."""
    url = resolve_endpoint(plane.registry, plane.routing, req.backend)
    logger.debug(f"Proxying POST /api/generate -> {url}")
    try:
        resp = await get_client().post(url, json=req.payload)
    except httpx.RequestError as e:
        logger.error(f"Proxy error: {e}")
        return error_body(502, f"Backend request failed: {e}")

    return Response(
        content=resp.content,
        status_code=resp.status_code,
        media_type=resp.headers.get("content-type", "application/json"),
    )


@router.get("/status")
def api_status(plane: ControlPlane = Depends(get_plane)) -> StatusResponse:
    registry = plane.registry
    monitor = plane.monitor
    return StatusResponse(
        backends=len(registry),
        monitor_running=monitor.is_running() if monitor else False,
        last_sweep_at=monitor.last_sweep_at if monitor else None,
        next_port=registry.next_port,
        port_range=(registry.port_range_start, registry.port_range_end),
    )


@router.get("/events")
async def api_events(request: Request):
    """Server-Sent Events stream of registry changes.

    Each event carries the type (registered, unregistered, health_changed)
    and the record as it is after the change.
    """
    logger.debug("API: SSE client connected to /api/events")
    shutdown_event = get_shutdown_event()

    async def event_generator():
        with _event_lock:
            last_event_id = _event_counter

        while not shutdown_event.is_set():
            if await request.is_disconnected():
                logger.debug("SSE client disconnected")
                break

            with _event_lock:
                pending = [e for e in _registry_events if e["id"] > last_event_id]
            for event in pending:
                last_event_id = event["id"]
                yield {"event": "registry", "id": str(event["id"]), "data": json.dumps(event)}

            await asyncio.sleep(0.5)

    return EventSourceResponse(event_generator())


# ─────────────────────────────────────────────────────────────────
# Error Handlers
# ─────────────────────────────────────────────────────────────────

async def handle_not_found(request: Request, exc: BackendNotFound) -> JSONResponse:
    logger.warning(f"Model not found: {exc}")
    return error_body(404, str(exc))


async def handle_creation_failure(request: Request, exc: CreationFailure) -> JSONResponse:
    if isinstance(exc.cause, InvalidBackendRequest):
        return error_body(400, str(exc))
    if isinstance(exc.cause, PortRangeExhausted):
        return error_body(503, str(exc))
    logger.error(f"Model creation failed: {exc}")
    return error_body(500, str(exc))


async def handle_deletion_failure(request: Request, exc: DeletionFailure) -> JSONResponse:
    logger.error(f"Model deletion failed: {exc}")
    return error_body(500, str(exc))


async def handle_orchestration_failure(request: Request, exc: OrchestrationFailure) -> JSONResponse:
    logger.error(f"Container engine error: {exc}")
    return error_body(502, str(exc))


# ─────────────────────────────────────────────────────────────────
# Application
# ─────────────────────────────────────────────────────────────────

def create_app(plane: ControlPlane | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        plane: Pre-built control plane (tests). If None, the lifespan connects
               to Docker using the environment configuration.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global _shutdown_event, _client
        logger.info("Control API starting up")
        _shutdown_event = asyncio.Event()

        app.state.plane = plane if plane is not None else create_control_plane()
        app.state.plane.registry.on_change(broadcast_registry_event)
        app.state.plane.start()

        try:
            yield  # Application runs here
        except asyncio.CancelledError:
            logger.debug("Lifespan cancelled (shutdown signal)")
        finally:
            _shutdown_event.set()
            logger.info("Control API shutting down")
            if _client:
                try:
                    await _client.aclose()
                except Exception as e:
                    logger.debug(f"Error closing HTTP client: {e}")
                _client = None
            app.state.plane.shutdown()
            bridge_shutdown()
            logger.info("Control API shutdown complete")

    app = FastAPI(title="LLM Backend Control Plane", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(BackendNotFound, handle_not_found)
    app.add_exception_handler(CreationFailure, handle_creation_failure)
    app.add_exception_handler(DeletionFailure, handle_deletion_failure)
    app.add_exception_handler(OrchestrationFailure, handle_orchestration_failure)
    return app


app = create_app()
