"""Background health monitoring for registered backends.

A single worker thread sweeps the registry on a fixed delay: the next sweep
is scheduled only after the previous one finished, so slow engine responses
never stack up concurrent sweeps.

Per-record state machine:
- starting -> healthy | unhealthy
- healthy <-> unhealthy
- stopped is terminal and only set by the delete workflow

Key components:
- SweepResult: Counters returned by one sweep
- HealthMonitor: Owns the worker thread and the sweep logic
"""

import logging
import threading
import time
from dataclasses import dataclass

from .interface import ContainerEngine, HealthStatus
from .lifecycle import next_health, probe
from .registry import BackendRegistry

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    """Outcome of one pass over the registry.

    Attributes:
        checked: Records examined
        healthy: Records whose container is running
        unhealthy: Records whose container is missing, stopped or unreachable
        changed: Records whose stored health was rewritten
    """
    checked: int = 0
    healthy: int = 0
    unhealthy: int = 0
    changed: int = 0


class HealthMonitor:
    """Reconciles registry health fields with live container state.

    Example:
        monitor = HealthMonitor(registry, orchestrator, interval=30, initial_delay=10)
        monitor.start()
        ...
        monitor.stop()  # lets an in-flight sweep finish
    """

    def __init__(
        self,
        registry: BackendRegistry,
        engine: ContainerEngine,
        interval: float = 30.0,
        initial_delay: float = 10.0,
    ):
        self.registry = registry
        self.engine = engine
        self.interval = interval
        self.initial_delay = initial_delay

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_sweep_at: float | None = None

        logger.debug(f"HealthMonitor initialized (interval={interval}s, initial_delay={initial_delay}s)")

    def sweep(self) -> SweepResult:
        """Check every registered backend once and persist changed health."""
        result = SweepResult()
        records = self.registry.list_all()
        if not records:
            logger.debug("No models registered, skipping health check")
            return result

        logger.debug(f"Running health check for {len(records)} registered models")
        for record in records:
            if record.health == HealthStatus.STOPPED:
                continue

            result.checked += 1
            running = probe(self.engine, record.container_id)
            new_status = next_health(running)
            if running:
                result.healthy += 1
            else:
                result.unhealthy += 1

            if record.health == new_status:
                continue

            previous = self.registry.update_health(record.id, new_status)
            if previous in (None, new_status, HealthStatus.STOPPED):
                # Deleted, stopped or already updated since the listing
                continue

            result.changed += 1
            logger.info(
                f"Model {record.model_name} health changed: {previous.value} -> {new_status.value} "
                f"(container: {record.container_id[:12]})"
            )

        self.last_sweep_at = time.time()
        logger.debug(f"Health check complete: {result.healthy} healthy, {result.unhealthy} unhealthy")
        return result

    # ─────────────────────────────────────────────────────────────────
    # Worker thread
    # ─────────────────────────────────────────────────────────────────

    def start(self):
        """Start the background sweep thread (no-op if already running)."""
        if self.is_running():
            logger.debug("Health monitor already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="health-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Starting model health monitor (interval: {self.interval}s)")

    def stop(self, timeout: float | None = None):
        """Signal the worker to exit and wait for an in-flight sweep to finish."""
        if self._thread is None:
            return

        logger.info("Stopping model health monitor")
        self._stop_event.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Health monitor did not stop within timeout")
        else:
            self._thread = None
            logger.info("Model health monitor stopped")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        # Event.wait doubles as an interruptible sleep
        if self._stop_event.wait(self.initial_delay):
            return

        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Error in model health monitor")

            if self._stop_event.wait(self.interval):
                break
