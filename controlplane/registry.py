"""Backend registry - single source of truth for running backends.

Holds one BackendRecord per live container and is the only issuer of host
ports. Every mutation is written to a YAML snapshot so the registry survives
restarts.

Concurrency model:
- Writers (register, unregister, update_health, allocate_port) are serialized
  by one lock.
- Readers never lock. They see the record map published by the last
  completed mutation; the map is replaced, never modified in place.
"""

import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Iterator

import yaml

from .exceptions import BackendNotFound, PortRangeExhausted
from .interface import BackendRecord, HealthStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEvent:
    """Change notification delivered to registry listeners."""
    type: str  # "registered", "unregistered", "health_changed"
    record: BackendRecord
    previous_health: HealthStatus | None = None


class BackendRegistry:
    """Durable, concurrent directory of running backends.

    Example:
        registry = BackendRegistry(Path("data/registry.yml"), 11400, 11500)
        port = registry.allocate_port()
        registry.register(record)
        registry.on_change(lambda e: print(e.type, e.record.id))
    """

    def __init__(self, path: Path, port_range_start: int, port_range_end: int):
        """Create the registry and load the snapshot at ``path`` if present.

        Args:
            path: Snapshot file. A ``.bak`` sibling keeps the previous version.
            port_range_start: First allocatable host port.
            port_range_end: Last allocatable host port (inclusive).
        """
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + ".bak")
        self.port_range_start = port_range_start
        self.port_range_end = port_range_end

        self._records: dict[str, BackendRecord] = {}
        self._next_port = port_range_start
        self._write_lock = threading.Lock()

        self._listeners: list[Callable[[RegistryEvent], None]] = []
        self._listeners_lock = threading.Lock()

        self._load()
        logger.info(
            f"Registry initialized: {len(self._records)} entries loaded, "
            f"port range {port_range_start}-{port_range_end}, next port {self._next_port}"
        )

    # ─────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────

    def register(self, record: BackendRecord):
        """Insert or replace a record keyed by its id and persist the snapshot."""
        with self._write_lock:
            records = dict(self._records)
            records[record.id] = record
            self._records = records
            self._save(records)
        logger.info(
            f"Registered model backend: id={record.id}, model={record.model_name}, port={record.port}"
        )
        self._notify(RegistryEvent("registered", record))

    def unregister(self, backend_id: str):
        """Remove a record if present and persist the snapshot."""
        with self._write_lock:
            if backend_id not in self._records:
                removed = None
            else:
                records = dict(self._records)
                removed = records.pop(backend_id)
                self._records = records
                self._save(records)

        if removed is None:
            logger.warning(f"Attempted to unregister non-existent model: id={backend_id}")
            return
        logger.info(f"Unregistered model backend: id={backend_id}, model={removed.model_name}")
        self._notify(RegistryEvent("unregistered", removed))

    def update_health(self, backend_id: str, health: HealthStatus) -> HealthStatus | None:
        """Set the health of an existing record.

        Writes only when the value changes. A record removed concurrently is
        not brought back, and a stopped record stays stopped.

        Returns:
            The previous health, or None if the record no longer exists.
        """
        with self._write_lock:
            current = self._records.get(backend_id)
            if current is None:
                return None
            if current.health in (health, HealthStatus.STOPPED):
                return current.health
            updated = replace(current, health=health)
            records = dict(self._records)
            records[backend_id] = updated
            self._records = records
            self._save(records)

        self._notify(RegistryEvent("health_changed", updated, previous_health=current.health))
        return current.health

    # ─────────────────────────────────────────────────────────────────
    # Reads (lock-free)
    # ─────────────────────────────────────────────────────────────────

    def get(self, backend_id: str) -> BackendRecord | None:
        """Get a record by id."""
        return self._records.get(backend_id)

    def require(self, backend_id: str) -> BackendRecord:
        """Get a record by id, raising BackendNotFound if absent."""
        record = self._records.get(backend_id)
        if record is None:
            raise BackendNotFound(backend_id)
        return record

    def list_all(self) -> list[BackendRecord]:
        """Point-in-time copy of all records in registration order."""
        return list(self._records.values())

    def find_by_name(self, model_name: str) -> BackendRecord | None:
        """First record (registration order) with the given model name."""
        for record in self._records.values():
            if record.model_name == model_name:
                return record
        return None

    def __iter__(self) -> Iterator[BackendRecord]:
        return iter(self.list_all())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, backend_id: str) -> bool:
        return backend_id in self._records

    # ─────────────────────────────────────────────────────────────────
    # Port allocation
    # ─────────────────────────────────────────────────────────────────

    def allocate_port(self) -> int:
        """Hand out the next unused port from the configured range.

        Ports come from a monotonic counter; released ports are not reused
        within the process lifetime.

        Raises:
            PortRangeExhausted: once the counter passes the end of the range.
        """
        with self._write_lock:
            in_use = {r.port for r in self._records.values()}
            port = self._next_port
            while port in in_use:
                port += 1
            if port > self.port_range_end:
                raise PortRangeExhausted(self.port_range_start, self.port_range_end)
            self._next_port = port + 1

        logger.debug(f"Allocated port: {port}")
        return port

    def release_port(self, port: int):
        """Record that a port is no longer needed.

        Ports are not returned to the pool. Long create/delete churn will
        eventually exhaust the range; restart the process (the counter is
        reseeded from the snapshot) or widen the range.
        """
        remaining = self.port_range_end - self._next_port + 1
        logger.debug(f"Port {port} released (not recycled, {max(remaining, 0)} ports left in range)")

    @property
    def next_port(self) -> int:
        return self._next_port

    # ─────────────────────────────────────────────────────────────────
    # Listeners
    # ─────────────────────────────────────────────────────────────────

    def on_change(self, callback: Callable[[RegistryEvent], None]):
        """Register a callback invoked after every mutation."""
        with self._listeners_lock:
            self._listeners.append(callback)
        logger.debug(f"Registered registry listener, total={len(self._listeners)}")

    def _notify(self, event: RegistryEvent):
        with self._listeners_lock:
            listeners = list(self._listeners)

        for cb in listeners:
            try:
                cb(event)
            except Exception as e:
                logger.warning(f"Registry listener error: {e}")

    # ─────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────

    def _save(self, records: dict[str, BackendRecord]):
        """Write the snapshot: temp file, copy old file to .bak, atomic rename.

        Called with the write lock held. Failures are logged; the in-memory
        registry stays authoritative.
        """
        payload = {"entries": [r.to_dict() for r in records.values()]}
        tmp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(payload, f, sort_keys=False)

            if self.path.exists():
                shutil.copy2(self.path, self.backup_path)

            os.replace(tmp_path, self.path)
            tmp_path = None
            logger.debug(f"Registry saved to file: {self.path} ({len(records)} entries)")
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to save registry to file {self.path}: {e}")
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass

    def _load(self):
        """Restore records from the snapshot file and reseed the port counter."""
        if not self.path.exists():
            logger.info(f"Registry file not found, starting with empty registry: {self.path}")
            return

        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
            entries = data.get("entries") or []
            records: dict[str, BackendRecord] = {}
            for entry in entries:
                record = BackendRecord.from_dict(entry)
                records[record.id] = record
        except (OSError, yaml.YAMLError, AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to load registry from file {self.path}: {e}")
            return

        self._records = records
        highest = max((r.port for r in records.values()), default=self.port_range_start - 1)
        self._next_port = max(highest + 1, self.port_range_start)
        logger.info(f"Registry loaded from file: {len(records)} entries, next port: {self._next_port}")
