"""Preview port allocation for provisionctl."""
from __future__ import annotations

import hashlib
import logging
import re
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from .config import AppConfig
from .errors import PortAllocationError
from .models import PortReservation, ReservationState, utc_now
from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


def slugify(label: str) -> str:
    """Return a DNS-safe slug for *label*."""
    return _SLUG_STRIP.sub("-", label.lower()).strip("-")[:40].strip("-")


class PortAllocator:
    """Hand out preview ports from a bounded pool.

    The allocator is the only state shared between concurrent installations,
    so every read-modify-write of the reservation table happens under one
    lock. When a :class:`StateRegistry` is supplied, live reservations are
    persisted to ``ports.yml`` after each change and reloaded on construction.
    """

    def __init__(
        self,
        *,
        base_port: int = 8000,
        max_port: int = 9999,
        preview_suffix: str = "preview.example.net",
        registry: StateRegistry | None = None,
    ) -> None:
        """Validate the pool bounds and load persisted reservations."""
        if base_port < 1 or max_port > 65535:
            raise PortAllocationError("Port pool must lie within 1-65535.")
        if max_port < base_port:
            raise PortAllocationError(
                f"Port pool upper bound {max_port} is below the base {base_port}."
            )
        self.base_port = base_port
        self.max_port = max_port
        self.preview_suffix = preview_suffix.strip(".")
        self._registry = registry
        self._lock = threading.Lock()
        self._by_id: dict[str, PortReservation] = {}
        self._by_port: dict[int, str] = {}
        if registry is not None:
            registry.ensure_root()
            self._load(registry.reservation_entries())

    @classmethod
    def from_config(cls, config: AppConfig) -> PortAllocator:
        """Build an allocator from the ``ports`` configuration section."""
        registry = StateRegistry(config.registry_dir) if config.ports.persist else None
        return cls(
            base_port=config.ports.base,
            max_port=config.ports.max,
            preview_suffix=config.ports.preview_suffix,
            registry=registry,
        )

    # ------------------------------------------------------------------
    @property
    def capacity(self) -> int:
        """Return the number of ports in the pool."""
        return self.max_port - self.base_port + 1

    def list_reservations(self) -> list[PortReservation]:
        """Return live reservations sorted by port."""
        with self._lock:
            return sorted(self._by_id.values(), key=lambda item: item.port)

    def get_port(self, installation_id: str) -> int | None:
        """Return the port held by *installation_id*, if any."""
        installation_id = _normalize_id(installation_id)
        with self._lock:
            reservation = self._by_id.get(installation_id)
            return reservation.port if reservation else None

    def next_available_port(self) -> int:
        """Return the lowest free port without reserving it."""
        with self._lock:
            return self._scan()

    def reserve(self, installation_id: str, port: int) -> PortReservation:
        """Reserve *port* for *installation_id* if it is still free."""
        installation_id = _normalize_id(installation_id)
        with self._lock:
            if not self.base_port <= port <= self.max_port:
                raise PortAllocationError(
                    f"Port {port} is outside the pool {self.base_port}-{self.max_port}."
                )
            if port in self._by_port:
                raise PortAllocationError(
                    f"Port {port} is already reserved by '{self._by_port[port]}'."
                )
            return self._claim(installation_id, port)

    def allocate(self, installation_id: str) -> PortReservation:
        """Reserve the lowest free port for *installation_id*."""
        installation_id = _normalize_id(installation_id)
        with self._lock:
            port = self._scan()
            return self._claim(installation_id, port)

    def release(self, installation_id: str) -> PortReservation | None:
        """Release the port held by *installation_id*; no-op when none is held."""
        installation_id = _normalize_id(installation_id)
        with self._lock:
            reservation = self._by_id.pop(installation_id, None)
            if reservation is None:
                return None
            self._by_port.pop(reservation.port, None)
            reservation.state = ReservationState.RELEASED
            self._persist()
        LOGGER.debug("Released port %s from %s", reservation.port, installation_id)
        return reservation

    def preview_domain(self, requester_id: str, label: str) -> str:
        """Return the deterministic preview hostname for a requester and label."""
        digest = hashlib.sha256(requester_id.encode("utf-8")).hexdigest()[:8]
        slug = slugify(label) or "site"
        return f"{digest}-{slug}.{self.preview_suffix}"

    # Internal helpers -------------------------------------------------
    def _scan(self) -> int:
        candidate = self.base_port
        while candidate <= self.max_port:
            if candidate not in self._by_port:
                return candidate
            candidate += 1
        raise PortAllocationError(
            f"No preview ports available in {self.base_port}-{self.max_port}."
        )

    def _claim(self, installation_id: str, port: int) -> PortReservation:
        if installation_id in self._by_id:
            held = self._by_id[installation_id].port
            raise PortAllocationError(
                f"Installation '{installation_id}' already holds port {held}."
            )
        reservation = PortReservation(installation_id=installation_id, port=port)
        self._by_id[installation_id] = reservation
        self._by_port[port] = installation_id
        try:
            self._persist()
        except Exception:
            del self._by_id[installation_id]
            del self._by_port[port]
            raise
        LOGGER.debug("Reserved port %s for %s", port, installation_id)
        return reservation

    def _persist(self) -> None:
        if self._registry is None:
            return
        entries = [
            item.to_dict() for item in sorted(self._by_id.values(), key=lambda r: r.port)
        ]
        self._registry.write_ports(entries)

    def _load(self, entries: Iterable[Mapping[str, Any]]) -> None:
        for entry in entries:
            if entry["port"] in self._by_port or entry["installation_id"] in self._by_id:
                continue
            reservation = PortReservation(
                installation_id=entry["installation_id"],
                port=entry["port"],
                reserved_at=str(entry.get("reserved_at") or utc_now()),
            )
            self._by_id[reservation.installation_id] = reservation
            self._by_port[reservation.port] = reservation.installation_id


def _normalize_id(installation_id: str) -> str:
    normalized = installation_id.strip()
    if not normalized:
        raise PortAllocationError("Installation id must be a non-empty string.")
    return normalized


__all__ = ["PortAllocator", "slugify"]
