"""On-disk state for provisionctl.

The registry directory (``/var/lib/provisionctl/registry`` by default) holds
``ports.yml``, the list of live preview port reservations. Files are replaced
atomically so a concurrent reader sees either the previous list or the new
one. Entries are normalised on the way in and on the way out; malformed
entries left by hand edits are dropped with a debug message.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

PORTS_FILE = "ports.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """YAML-backed store for preview port reservations."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing or empty."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically replace *name* with *payload* (mode ``0640``)."""
        self.ensure_root()
        path = self.path_for(name)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.chmod(tmp_path, 0o640)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Port reservations ------------------------------------------------
    def read_ports(self) -> Mapping[str, object]:
        """Return the raw ``ports.yml`` document (``{"ports": []}`` if absent)."""
        value = self.read(PORTS_FILE, default={"ports": []})
        return value if isinstance(value, Mapping) else {"ports": []}

    def write_ports(self, ports: Iterable[object]) -> None:
        """Persist reservation entries to ``ports.yml``."""
        self.write(PORTS_FILE, {"ports": list(ports)})

    def reservation_entries(self) -> list[dict[str, Any]]:
        """Return well-formed reservation entries, first claim per id and port wins."""
        raw = self.read_ports().get("ports")
        if not isinstance(raw, list):
            return []
        entries: list[dict[str, Any]] = []
        seen_ids: set[str] = set()
        seen_ports: set[int] = set()
        for item in raw:
            entry = _normalize_reservation_entry(item)
            if entry is None:
                LOGGER.debug("Ignoring malformed port reservation %r", item)
                continue
            if entry["installation_id"] in seen_ids or entry["port"] in seen_ports:
                LOGGER.debug("Ignoring duplicate port reservation %r", item)
                continue
            seen_ids.add(entry["installation_id"])
            seen_ports.add(entry["port"])
            entries.append(entry)
        return entries


def _normalize_reservation_entry(item: object) -> dict[str, Any] | None:
    if not isinstance(item, Mapping):
        return None
    installation_id = str(item.get("installation_id") or "").strip()
    port = item.get("port")
    if not installation_id or isinstance(port, bool):
        return None
    try:
        port_number = int(port)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    if not 1 <= port_number <= 65535:
        return None
    entry: dict[str, Any] = {"installation_id": installation_id, "port": port_number}
    reserved_at = item.get("reserved_at")
    if reserved_at:
        entry["reserved_at"] = str(reserved_at)
    return entry


__all__ = ["PORTS_FILE", "StateRegistry", "StateRegistryError"]
