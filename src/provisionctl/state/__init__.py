"""State management helpers for provisionctl."""
from __future__ import annotations

from .registry import PORTS_FILE, StateRegistry, StateRegistryError

__all__ = ["PORTS_FILE", "StateRegistry", "StateRegistryError"]
