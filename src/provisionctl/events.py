"""Per-installation progress events."""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import utc_now

LOGGER = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of events emitted while an installation runs."""

    CONNECTED = "connected"
    OUTPUT = "output"
    STEP_START = "stepStart"
    STEP_SKIPPED = "stepSkipped"
    STEP_COMPLETE = "stepComplete"
    STEP_ERROR = "stepError"
    INSTALLATION_COMPLETE = "installationComplete"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class InstallationEvent:
    """One progress notification."""

    type: EventType
    installation_id: str
    sequence: int
    timestamp: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "type": self.type.value,
            "installation_id": self.installation_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }


Listener = Callable[[InstallationEvent], None]


class Subscription:
    """Handle returned by :meth:`EventEmitter.subscribe`."""

    def __init__(self, emitter: EventEmitter, listener: Listener) -> None:
        """Bind the handle to its emitter and listener."""
        self._emitter = emitter
        self._listener = listener

    def unsubscribe(self) -> None:
        """Detach the listener; calling it again does nothing."""
        self._emitter.unsubscribe(self._listener)


class EventEmitter:
    """Fan out events for a single installation to its subscribers.

    Delivery is fire-and-forget: a listener that raises is logged and the
    remaining listeners still receive the event.
    """

    def __init__(self, installation_id: str) -> None:
        """Create an emitter scoped to *installation_id*."""
        self.installation_id = installation_id
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        """Return ``True`` once :meth:`close` has been called."""
        return self._closed

    def subscribe(self, listener: Listener) -> Subscription:
        """Register *listener* and return its subscription handle."""
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)
        return Subscription(self, listener)

    def unsubscribe(self, listener: Listener) -> None:
        """Remove *listener* if registered."""
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def emit(
        self, event_type: EventType, payload: Mapping[str, Any] | None = None
    ) -> InstallationEvent | None:
        """Deliver an event to every listener; return it, or ``None`` once closed."""
        with self._lock:
            if self._closed:
                return None
            self._sequence += 1
            event = InstallationEvent(
                type=event_type,
                installation_id=self.installation_id,
                sequence=self._sequence,
                timestamp=utc_now(),
                payload=dict(payload or {}),
            )
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:  # noqa: BLE001 - listeners must not break the pipeline
                LOGGER.exception(
                    "Event listener failed for %s #%s", event.type.value, event.sequence
                )
        return event

    def close(self) -> None:
        """Drop all listeners and reject further events."""
        with self._lock:
            self._closed = True
            self._listeners.clear()


class EventRecorder:
    """Listener that keeps every received event in memory."""

    def __init__(self) -> None:
        """Start with an empty history."""
        self.events: list[InstallationEvent] = []
        self._lock = threading.Lock()

    def __call__(self, event: InstallationEvent) -> None:
        """Record *event*."""
        with self._lock:
            self.events.append(event)

    def types(self) -> list[str]:
        """Return the recorded event type values in arrival order."""
        with self._lock:
            return [event.type.value for event in self.events]

    def of_type(self, event_type: EventType) -> list[InstallationEvent]:
        """Return recorded events matching *event_type*."""
        with self._lock:
            return [event for event in self.events if event.type is event_type]


__all__ = [
    "EventEmitter",
    "EventRecorder",
    "EventType",
    "InstallationEvent",
    "Listener",
    "Subscription",
]
