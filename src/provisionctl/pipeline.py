"""Step orchestration engine for one installation.

The orchestrator walks a declarative list of :class:`StepDescriptor` objects,
skipping those whose predicate is false and failing fast on the first error.
The whole sequence runs in a single worker thread so the caller can enforce a
wall-clock deadline with :meth:`concurrent.futures.Future.result`. When the
deadline passes the connection is torn down, the in-flight step is marked
failed and anything the abandoned worker does afterwards is discarded.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import (
    CommandError,
    InstallationCancelledError,
    InstallationError,
    InstallationTimeoutError,
)
from .events import EventEmitter, EventType
from .models import (
    InstallationOptions,
    PipelineStatus,
    ServerCapabilities,
    StepRecord,
    StepStatus,
    completed_ids,
)

if TYPE_CHECKING:
    from .config import AppConfig
    from .connection import CommandResult, Connection
    from .stack import WordOpsStack
    from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "deadline exceeded"

Predicate = Callable[[ServerCapabilities, InstallationOptions], bool]


def always(capabilities: ServerCapabilities, options: InstallationOptions) -> bool:
    """Predicate for steps that run on every path."""
    return True


@dataclass(frozen=True, slots=True)
class StepDescriptor:
    """Declarative description of one pipeline step."""

    id: str
    label: str
    run: Callable[[StepContext], None]
    required_when: Predicate = always
    group: str | None = None


@dataclass(slots=True)
class StepContext:
    """Everything a step needs to act on the remote host."""

    connection: Connection
    options: InstallationOptions
    capabilities: ServerCapabilities
    stack: WordOpsStack
    templates: TemplateEngine
    config: AppConfig
    admin_username: str
    admin_password: str
    admin_email: str
    site_title: str
    assigned_port: int | None = None
    preview_domain: str | None = None
    record: StepRecord | None = None
    _orchestrator: Orchestrator | None = field(default=None, repr=False)

    @property
    def domain(self) -> str:
        """Return the target domain."""
        return self.options.domain

    def attach(self, orchestrator: Orchestrator) -> None:
        """Route events raised by steps through *orchestrator*."""
        self._orchestrator = orchestrator

    def mask(self, text: str) -> str:
        """Hide credentials that may appear in command lines or output."""
        if self.admin_password:
            text = text.replace(self.admin_password, "***")
        return text

    def output(self, line: str) -> None:
        """Emit one line of remote output."""
        if self._orchestrator is None:
            return
        step_id = self.record.id if self.record else None
        self._orchestrator.emit(EventType.OUTPUT, {"step": step_id, "line": self.mask(line)})

    def warn(self, message: str) -> None:
        """Record a tolerated failure on the current step."""
        message = self.mask(message)
        LOGGER.warning("%s", message)
        if self.record is not None:
            self.record.warnings.append(message)
        self.output(f"warning: {message}")

    def probe(self, command: str) -> CommandResult:
        """Run a read-only command whose exit code is the answer."""
        return self.connection.run(command)

    def run(
        self,
        command: str,
        *,
        critical: bool = True,
        timeout: float | None = None,
    ) -> CommandResult:
        """Run *command*; critical failures raise, best-effort ones warn."""
        result = self.connection.run(command, timeout=timeout, on_line=self.output)
        if result.ok:
            return result
        if critical:
            raise CommandError(
                self.mask(command), result.exit_code, self.mask(result.stderr or result.stdout)
            )
        self.warn(f"Command '{command}' exited with {result.exit_code}")
        return result


class Orchestrator:
    """Run a step list for one installation under a global deadline."""

    def __init__(
        self,
        steps: Sequence[StepDescriptor],
        *,
        emitter: EventEmitter,
        deadline_seconds: float = 600.0,
    ) -> None:
        """Create PENDING records for every declared step."""
        ids = [step.id for step in steps]
        if len(set(ids)) != len(ids):
            raise ValueError("Step ids must be unique.")
        self.steps = tuple(steps)
        self.emitter = emitter
        self.deadline_seconds = deadline_seconds
        self.records = [StepRecord(id=step.id, label=step.label) for step in self.steps]
        self.status = PipelineStatus.PENDING
        self._cancel = threading.Event()
        self._lock = threading.RLock()
        self._abandoned = False
        self._current: StepRecord | None = None

    # -- Public API --------------------------------------------------------

    def cancel(self) -> None:
        """Request cancellation; observed before the next step starts."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._cancel.is_set()

    def record_for(self, step_id: str) -> StepRecord:
        """Return the record of *step_id*."""
        for record in self.records:
            if record.id == step_id:
                return record
        raise KeyError(step_id)

    def emit(self, event_type: EventType, payload: Mapping[str, Any]) -> None:
        """Emit an event unless the worker has been abandoned."""
        with self._lock:
            if self._abandoned:
                return
            self.emitter.emit(event_type, payload)

    def run(self, context: StepContext) -> list[StepRecord]:
        """Execute the steps, returning the records on success."""
        with self._lock:
            if self.status is not PipelineStatus.PENDING:
                raise RuntimeError("An orchestrator can only run once.")
            self.status = PipelineStatus.RUNNING
        context.attach(self)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="provisionctl-steps"
        )
        try:
            future = executor.submit(self._run_steps, context)
            try:
                future.result(timeout=self.deadline_seconds)
            except concurrent.futures.TimeoutError:
                if not future.done():
                    self._expire(context)
                future.result()
        finally:
            executor.shutdown(wait=False)
        return self.records

    # -- Worker ------------------------------------------------------------

    def _run_steps(self, context: StepContext) -> None:
        for descriptor, record in zip(self.steps, self.records, strict=True):
            if self._cancel.is_set():
                self._cancelled(context, descriptor)
                return

            if not descriptor.required_when(context.capabilities, context.options):
                with self._lock:
                    if self._abandoned:
                        return
                    record.skip()
                self.emit(EventType.STEP_SKIPPED, {"id": record.id, "label": record.label})
                continue

            with self._lock:
                if self._abandoned:
                    return
                record.start()
                self._current = record
            context.record = record
            self.emit(EventType.STEP_START, {"id": record.id, "label": record.label})
            LOGGER.debug("Step %s started", record.id)

            try:
                descriptor.run(context)
            except Exception as exc:  # noqa: BLE001 - every step failure is wrapped
                self._failed(context, descriptor, record, exc)
                return

            with self._lock:
                if self._abandoned:
                    return
                record.complete()
                self._current = None
            self.emit(
                EventType.STEP_COMPLETE,
                {
                    "id": record.id,
                    "label": record.label,
                    "durationMs": record.duration_ms,
                    "warnings": list(record.warnings),
                },
            )
            LOGGER.debug("Step %s completed in %sms", record.id, record.duration_ms)

        with self._lock:
            if not self._abandoned:
                self.status = PipelineStatus.SUCCEEDED

    def _failed(
        self,
        context: StepContext,
        descriptor: StepDescriptor,
        record: StepRecord,
        exc: Exception,
    ) -> None:
        message = context.mask(str(exc)) or type(exc).__name__
        with self._lock:
            if self._abandoned:
                LOGGER.debug("Discarding failure of abandoned step %s: %s", record.id, message)
                return
            record.fail(message)
            self._current = None
            self.status = PipelineStatus.FAILED
        diagnostics = self._diagnostics(descriptor.id, context)
        self.emit(
            EventType.STEP_ERROR,
            {
                "id": record.id,
                "label": record.label,
                "error": message,
                "context": diagnostics,
            },
        )
        self.emit(EventType.ERROR, {"message": message, "step": record.id})
        raise InstallationError(descriptor.id, message, context=diagnostics, cause=exc) from exc

    def _cancelled(self, context: StepContext, descriptor: StepDescriptor) -> None:
        with self._lock:
            if self._abandoned:
                return
            self.status = PipelineStatus.CANCELLED
        context.connection.disconnect()
        diagnostics = self._diagnostics(descriptor.id, context)
        self.emit(
            EventType.ERROR,
            {"message": "Installation cancelled.", "step": descriptor.id, "cancelled": True},
        )
        with self._lock:
            self._abandoned = True
        raise InstallationCancelledError(next_step=descriptor.id, context=diagnostics)

    # -- Deadline ----------------------------------------------------------

    def _expire(self, context: StepContext) -> None:
        with self._lock:
            self._abandoned = True
            self.status = PipelineStatus.TIMED_OUT
            self._cancel.set()
            current = self._current
            if current is not None and current.status is StepStatus.RUNNING:
                current.fail(DEADLINE_EXCEEDED)
            self._current = None
        step_id = current.id if current is not None else None
        LOGGER.warning(
            "Installation deadline of %ss exceeded (step %s)", self.deadline_seconds, step_id
        )
        context.connection.disconnect()
        diagnostics = self._diagnostics(step_id, context)
        self.emitter.emit(
            EventType.ERROR,
            {"message": DEADLINE_EXCEEDED, "step": step_id, "timedOut": True},
        )
        raise InstallationTimeoutError(self.deadline_seconds, step_id=step_id, context=diagnostics)

    def _diagnostics(self, step_id: str | None, context: StepContext) -> dict[str, object]:
        with self._lock:
            done = completed_ids(self.records)
        return {
            "currentStep": step_id,
            "completedStepIds": done,
            "capabilities": context.capabilities.to_dict(),
        }


__all__ = [
    "DEADLINE_EXCEEDED",
    "Orchestrator",
    "Predicate",
    "StepContext",
    "StepDescriptor",
    "always",
]
