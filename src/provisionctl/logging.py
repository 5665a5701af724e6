"""Structured operation logging for provisionctl.

Each CLI command runs inside :meth:`StructuredLogger.operation`. When the
scope closes, one JSON object is appended to ``operations.jsonl`` under the
configured logs directory. Logging is best-effort: if the directory cannot be
created or a write fails, the logger disables itself and the command carries
on.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import utc_now

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _json_safe(value: object) -> object:
    """Return *value* converted into something :func:`json.dumps` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects steps and the outcome of one logged operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str = field(default_factory=utc_now)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step of the operation."""
        entry: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            entry["detail"] = _json_safe(detail)
        self.steps.append(entry)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            warnings=list(warnings) if warnings is not None else [message],
            errors=errors,
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _json_safe(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result


class StructuredLogger:
    """Append one JSON record per operation to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when it is unusable."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are still being written."""
        return self._enabled

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL file receiving operation records."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(command=command, args=dict(args or {}), target=target)
        started = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            duration_ms = int((time.perf_counter() - started) * 1000)
            self._write(scope, duration_ms)

    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        record: dict[str, Any] = {
            "id": scope.operation_id,
            "timestamp": scope.started_at,
            "command": scope.command,
            "args": _json_safe(scope.args),
            "target": _json_safe(scope.target),
            "steps": scope.steps,
            "result": scope.result,
            "duration_ms": duration_ms,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
        except OSError as exc:
            LOGGER.warning(
                "Structured logging disabled; cannot write %s: %s",
                self._operations_log_path,
                exc,
            )
            self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
