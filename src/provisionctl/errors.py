"""Error taxonomy shared by the provisioning pipeline."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class ProvisionError(RuntimeError):
    """Base class for every classified provisioning failure."""


class ValidationError(ProvisionError):
    """Raised when connection settings or installation options are malformed."""


class SSHConnectionError(ProvisionError, ConnectionError):
    """Raised when the remote session cannot be established or was lost."""

    def __init__(self, message: str, *, causes: Sequence[str] = ()) -> None:
        """Store the candidate causes alongside the message."""
        super().__init__(message)
        self.causes = tuple(causes)


class CommandError(ProvisionError):
    """Raised when a critical remote command exits with a nonzero status."""

    def __init__(self, command: str, exit_code: int | None, stderr: str = "") -> None:
        """Record the failing command and its diagnostics."""
        detail = stderr.strip() or "no output"
        super().__init__(f"Command '{command}' failed (exit {exit_code}): {detail}")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class ConflictError(ProvisionError):
    """Raised when the target domain is already provisioned on the host."""

    def __init__(self, domain: str, reason: str) -> None:
        """Record the conflicting domain and the evidence found."""
        super().__init__(f"Domain '{domain}' is already provisioned: {reason}")
        self.domain = domain
        self.reason = reason


class PreflightError(ProvisionError):
    """Raised when the host does not meet the preflight requirements."""


class PortAllocationError(ProvisionError):
    """Raised when the preview port pool is exhausted or a reservation is lost."""


class InstallationError(ProvisionError):
    """Raised when a pipeline step fails; wraps the original cause."""

    def __init__(
        self,
        step_id: str,
        message: str,
        *,
        context: Mapping[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        """Attach the failing step id and diagnostic context."""
        super().__init__(f"Step '{step_id}' failed: {message}")
        self.step_id = step_id
        self.context = dict(context or {})
        self.cause = cause

    @property
    def kind(self) -> str:
        """Return the class name of the wrapped cause."""
        if self.cause is None:
            return type(self).__name__
        return type(self.cause).__name__


class InstallationTimeoutError(ProvisionError, TimeoutError):
    """Raised when the global installation deadline is exceeded."""

    def __init__(
        self,
        deadline: float,
        *,
        step_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        """Record the deadline and the step that was cut off."""
        where = f" during step '{step_id}'" if step_id else ""
        super().__init__(f"Installation exceeded the {deadline:g}s deadline{where}.")
        self.deadline = deadline
        self.step_id = step_id
        self.context = dict(context or {})


class InstallationCancelledError(ProvisionError):
    """Raised when a cancellation request is observed between steps."""

    def __init__(self, *, next_step: str | None = None, context: Mapping[str, Any] | None = None):
        """Record where the pipeline stopped."""
        where = f" before step '{next_step}'" if next_step else ""
        super().__init__(f"Installation cancelled{where}.")
        self.next_step = next_step
        self.context = dict(context or {})


__all__ = [
    "CommandError",
    "ConflictError",
    "InstallationCancelledError",
    "InstallationError",
    "InstallationTimeoutError",
    "PortAllocationError",
    "PreflightError",
    "ProvisionError",
    "SSHConnectionError",
    "ValidationError",
]
