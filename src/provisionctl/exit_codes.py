"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum

from .errors import (
    CommandError,
    ConflictError,
    InstallationCancelledError,
    InstallationError,
    InstallationTimeoutError,
    PortAllocationError,
    PreflightError,
    SSHConnectionError,
    ValidationError,
)


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    FAILURE = 1
    VALIDATION = 2
    CONNECTION = 3
    CONFLICT = 4
    COMMAND = 5
    TIMEOUT = 6
    CANCELLED = 7


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the exit code classifying *exc*."""
    if isinstance(exc, InstallationError) and exc.cause is not None:
        exc = exc.cause
    if isinstance(exc, ValidationError):
        return ExitCode.VALIDATION
    if isinstance(exc, SSHConnectionError):
        return ExitCode.CONNECTION
    if isinstance(exc, ConflictError):
        return ExitCode.CONFLICT
    if isinstance(exc, (CommandError, PreflightError, PortAllocationError)):
        return ExitCode.COMMAND
    if isinstance(exc, InstallationTimeoutError):
        return ExitCode.TIMEOUT
    if isinstance(exc, InstallationCancelledError):
        return ExitCode.CANCELLED
    return ExitCode.FAILURE


__all__ = ["ExitCode", "exit_code_for"]
