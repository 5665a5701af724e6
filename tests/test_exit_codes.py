"""Tests for exit code classification."""
from __future__ import annotations

import pytest

from provisionctl.errors import (
    CommandError,
    ConflictError,
    InstallationCancelledError,
    InstallationError,
    InstallationTimeoutError,
    PreflightError,
    SSHConnectionError,
    ValidationError,
)
from provisionctl.exit_codes import ExitCode, exit_code_for


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ValidationError("bad"), ExitCode.VALIDATION),
        (SSHConnectionError("down"), ExitCode.CONNECTION),
        (ConflictError("example.com", "exists"), ExitCode.CONFLICT),
        (CommandError("false", 1), ExitCode.COMMAND),
        (PreflightError("disk"), ExitCode.COMMAND),
        (InstallationTimeoutError(600), ExitCode.TIMEOUT),
        (InstallationCancelledError(), ExitCode.CANCELLED),
        (RuntimeError("other"), ExitCode.FAILURE),
    ],
)
def test_exit_code_for_error_classes(exc: BaseException, expected: ExitCode) -> None:
    """Each error class maps to a stable exit code."""
    assert exit_code_for(exc) is expected


def test_installation_error_is_classified_by_cause() -> None:
    """Step failures take the exit code of the error they wrap."""
    cause = ConflictError("example.com", "vhost exists")
    wrapped = InstallationError("preflight", str(cause), cause=cause)

    assert exit_code_for(wrapped) is ExitCode.CONFLICT
    assert wrapped.kind == "ConflictError"
    assert exit_code_for(InstallationError("x", "no cause")) is ExitCode.FAILURE
