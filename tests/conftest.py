"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import shlex
import threading
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import Any

import pytest

from provisionctl.config import AppConfig, load_config
from provisionctl.connection import CommandResult, LineCallback
from provisionctl.errors import SSHConnectionError

ALL_TOOLS = frozenset({"wo", "nginx", "mysql", "php", "wp"})


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


class FakeConnection:
    """In-memory stand-in for an SSH session to a simulated host.

    The simulated host answers presence probes, conflict checks and site
    creation from its attributes. ``overrides`` maps a command substring to a
    reply mapping (``exit_code``, ``stdout``, ``stderr``, ``delay``,
    ``raises``) or a list of replies consumed in order (the last one repeats).
    Overrides are checked before the simulated behaviour.
    """

    def __init__(
        self,
        *,
        host: str = "1.2.3.4",
        tools: Iterable[str] = ALL_TOOLS,
        sites: Iterable[str] = (),
        vhosts: Iterable[str] = (),
        wp_configs: Iterable[str] = (),
        databases: Iterable[str] = (),
        free_mb: int = 50_000,
        php_version: str = "8.2.12",
        create_exit_code: int = 0,
        connect_error: Exception | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> None:
        self.host = host
        self.tools = set(tools)
        self.sites = set(sites)
        self.vhosts = set(vhosts)
        self.wp_configs = set(wp_configs)
        self.databases = set(databases)
        self.free_mb = free_mb
        self.php_version = php_version
        self.create_exit_code = create_exit_code
        self.connect_error = connect_error
        self.overrides: list[tuple[str, list[Mapping[str, Any]]]] = []
        for pattern, reply in (overrides or {}).items():
            replies = list(reply) if isinstance(reply, list) else [reply]
            self.overrides.append((pattern, replies))
        self.commands: list[str] = []
        self.disconnect_calls = 0
        self._connected = False
        self._closed = threading.Event()
        self._lock = threading.Lock()

    # Connection surface --------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def remote_ip(self) -> str:
        return self.host

    def connect(self, timeout: float | None = None) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True
        self._closed.clear()

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False
        self._closed.set()

    def __enter__(self) -> FakeConnection:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_line: LineCallback | None = None,
    ) -> CommandResult:
        with self._lock:
            self.commands.append(command)
        if not self._connected:
            raise SSHConnectionError("No active SSH session")

        reply = self._override_for(command)
        if reply is None:
            exit_code, stdout = self._simulate(command)
            stderr = ""
        else:
            delay = float(reply.get("delay", 0.0))
            if delay:
                self._closed.wait(delay)
                if not self._connected:
                    raise SSHConnectionError("SSH session closed while running a command")
            if reply.get("raises") is not None:
                raise reply["raises"]
            exit_code = int(reply.get("exit_code", 0))
            stdout = str(reply.get("stdout", ""))
            stderr = str(reply.get("stderr", ""))

        if on_line is not None:
            for line in stdout.splitlines():
                on_line(line)
        return CommandResult(command=command, stdout=stdout, stderr=stderr, exit_code=exit_code)

    # Helpers -------------------------------------------------------------
    def ran(self, fragment: str) -> list[str]:
        """Return the commands containing *fragment*."""
        return [command for command in self.commands if fragment in command]

    def _override_for(self, command: str) -> Mapping[str, Any] | None:
        with self._lock:
            for pattern, replies in self.overrides:
                if pattern in command:
                    return replies.pop(0) if len(replies) > 1 else replies[0]
        return None

    def _simulate(self, command: str) -> tuple[int, str]:
        parts = shlex.split(command) if "<<" not in command else command.split()
        if command.startswith("command -v "):
            tool = parts[2]
            return (0, f"/usr/bin/{tool}") if tool in self.tools else (1, "")
        if command.startswith("php -r"):
            return 0, self.php_version
        if command.startswith("wo site info "):
            return (0, parts[3]) if parts[3] in self.sites else (1, "")
        if command.startswith("test -e "):
            path = parts[2]
            if path.startswith("/etc/nginx/sites-available/"):
                return (0, "") if path.rsplit("/", 1)[1] in self.vhosts else (1, "")
            if path.endswith("/htdocs/wp-config.php"):
                site_id = path.split("/")[-3]
                return (0, "") if site_id in self.wp_configs else (1, "")
            return 1, ""
        if command.startswith("mysql -N -e "):
            query = " ".join(parts[3:])
            for name in self.databases:
                if f"'{name}'" in query:
                    return 0, name
            return 0, ""
        if command.startswith("df -Pm"):
            return 0, str(self.free_mb)
        if command.startswith("timeout ") and " wo site create " in command:
            site_id = parts[parts.index("create") + 1]
            self.sites.add(site_id)
            return self.create_exit_code, "creating site"
        return 0, ""


@pytest.fixture
def fake_host() -> Callable[..., FakeConnection]:
    """Return a factory for simulated hosts."""
    return FakeConnection


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted in a temporary directory."""
    return load_config(
        tmp_path / "missing.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "templates_dir": str(tmp_path / "templates"),
            "ports": {"base": 8080, "max": 8090},
            "pipeline": {"deadline_seconds": 30},
            "detection": {"max_concurrency": 3},
        },
    )
