"""SSH session management built on paramiko."""
from __future__ import annotations

import codecs
import contextlib
import io
import logging
import socket
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import paramiko

from .errors import CommandError, SSHConnectionError
from .models import ConnectionConfig

LOGGER = logging.getLogger(__name__)

CAUSE_UNREACHABLE = "host is not reachable on the SSH port"
CAUSE_CREDENTIALS = "wrong username or credentials"
CAUSE_FIREWALL = "a firewall is blocking the connection"
CAUSE_SERVICE_DOWN = "the SSH service is not running on the host"

_POLL_INTERVAL = 0.05
_KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one remote command."""

    command: str
    stdout: str
    stderr: str
    exit_code: int | None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.exit_code == 0


LineCallback = Callable[[str], None]


class Connection(Protocol):
    """The surface of a remote session the pipeline depends on."""

    @property
    def connected(self) -> bool:  # pragma: no cover - protocol
        """Return ``True`` while the session is usable."""
        ...

    @property
    def remote_ip(self) -> str:  # pragma: no cover - protocol
        """Return the host used for access URLs."""
        ...

    def connect(self, timeout: float | None = None) -> None:  # pragma: no cover - protocol
        """Open the session."""
        ...

    def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_line: LineCallback | None = None,
    ) -> CommandResult:  # pragma: no cover - protocol
        """Execute *command* and return its result."""
        ...

    def disconnect(self) -> None:  # pragma: no cover - protocol
        """Close the session."""
        ...


class SSHConnection:
    """One authenticated SSH session to the target host.

    Sessions are owned by a single installation and never shared. Failures
    to connect are not retried.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        connect_timeout: float = 20.0,
        keepalive_interval: int = 10,
        command_timeout: float | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        """Store settings; the session opens on :meth:`connect`."""
        self.config = config
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.command_timeout = command_timeout
        self._client_factory = client_factory
        self._client: paramiko.SSHClient | None = None
        self._lock = threading.Lock()

    # -- Client lifecycle -------------------------------------------------

    @property
    def connected(self) -> bool:
        """Return ``True`` while the transport is active."""
        client = self._client
        if client is None:
            return False
        transport = client.get_transport()
        return bool(transport and transport.is_active())

    @property
    def remote_ip(self) -> str:
        """Return the configured host, used when building access URLs."""
        return self.config.host

    def connect(self, timeout: float | None = None) -> None:
        """Open the session using the single configured credential."""
        if self.connected:
            return
        self.disconnect()

        pkey = self._load_private_key()
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        LOGGER.debug(
            "Connecting to %s:%s as %s (%s)",
            self.config.host,
            self.config.port,
            self.config.username,
            self.config.auth_method,
        )
        try:
            client.connect(
                hostname=self.config.host,
                port=self.config.port,
                username=self.config.username,
                password=self.config.password,
                pkey=pkey,
                look_for_keys=False,
                allow_agent=False,
                timeout=timeout if timeout is not None else self.connect_timeout,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise SSHConnectionError(
                f"Authentication to {self._target} failed: {exc}",
                causes=(CAUSE_CREDENTIALS, CAUSE_SERVICE_DOWN),
            ) from exc
        except (TimeoutError, socket.timeout) as exc:
            client.close()
            raise SSHConnectionError(
                f"Timed out connecting to {self._target}",
                causes=(CAUSE_FIREWALL, CAUSE_UNREACHABLE, CAUSE_SERVICE_DOWN),
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SSHConnectionError(
                f"Unable to establish SSH connection to {self._target}: {exc}",
                causes=(
                    CAUSE_UNREACHABLE,
                    CAUSE_SERVICE_DOWN,
                    CAUSE_FIREWALL,
                    CAUSE_CREDENTIALS,
                ),
            ) from exc

        transport = client.get_transport()
        if transport is None:
            client.close()
            raise SSHConnectionError(
                f"SSH transport unavailable after connecting to {self._target}",
                causes=(CAUSE_SERVICE_DOWN,),
            )
        transport.set_keepalive(self.keepalive_interval)
        with self._lock:
            self._client = client
        LOGGER.debug("SSH session established to %s", self._target)

    def disconnect(self) -> None:
        """Close the session; safe to call repeatedly and from any thread."""
        with self._lock:
            client, self._client = self._client, None
        if client is not None:
            with contextlib.suppress(Exception):
                client.close()
            LOGGER.debug("SSH session to %s closed", self._target)

    def __enter__(self) -> SSHConnection:
        """Connect when entering a ``with`` block."""
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Disconnect when leaving a ``with`` block."""
        self.disconnect()

    # -- Command execution -----------------------------------------------

    def run(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_line: LineCallback | None = None,
    ) -> CommandResult:
        """Execute *command*; nonzero exit codes are returned, not raised."""
        channel = self._open_channel()
        LOGGER.debug("[REMOTE] %s", command)
        try:
            channel.exec_command(command)
        except (paramiko.SSHException, OSError) as exc:
            channel.close()
            self.disconnect()
            raise SSHConnectionError(f"Failed to start remote command on {self._target}") from exc

        limit = timeout if timeout is not None else self.command_timeout
        buffers = {"stdout": "", "stderr": ""}
        # Incremental decoders keep multi-byte characters split across reads intact.
        decoders = {
            kind: codecs.getincrementaldecoder("utf-8")(errors="replace") for kind in buffers
        }
        collected: dict[str, list[str]] = {"stdout": [], "stderr": []}
        started = time.perf_counter()

        def _consume(kind: str, data: bytes, *, final: bool = False) -> None:
            buffers[kind] += decoders[kind].decode(data, final=final)
            while "\n" in buffers[kind]:
                line, buffers[kind] = buffers[kind].split("\n", 1)
                line = line.rstrip("\r")
                collected[kind].append(line)
                if on_line is not None:
                    on_line(line)

        timed_out = False
        try:
            while True:
                if limit is not None and time.perf_counter() - started > limit:
                    timed_out = True
                    break
                if channel.recv_ready():
                    _consume("stdout", channel.recv(4096))
                if channel.recv_stderr_ready():
                    _consume("stderr", channel.recv_stderr(4096))
                if (
                    channel.exit_status_ready()
                    and not channel.recv_ready()
                    and not channel.recv_stderr_ready()
                ):
                    break
                time.sleep(_POLL_INTERVAL)
            for kind in ("stdout", "stderr"):
                _consume(kind, b"", final=True)
                if buffers[kind]:
                    _consume(kind, b"\n")
            exit_code: int | None = None if timed_out else channel.recv_exit_status()
        except (paramiko.SSHException, OSError, EOFError) as exc:
            self.disconnect()
            raise SSHConnectionError(
                f"SSH session to {self._target} was lost while running a command"
            ) from exc
        finally:
            with contextlib.suppress(Exception):
                channel.close()

        stderr = "\n".join(collected["stderr"])
        if timed_out:
            stderr = (stderr + "\n" if stderr else "") + f"timed out after {limit:g}s"
        return CommandResult(
            command=command,
            stdout="\n".join(collected["stdout"]),
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    def run_or_fail(
        self,
        command: str,
        *,
        timeout: float | None = None,
        on_line: LineCallback | None = None,
    ) -> CommandResult:
        """Execute *command* and raise :class:`CommandError` on nonzero exit."""
        result = self.run(command, timeout=timeout, on_line=on_line)
        if not result.ok:
            raise CommandError(command, result.exit_code, result.stderr or result.stdout)
        return result

    def open_shell(
        self, term: str = "xterm-256color", cols: int = 80, rows: int = 24
    ) -> paramiko.Channel:
        """Return an interactive shell channel for a terminal bridge."""
        channel = self._open_channel()
        try:
            channel.get_pty(term=term, width=cols, height=rows)
            channel.invoke_shell()
        except (paramiko.SSHException, OSError) as exc:
            channel.close()
            raise SSHConnectionError(f"Unable to open a shell on {self._target}") from exc
        return channel

    # -- Helpers ----------------------------------------------------------

    @property
    def _target(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    def _open_channel(self) -> paramiko.Channel:
        client = self._client
        transport = client.get_transport() if client is not None else None
        if transport is None or not transport.is_active():
            raise SSHConnectionError(f"No active SSH session to {self._target}")
        try:
            return transport.open_session()
        except (paramiko.SSHException, OSError) as exc:
            self.disconnect()
            raise SSHConnectionError(f"Failed to open SSH channel to {self._target}") from exc

    def _load_private_key(self) -> paramiko.PKey | None:
        if not self.config.private_key:
            return None
        last_error: Exception | None = None
        for key_class in _KEY_CLASSES:
            try:
                return key_class.from_private_key(
                    io.StringIO(self.config.private_key),
                    password=self.config.passphrase,
                )
            except paramiko.PasswordRequiredException as exc:
                raise SSHConnectionError(
                    "Private key is encrypted and no passphrase was supplied",
                    causes=(CAUSE_CREDENTIALS,),
                ) from exc
            except (paramiko.SSHException, ValueError) as exc:
                last_error = exc
        raise SSHConnectionError(
            f"Unsupported or malformed private key: {last_error}",
            causes=(CAUSE_CREDENTIALS,),
        )


__all__ = [
    "CAUSE_CREDENTIALS",
    "CAUSE_FIREWALL",
    "CAUSE_SERVICE_DOWN",
    "CAUSE_UNREACHABLE",
    "CommandResult",
    "Connection",
    "LineCallback",
    "SSHConnection",
]
