"""Data models shared by the provisioning pipeline."""
from __future__ import annotations

import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from .errors import ValidationError

_HOSTNAME_LABEL = re.compile(r"^(?!-)[A-Za-z0-9-]{1,63}(?<!-)$")
_IPV4 = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_SLUG = re.compile(r"^[A-Za-z0-9._-]+$")


def is_ipv4(value: str) -> bool:
    """Return ``True`` when *value* is a dotted-quad IPv4 literal."""
    match = _IPV4.match(value)
    if match is None:
        return False
    return all(0 <= int(part) <= 255 for part in match.groups())


def is_hostname(value: str) -> bool:
    """Return ``True`` when *value* is a syntactically valid DNS hostname."""
    if not value or len(value) > 253:
        return False
    labels = value.rstrip(".").split(".")
    return len(labels) >= 2 and all(_HOSTNAME_LABEL.match(label) for label in labels)


def utc_now() -> str:
    """Return the current UTC timestamp in ISO-8601 form."""
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Caller-supplied inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConnectionConfig:
    """SSH connection settings for the target host."""

    host: str
    username: str
    port: int = 22
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None

    @property
    def auth_method(self) -> str:
        """Return a display label for the configured credential."""
        return "private-key" if self.private_key else "password"

    def validate(self) -> None:
        """Raise :class:`ValidationError` when the settings are malformed."""
        if not self.host.strip():
            raise ValidationError("Connection host must be a non-empty string.")
        if not self.username.strip():
            raise ValidationError("Connection username must be a non-empty string.")
        if not 1 <= self.port <= 65535:
            raise ValidationError(f"Connection port {self.port} is outside 1-65535.")
        if bool(self.password) == bool(self.private_key):
            raise ValidationError("Supply exactly one credential: a password or a private key.")
        if self.passphrase and not self.private_key:
            raise ValidationError("A passphrase is only valid together with a private key.")


@dataclass(frozen=True, slots=True)
class ThemeReference:
    """Theme to install, by slug with an optional download fallback."""

    slug: str
    download_url: str | None = None


@dataclass(frozen=True, slots=True)
class SiteCustomization:
    """Optional customisation applied after the site is created."""

    site_title: str | None = None
    admin_username: str | None = None
    admin_email: str | None = None
    admin_password: str | None = None
    theme: ThemeReference | None = None
    plugins: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class InstallationOptions:
    """Per-installation options supplied once by the caller."""

    domain: str
    requester_email: str
    requester_id: str
    customization: SiteCustomization = field(default_factory=SiteCustomization)
    skip_system_setup: bool = False
    installation_id: str | None = None

    @property
    def is_ip_installation(self) -> bool:
        """Return ``True`` when the target "domain" is a bare IPv4 address."""
        return is_ipv4(self.domain)

    def validate(self) -> None:
        """Raise :class:`ValidationError` when the options are malformed."""
        domain = self.domain.strip()
        if not domain:
            raise ValidationError("Domain must be a non-empty string.")
        if domain != self.domain or not (is_ipv4(domain) or is_hostname(domain)):
            raise ValidationError(f"Domain '{self.domain}' is not a valid hostname or IPv4.")
        if "@" not in self.requester_email:
            raise ValidationError(f"Requester email '{self.requester_email}' is invalid.")
        if not self.requester_id.strip():
            raise ValidationError("Requester id must be a non-empty string.")
        if self.installation_id is not None and not self.installation_id.strip():
            raise ValidationError("Installation id must be non-empty when provided.")

        custom = self.customization
        if custom.admin_email is not None and "@" not in custom.admin_email:
            raise ValidationError(f"Admin email '{custom.admin_email}' is invalid.")
        if custom.admin_username is not None and not _SLUG.match(custom.admin_username):
            raise ValidationError(f"Admin username '{custom.admin_username}' is invalid.")
        if custom.theme is not None and not _SLUG.match(custom.theme.slug):
            raise ValidationError(f"Theme slug '{custom.theme.slug}' is invalid.")
        for plugin in custom.plugins:
            if not _SLUG.match(plugin):
                raise ValidationError(f"Plugin slug '{plugin}' is invalid.")


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ServerCapabilities:
    """Capabilities detected on the connected host."""

    has_web_server: bool = False
    has_database: bool = False
    has_runtime: bool = False
    has_site_manager: bool = False
    has_site_cli: bool = False
    runtime_version: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def is_configured(self) -> bool:
        """Return ``True`` when every component of the core set is present."""
        return (
            self.has_web_server
            and self.has_database
            and self.has_runtime
            and self.has_site_manager
        )

    @property
    def missing_auxiliary(self) -> tuple[str, ...]:
        """Return auxiliary tools that must be installed on demand."""
        return () if self.has_site_cli else ("site_cli",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "has_web_server": self.has_web_server,
            "has_database": self.has_database,
            "has_runtime": self.has_runtime,
            "has_site_manager": self.has_site_manager,
            "has_site_cli": self.has_site_cli,
            "runtime_version": self.runtime_version,
            "is_configured": self.is_configured,
            "missing_auxiliary": list(self.missing_auxiliary),
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Step and pipeline state
# ---------------------------------------------------------------------------


class StepStatus(str, Enum):
    """Lifecycle states of a pipeline step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for states a step never leaves."""
        return self in {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}


class PipelineStatus(str, Enum):
    """Lifecycle states of a whole installation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


_STEP_TRANSITIONS: Mapping[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


@dataclass(slots=True)
class StepRecord:
    """Mutable progress record for one pipeline step."""

    id: str
    label: str
    status: StepStatus = StepStatus.PENDING
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    _started: float | None = field(default=None, repr=False)

    def _transition(self, target: StepStatus) -> None:
        if target not in _STEP_TRANSITIONS[self.status]:
            raise RuntimeError(
                f"Illegal step transition for '{self.id}': "
                f"{self.status.value} -> {target.value}"
            )
        self.status = target

    def start(self) -> None:
        """Move PENDING -> RUNNING."""
        self._transition(StepStatus.RUNNING)
        self.started_at = utc_now()
        self._started = time.perf_counter()

    def complete(self) -> None:
        """Move RUNNING -> COMPLETED."""
        self._transition(StepStatus.COMPLETED)
        self._finish()

    def fail(self, error: str) -> None:
        """Move RUNNING -> FAILED recording *error*."""
        self._transition(StepStatus.FAILED)
        self.error = error
        self._finish()

    def skip(self) -> None:
        """Move PENDING -> SKIPPED."""
        self._transition(StepStatus.SKIPPED)
        self.finished_at = utc_now()

    def _finish(self) -> None:
        self.finished_at = utc_now()
        if self._started is not None:
            self.duration_ms = int((time.perf_counter() - self._started) * 1000)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "id": self.id,
            "label": self.label,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


# ---------------------------------------------------------------------------
# Ports
# ---------------------------------------------------------------------------


class ReservationState(str, Enum):
    """States of a preview port reservation."""

    RESERVED = "reserved"
    RELEASED = "released"


@dataclass(slots=True)
class PortReservation:
    """A preview port held by one installation."""

    installation_id: str
    port: int
    state: ReservationState = ReservationState.RESERVED
    reserved_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "installation_id": self.installation_id,
            "port": self.port,
            "state": self.state.value,
            "reserved_at": self.reserved_at,
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

AccessType = Literal["port", "preview", "domain", "ip"]


@dataclass(frozen=True, slots=True)
class AccessMethod:
    """One way of reaching the provisioned site."""

    type: AccessType
    url: str
    primary: bool = False


@dataclass(frozen=True, slots=True)
class SiteInfo:
    """Where the provisioned site lives."""

    domain: str
    ip_address: str
    access_url: str
    admin_url: str
    assigned_port: int | None = None


@dataclass(frozen=True, slots=True)
class SiteCredentials:
    """Administrator credentials for the provisioned site."""

    site_url: str
    admin_url: str
    username: str
    password: str


@dataclass(frozen=True, slots=True)
class InstallationResult:
    """Final success payload of an installation."""

    success: bool
    site_info: SiteInfo
    credentials: SiteCredentials
    access_methods: tuple[AccessMethod, ...]
    dns_instructions: tuple[str, ...]
    preview_domain: str | None = None
    steps: tuple[Mapping[str, Any], ...] = ()

    @property
    def access_url(self) -> str:
        """Return the primary access URL."""
        return self.site_info.access_url

    @property
    def admin_url(self) -> str:
        """Return the primary admin URL."""
        return self.site_info.admin_url

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "success": self.success,
            "site_info": {
                "domain": self.site_info.domain,
                "ip_address": self.site_info.ip_address,
                "access_url": self.site_info.access_url,
                "admin_url": self.site_info.admin_url,
                "assigned_port": self.site_info.assigned_port,
            },
            "credentials": {
                "site_url": self.credentials.site_url,
                "admin_url": self.credentials.admin_url,
                "username": self.credentials.username,
                "password": self.credentials.password,
            },
            "access_methods": [
                {"type": method.type, "url": method.url, "primary": method.primary}
                for method in self.access_methods
            ],
            "dns_instructions": list(self.dns_instructions),
            "preview_domain": self.preview_domain,
            "steps": [dict(step) for step in self.steps],
        }


def completed_ids(records: Sequence[StepRecord]) -> list[str]:
    """Return the ids of COMPLETED records in declaration order."""
    return [record.id for record in records if record.status is StepStatus.COMPLETED]


__all__ = [
    "AccessMethod",
    "ConnectionConfig",
    "InstallationOptions",
    "InstallationResult",
    "PipelineStatus",
    "PortReservation",
    "ReservationState",
    "ServerCapabilities",
    "SiteCredentials",
    "SiteCustomization",
    "SiteInfo",
    "StepRecord",
    "StepStatus",
    "ThemeReference",
    "completed_ids",
    "is_hostname",
    "is_ipv4",
    "utc_now",
]
