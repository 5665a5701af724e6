"""Layered configuration for provisionctl.

Sources are merged in increasing precedence:

1. Defaults declared on the section dataclasses below.
2. A YAML file: ``--config-file``, ``$PROVISIONCTL_CONFIG_FILE`` or
   ``/etc/provisionctl/config.yml``. A missing file is not an error.
3. ``PROVISIONCTL_*`` environment variables. ``__`` separates a section from
   its key, so ``PROVISIONCTL_PIPELINE__DEADLINE_SECONDS=900`` sets
   ``pipeline.deadline_seconds``. Numeric and boolean settings go through
   ``yaml.safe_load``; string and path settings are taken verbatim so a
   password such as ``010`` arrives intact.
4. Programmatic overrides.

Each section parses its own mapping and rejects keys it does not declare.
``site.admin_password`` has no default; when it is not injected the installer
generates a password per run.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, ClassVar

import yaml

ENV_PREFIX = "PROVISIONCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
SSH_PASSWORD_ENV_VAR = f"{ENV_PREFIX}SSH_PASSWORD"
SSH_PASSPHRASE_ENV_VAR = f"{ENV_PREFIX}SSH_PASSPHRASE"
# CLI credential variables share the prefix but are not configuration keys.
RESERVED_ENV_KEYS = frozenset({CONFIG_ENV_VAR, SSH_PASSWORD_ENV_VAR, SSH_PASSPHRASE_ENV_VAR})

DEFAULT_CONFIG_FILE = Path("/etc/provisionctl/config.yml")
DEFAULT_STATE_DIR = Path("/var/lib/provisionctl")
DEFAULT_LOGS_DIR = Path("/var/log/provisionctl")
DEFAULT_TEMPLATES_DIR = Path("/etc/provisionctl/templates")

_PATH_KEYS = ("state_dir", "registry_dir", "logs_dir", "templates_dir")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _positive_float(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number:g}.")
    return number


def _bool(value: object, label: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Expected {label} to be true or false. Got {value!r}.")


def _text(value: object, label: str) -> str:
    if isinstance(value, (str, int, float)) and not isinstance(value, bool):
        return str(value)
    raise ConfigError(f"Expected {label} to be a string. Got {value!r}.")


def _mapping(value: object, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    for key in value:
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
    return dict(value)


def _path(value: object, label: str) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str) and value.strip():
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


class _Section:
    """Mixin turning a raw mapping into a frozen section dataclass."""

    name: ClassVar[str]

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> _Section:
        raise NotImplementedError

    @classmethod
    def _known(cls, data: Mapping[str, Any]) -> dict[str, Any]:
        allowed = {item.name for item in fields(cls)}  # type: ignore[arg-type]
        unknown = set(data) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {cls.name} configuration keys: {joined}.")
        return dict(data)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        names = [item.name for item in fields(self)]  # type: ignore[arg-type]
        return {name: getattr(self, name) for name in names}


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PortsConfig(_Section):
    """Preview port pool and preview domain settings."""

    name: ClassVar[str] = "ports"

    base: int = 8000
    max: int = 9999
    preview_suffix: str = "preview.example.net"
    persist: bool = True

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PortsConfig:
        """Parse the ``ports`` section."""
        raw = cls._known(data)
        section = cls(
            base=_int(raw.get("base", cls.base), "ports.base"),
            max=_int(raw.get("max", cls.max), "ports.max"),
            preview_suffix=_text(
                raw.get("preview_suffix", cls.preview_suffix), "ports.preview_suffix"
            ).strip("."),
            persist=_bool(raw.get("persist", cls.persist), "ports.persist"),
        )
        if not (1 <= section.base <= 65535 and 1 <= section.max <= 65535):
            raise ConfigError("ports.base and ports.max must be valid TCP ports (1-65535).")
        if section.max < section.base:
            raise ConfigError("ports.max must be greater than or equal to ports.base.")
        if not section.preview_suffix:
            raise ConfigError("ports.preview_suffix must be a non-empty domain.")
        return section


@dataclass(frozen=True)
class SSHConfig(_Section):
    """Remote session tunables."""

    name: ClassVar[str] = "ssh"

    connect_timeout: float = 20.0
    keepalive_interval: int = 10
    command_timeout: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SSHConfig:
        """Parse the ``ssh`` section."""
        raw = cls._known(data)
        command_timeout = raw.get("command_timeout")
        section = cls(
            connect_timeout=_positive_float(
                raw.get("connect_timeout", cls.connect_timeout), "ssh.connect_timeout"
            ),
            keepalive_interval=_int(
                raw.get("keepalive_interval", cls.keepalive_interval), "ssh.keepalive_interval"
            ),
            command_timeout=(
                None
                if command_timeout is None
                else _positive_float(command_timeout, "ssh.command_timeout")
            ),
        )
        if section.keepalive_interval < 0:
            raise ConfigError("ssh.keepalive_interval must be non-negative.")
        return section


@dataclass(frozen=True)
class DetectionConfig(_Section):
    """Capability probe settings."""

    name: ClassVar[str] = "detection"

    max_concurrency: int = 5
    min_runtime_version: str = "8.1"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DetectionConfig:
        """Parse the ``detection`` section; concurrency is clamped to at least one."""
        raw = cls._known(data)
        return cls(
            max_concurrency=max(
                1,
                _int(raw.get("max_concurrency", cls.max_concurrency), "detection.max_concurrency"),
            ),
            min_runtime_version=_text(
                raw.get("min_runtime_version", cls.min_runtime_version),
                "detection.min_runtime_version",
            ),
        )


@dataclass(frozen=True)
class PipelineConfig(_Section):
    """Deadline and per-command limits for the step orchestrator."""

    name: ClassVar[str] = "pipeline"

    deadline_seconds: float = 600.0
    site_create_timeout: int = 120

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PipelineConfig:
        """Parse the ``pipeline`` section."""
        raw = cls._known(data)
        section = cls(
            deadline_seconds=_positive_float(
                raw.get("deadline_seconds", cls.deadline_seconds), "pipeline.deadline_seconds"
            ),
            site_create_timeout=_int(
                raw.get("site_create_timeout", cls.site_create_timeout),
                "pipeline.site_create_timeout",
            ),
        )
        if section.site_create_timeout <= 0:
            raise ConfigError("pipeline.site_create_timeout must be greater than zero.")
        return section


@dataclass(frozen=True)
class PreflightConfig(_Section):
    """Preflight thresholds."""

    name: ClassVar[str] = "preflight"

    min_free_mb: int = 1000

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PreflightConfig:
        raw = cls._known(data)
        section = cls(
            min_free_mb=_int(raw.get("min_free_mb", cls.min_free_mb), "preflight.min_free_mb")
        )
        if section.min_free_mb < 0:
            raise ConfigError("preflight.min_free_mb must be non-negative.")
        return section


@dataclass(frozen=True)
class SiteConfig(_Section):
    """Defaults applied to provisioned sites and the remote stack layout."""

    name: ClassVar[str] = "site"

    admin_username: str = "admin"
    admin_password: str | None = None
    default_title: str = "WordPress Site"
    web_root: str = "/var/www"
    web_user: str = "www-data"
    php_flag: str = "--php82"
    php_fpm_socket: str = "/var/run/php/php8.2-fpm.sock"
    site_manager_installer_url: str = "https://wops.cc"
    site_cli_url: str = "https://raw.githubusercontent.com/wp-cli/builds/gh-pages/phar/wp-cli.phar"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SiteConfig:
        """Parse the ``site`` section. An empty password counts as not injected."""
        raw = cls._known(data)
        values: dict[str, Any] = {}
        for item in fields(cls):
            if item.name == "admin_password" or item.name not in raw:
                continue
            values[item.name] = _text(raw[item.name], f"site.{item.name}")
        password = raw.get("admin_password")
        if password not in (None, ""):
            values["admin_password"] = _text(password, "site.admin_password")
        if "web_root" in values:
            values["web_root"] = values["web_root"].rstrip("/") or "/"
        section = cls(**values)
        if not section.admin_username.strip():
            raise ConfigError("site.admin_username must be a non-empty string.")
        return section

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with the password masked."""
        payload = super().to_dict()
        payload["admin_password"] = "***" if self.admin_password else None
        return payload


_SECTIONS: dict[str, type[_Section]] = {
    section.name: section
    for section in (
        PortsConfig,
        SSHConfig,
        DetectionConfig,
        PipelineConfig,
        PreflightConfig,
        SiteConfig,
    )
}
ALLOWED_TOP_LEVEL_KEYS = frozenset({"config_file", *_PATH_KEYS, *_SECTIONS})
# Environment values for these keys are taken verbatim rather than parsed as YAML.
_TEXT_KEYS = frozenset(
    {(key,) for key in _PATH_KEYS}
    | {
        (name, item.name)
        for name, section in _SECTIONS.items()
        for item in fields(section)  # type: ignore[arg-type]
        if item.type in ("str", "str | None")
    }
)


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for provisionctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    templates_dir: Path
    ports: PortsConfig
    ssh: SSHConfig
    detection: DetectionConfig
    pipeline: PipelineConfig
    preflight: PreflightConfig
    site: SiteConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        payload: dict[str, object] = {"config_file": str(self.config_file)}
        for key in _PATH_KEYS:
            payload[key] = str(getattr(self, key))
        for name in _SECTIONS:
            payload[name] = getattr(self, name).to_dict()
        return payload


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge every configuration source into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file)
    elif environ.get(CONFIG_ENV_VAR):
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = DEFAULT_CONFIG_FILE

    raw: dict[str, Any] = {}
    for layer in (_file_layer(path), _env_layer(environ), _mapping(overrides, "overrides")):
        _merge(raw, layer)
    raw.pop("config_file", None)

    unknown = set(raw) - ALLOWED_TOP_LEVEL_KEYS
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")

    state_dir = _path(raw.get("state_dir", DEFAULT_STATE_DIR), "state_dir")
    registry_raw = raw.get("registry_dir")
    sections: dict[str, Any] = {
        name: section.from_mapping(_mapping(raw.get(name), name))
        for name, section in _SECTIONS.items()
    }
    return AppConfig(
        config_file=path,
        state_dir=state_dir,
        registry_dir=(
            _path(registry_raw, "registry_dir") if registry_raw else state_dir / "registry"
        ),
        logs_dir=_path(raw.get("logs_dir", DEFAULT_LOGS_DIR), "logs_dir"),
        templates_dir=_path(raw.get("templates_dir", DEFAULT_TEMPLATES_DIR), "templates_dir"),
        **sections,
    )


def _file_layer(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _mapping(data, str(path))


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX) or key in RESERVED_ENV_KEYS:
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"Environment variable {key} conflicts with a scalar value.")
            node = child
        node[path[-1]] = value if tuple(path) in _TEXT_KEYS else _env_value(value)
    return layer


def _env_value(value: str) -> object:
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _merge(target: dict[str, Any], layer: Mapping[str, Any]) -> None:
    # Nested mappings are copied so later layers never mutate earlier ones.
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(value, Mapping):
            if not isinstance(current, dict):
                current = target[key] = {}
            _merge(current, value)
        else:
            target[key] = value


__all__ = [
    "AppConfig",
    "CONFIG_ENV_VAR",
    "ConfigError",
    "DetectionConfig",
    "PipelineConfig",
    "PortsConfig",
    "PreflightConfig",
    "SSHConfig",
    "SSH_PASSPHRASE_ENV_VAR",
    "SSH_PASSWORD_ENV_VAR",
    "SiteConfig",
    "load_config",
]
