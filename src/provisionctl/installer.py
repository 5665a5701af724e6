"""High-level installation entry point."""
from __future__ import annotations

import logging
import secrets
import threading
import uuid
from collections.abc import Callable, Sequence

from .config import AppConfig
from .connection import Connection, SSHConnection
from .detector import ConfigurationDetector
from .errors import (
    InstallationCancelledError,
    InstallationError,
    InstallationTimeoutError,
    PortAllocationError,
)
from .events import EventEmitter, EventType
from .models import ConnectionConfig, InstallationOptions, InstallationResult
from .pipeline import Orchestrator, StepContext, StepDescriptor
from .ports import PortAllocator
from .result import build_result
from .stack import WordOpsStack
from .steps import build_steps
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

ConnectionFactory = Callable[[ConnectionConfig], Connection]


class Installer:
    """Turn a reachable Linux host into a running WordPress site.

    One :meth:`install` call owns one SSH session, one event emitter and one
    orchestrator. The port allocator is the only state shared between
    concurrent calls.
    """

    def __init__(
        self,
        config: AppConfig,
        allocator: PortAllocator,
        logger: logging.Logger | None = None,
        *,
        detector: ConfigurationDetector | None = None,
        templates: TemplateEngine | None = None,
        connection_factory: ConnectionFactory | None = None,
        steps: Callable[[], Sequence[StepDescriptor]] = build_steps,
    ) -> None:
        """Wire collaborators, defaulting to the configured implementations."""
        self.config = config
        self.allocator = allocator
        self.logger = logger or LOGGER
        self.detector = detector or ConfigurationDetector(
            max_concurrency=config.detection.max_concurrency,
            min_runtime_version=config.detection.min_runtime_version,
        )
        self.templates = templates or TemplateEngine.with_overrides(config.templates_dir)
        self.connection_factory = connection_factory or self._default_connection
        self.steps = steps
        self._lock = threading.Lock()
        # None marks an installation that has started but has no orchestrator yet.
        self._active: dict[str, Orchestrator | None] = {}
        self._cancel_requests: set[str] = set()

    # ------------------------------------------------------------------
    def install(
        self,
        connection_config: ConnectionConfig,
        options: InstallationOptions,
        emitter: EventEmitter | None = None,
    ) -> InstallationResult:
        """Provision a site and return how to reach it."""
        connection_config.validate()
        options.validate()

        installation_id = (options.installation_id or "").strip() or uuid.uuid4().hex
        emitter = emitter or EventEmitter(installation_id)
        connection = self.connection_factory(connection_config)
        with self._lock:
            self._active.setdefault(installation_id, None)
        holds_port = False

        try:
            self._connect(connection, connection_config, emitter)
            capabilities = self.detector.detect(connection)
            for warning in capabilities.warnings:
                emitter.emit(EventType.OUTPUT, {"step": None, "line": f"warning: {warning}"})

            custom = options.customization
            site_title = custom.site_title or self.config.site.default_title
            assigned_port = self._reserve_port(installation_id, emitter)
            holds_port = assigned_port is not None
            preview_domain = (
                self.allocator.preview_domain(options.requester_id, site_title)
                if assigned_port is not None
                else None
            )

            context = StepContext(
                connection=connection,
                options=options,
                capabilities=capabilities,
                stack=WordOpsStack(
                    self.config.site, create_timeout=self.config.pipeline.site_create_timeout
                ),
                templates=self.templates,
                config=self.config,
                admin_username=custom.admin_username or self.config.site.admin_username,
                admin_password=self._admin_password(options),
                admin_email=custom.admin_email or options.requester_email,
                site_title=site_title,
                assigned_port=assigned_port,
                preview_domain=preview_domain,
            )
            orchestrator = Orchestrator(
                self.steps(),
                emitter=emitter,
                deadline_seconds=self.config.pipeline.deadline_seconds,
            )
            with self._lock:
                self._active[installation_id] = orchestrator
                if installation_id in self._cancel_requests:
                    orchestrator.cancel()

            records = orchestrator.run(context)
            result = build_result(
                options,
                ip_address=connection.remote_ip,
                assigned_port=assigned_port,
                preview_domain=preview_domain,
                username=context.admin_username,
                password=context.admin_password,
                steps=records,
            )
            emitter.emit(EventType.INSTALLATION_COMPLETE, result.to_dict())
            self.logger.info("Installation %s completed: %s", installation_id, result.access_url)
            return result
        except (InstallationError, InstallationTimeoutError, InstallationCancelledError) as exc:
            self.logger.warning("Installation %s failed: %s", installation_id, exc)
            if holds_port:
                self.allocator.release(installation_id)
            raise
        except Exception as exc:
            self.logger.warning("Installation %s failed: %s", installation_id, exc)
            if holds_port:
                self.allocator.release(installation_id)
            emitter.emit(EventType.ERROR, {"message": str(exc), "step": None})
            raise
        finally:
            connection.disconnect()
            with self._lock:
                self._active.pop(installation_id, None)
                self._cancel_requests.discard(installation_id)

    def cancel(self, installation_id: str) -> bool:
        """Request cancellation of a started installation.

        Returns ``False`` without recording anything when *installation_id* is
        not running, so a late cancel never affects a later retry.
        """
        installation_id = installation_id.strip()
        with self._lock:
            if installation_id not in self._active:
                return False
            orchestrator = self._active[installation_id]
            if orchestrator is None:
                self._cancel_requests.add(installation_id)
                return True
        orchestrator.cancel()
        return True

    # ------------------------------------------------------------------
    def _default_connection(self, connection_config: ConnectionConfig) -> Connection:
        return SSHConnection(
            connection_config,
            connect_timeout=self.config.ssh.connect_timeout,
            keepalive_interval=self.config.ssh.keepalive_interval,
            command_timeout=self.config.ssh.command_timeout,
        )

    def _connect(
        self,
        connection: Connection,
        connection_config: ConnectionConfig,
        emitter: EventEmitter,
    ) -> None:
        target = f"{connection_config.host}:{connection_config.port}"
        emitter.emit(
            EventType.OUTPUT,
            {
                "step": None,
                "line": f"Connecting to {target} as {connection_config.username} "
                f"({connection_config.auth_method})",
            },
        )
        connection.connect()
        emitter.emit(
            EventType.CONNECTED,
            {
                "host": connection_config.host,
                "port": connection_config.port,
                "username": connection_config.username,
            },
        )

    def _reserve_port(self, installation_id: str, emitter: EventEmitter) -> int | None:
        existing = self.allocator.get_port(installation_id)
        if existing is not None:
            return existing
        try:
            return self.allocator.allocate(installation_id).port
        except PortAllocationError as exc:
            self.logger.warning("No preview port for %s: %s", installation_id, exc)
            emitter.emit(
                EventType.OUTPUT,
                {"step": None, "line": f"warning: {exc} Falling back to direct access."},
            )
            return None

    def _admin_password(self, options: InstallationOptions) -> str:
        return (
            options.customization.admin_password
            or self.config.site.admin_password
            or secrets.token_urlsafe(16)
        )


__all__ = ["ConnectionFactory", "Installer"]
