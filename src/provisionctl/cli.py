"""Typer-powered command line interface for ``provisionctl``.

Commands share a :class:`RuntimeContext` built once per invocation from the
layered configuration. Every command records its outcome through
:class:`~provisionctl.logging.StructuredLogger`.
"""
from __future__ import annotations

import textwrap
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import (
    SSH_PASSPHRASE_ENV_VAR,
    SSH_PASSWORD_ENV_VAR,
    AppConfig,
    ConfigError,
    load_config,
)
from .connection import SSHConnection
from .detector import ConfigurationDetector
from .errors import InstallationError, ProvisionError
from .events import EventEmitter, EventType, InstallationEvent
from .exit_codes import ExitCode, exit_code_for
from .installer import Installer
from .logging import OperationScope, StructuredLogger
from .models import (
    ConnectionConfig,
    InstallationOptions,
    InstallationResult,
    ServerCapabilities,
    SiteCustomization,
    ThemeReference,
)
from .ports import PortAllocator
from .state import StateRegistryError
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to provisionctl's YAML config file.",
)
HOST_OPTION = typer.Option(..., "--host", help="Address of the target host.")
SSH_PORT_OPTION = typer.Option(22, "--ssh-port", help="SSH port of the target host.")
USER_OPTION = typer.Option("root", "--user", "-u", help="SSH username.")
PASSWORD_OPTION = typer.Option(
    None,
    "--password",
    envvar=SSH_PASSWORD_ENV_VAR,
    help=f"SSH password (or set {SSH_PASSWORD_ENV_VAR}).",
)
KEY_FILE_OPTION = typer.Option(
    None,
    "--key-file",
    exists=True,
    dir_okay=False,
    readable=True,
    help="Path to a PEM private key used instead of a password.",
)
PASSPHRASE_OPTION = typer.Option(
    None,
    "--passphrase",
    envvar=SSH_PASSPHRASE_ENV_VAR,
    help="Passphrase of the private key.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Remote WordPress provisioning CLI.

        Connects to a Linux host over SSH, prepares the web stack when needed
        and creates a WordPress site reachable through a preview port.
        """
    ).strip(),
)
ports_app = typer.Typer(help="Inspect and manage preview port reservations.")
app.add_typer(ports_app, name="ports")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    allocator: PortAllocator


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
        allocator = PortAllocator.from_config(config)
    except (ConfigError, StateRegistryError, ProvisionError, OSError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        allocator=allocator,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the provisionctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"provisionctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FAILURE),
    errors: Sequence[str] | None = None,
    context: dict[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc, context=context)
    raise typer.Exit(code=rc)


def _fail_with(op: OperationScope, exc: ProvisionError) -> NoReturn:
    code = exit_code_for(exc)
    context: dict[str, object] = {"kind": type(exc).__name__}
    diagnostics = getattr(exc, "context", None)
    if isinstance(diagnostics, dict):
        context.update(diagnostics)
    if isinstance(exc, InstallationError):
        context["kind"] = exc.kind
        context["step"] = exc.step_id
    causes = getattr(exc, "causes", ())
    if causes:
        console.print("Possible causes:")
        for cause in causes:
            console.print(f"  - {cause}")
    _command_error(op, str(exc), rc=int(code), context=context)


def _connection_config(
    host: str,
    ssh_port: int,
    user: str,
    password: str | None,
    key_file: Path | None,
    passphrase: str | None,
) -> ConnectionConfig:
    private_key = key_file.read_text(encoding="utf-8") if key_file is not None else None
    return ConnectionConfig(
        host=host,
        port=ssh_port,
        username=user,
        password=password if private_key is None else None,
        private_key=private_key,
        passphrase=passphrase,
    )


class _ConsoleReporter:
    """Render installation events with Rich and mirror steps into the op log."""

    def __init__(self, op: OperationScope, *, quiet: bool) -> None:
        self._op = op
        self._quiet = quiet

    def __call__(self, event: InstallationEvent) -> None:
        payload = event.payload
        if event.type is EventType.STEP_COMPLETE:
            self._op.add_step(
                f"step.{payload['id']}", status="success", detail=payload.get("durationMs")
            )
        elif event.type is EventType.STEP_SKIPPED:
            self._op.add_step(f"step.{payload['id']}", status="skipped")
        elif event.type is EventType.STEP_ERROR:
            self._op.add_step(
                f"step.{payload['id']}", status="error", detail=payload.get("error")
            )
        if self._quiet:
            return

        if event.type is EventType.CONNECTED:
            console.print(
                f"[green]Connected[/green] to {payload.get('host')}:{payload.get('port')}"
            )
        elif event.type is EventType.STEP_START:
            console.print(f"[bold cyan]>[/bold cyan] {payload['label']}")
        elif event.type is EventType.STEP_SKIPPED:
            console.print(f"[yellow]-[/yellow] {payload['label']} (skipped)")
        elif event.type is EventType.STEP_COMPLETE:
            console.print(
                f"[green]✓[/green] {payload['label']} ({payload.get('durationMs')} ms)"
            )
        elif event.type is EventType.STEP_ERROR:
            console.print(f"[red]✗[/red] {payload['label']}: {payload.get('error')}")
        elif event.type is EventType.OUTPUT:
            console.print(
                f"  {payload.get('line', '')}", style="dim", markup=False, highlight=False
            )


def _render_result(result: InstallationResult) -> None:
    console.print()
    console.print(f"[bold green]Site ready:[/bold green] {result.access_url}")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Access")
    table.add_column("URL")
    table.add_column("Primary")
    for method in result.access_methods:
        table.add_row(method.type, method.url, "yes" if method.primary else "")
    console.print(table)
    console.print(f"Admin URL: {result.admin_url}")
    console.print(f"Username:  {result.credentials.username}")
    console.print(f"Password:  {result.credentials.password}")
    if result.preview_domain:
        console.print(f"Preview domain: {result.preview_domain}")
    console.print()
    console.print("[bold]DNS setup[/bold]")
    for index, line in enumerate(result.dns_instructions, start=1):
        console.print(f"  {index}. {line}")


def _render_capabilities(capabilities: ServerCapabilities) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Component", style="bold")
    table.add_column("Present")
    rows = (
        ("site manager (wo)", capabilities.has_site_manager),
        ("web server (nginx)", capabilities.has_web_server),
        ("database (mysql)", capabilities.has_database),
        ("runtime (php)", capabilities.has_runtime),
        ("site CLI (wp)", capabilities.has_site_cli),
    )
    for label, present in rows:
        table.add_row(label, "[green]yes[/green]" if present else "[red]no[/red]")
    console.print(table)
    if capabilities.runtime_version:
        console.print(f"Runtime version: {capabilities.runtime_version}")
    state = "configured" if capabilities.is_configured else "needs setup"
    console.print(f"Host is {state}.")
    for warning in capabilities.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")


@app.command("install")
def install(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    ssh_port: int = SSH_PORT_OPTION,
    user: str = USER_OPTION,
    password: str | None = PASSWORD_OPTION,
    key_file: Path | None = KEY_FILE_OPTION,
    passphrase: str | None = PASSPHRASE_OPTION,
    domain: str = typer.Option(..., "--domain", "-d", help="Domain (or IP) of the new site."),
    email: str = typer.Option(..., "--email", help="Email of the requesting user."),
    requester_id: str = typer.Option(..., "--requester-id", help="Identifier of the requester."),
    installation_id: str | None = typer.Option(
        None, "--installation-id", help="Stable identifier used for the port reservation."
    ),
    title: str | None = typer.Option(None, "--title", help="Site title."),
    admin_user: str | None = typer.Option(None, "--admin-user", help="WordPress admin username."),
    admin_email: str | None = typer.Option(None, "--admin-email", help="WordPress admin email."),
    theme: str | None = typer.Option(None, "--theme", help="Theme slug to install and activate."),
    theme_url: str | None = typer.Option(
        None, "--theme-url", help="Fallback download URL for the theme."
    ),
    plugins: list[str] | None = typer.Option(
        None, "--plugin", help="Plugin slug to install (repeatable)."
    ),
    skip_system_setup: bool = typer.Option(
        False, "--skip-system-setup", help="Assume the web stack is already installed."
    ),
    json_output: bool = typer.Option(False, "--json", help="Emit the result as JSON."),
) -> None:
    """Provision a WordPress site on a remote host."""
    runtime = _get_runtime(ctx)
    args = {
        "host": host,
        "ssh_port": ssh_port,
        "user": user,
        "auth": "private-key" if key_file else "password",
        "domain": domain,
        "skip_system_setup": skip_system_setup,
        "json": json_output,
    }
    with runtime.logger.operation(
        "install",
        args=args,
        target={"kind": "site", "domain": domain, "host": host},
    ) as op:
        # One id keys both the event stream and the port reservation.
        run_id = (installation_id or "").strip() or uuid.uuid4().hex
        connection_config = _connection_config(
            host, ssh_port, user, password, key_file, passphrase
        )
        options = InstallationOptions(
            domain=domain,
            requester_email=email,
            requester_id=requester_id,
            installation_id=run_id,
            skip_system_setup=skip_system_setup,
            customization=SiteCustomization(
                site_title=title,
                admin_username=admin_user,
                admin_email=admin_email,
                theme=ThemeReference(slug=theme, download_url=theme_url) if theme else None,
                plugins=tuple(plugins or ()),
            ),
        )
        emitter = EventEmitter(run_id)
        emitter.subscribe(_ConsoleReporter(op, quiet=json_output))
        installer = Installer(runtime.config, runtime.allocator, templates=runtime.templates)
        try:
            result = installer.install(connection_config, options, emitter)
        except ProvisionError as exc:
            _fail_with(op, exc)
        finally:
            emitter.close()

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            _render_result(result)
        warnings = [
            f"{step['id']}: {warning}"
            for step in result.steps
            for warning in step.get("warnings", [])
        ]
        context = {
            "access_url": result.access_url,
            "assigned_port": result.site_info.assigned_port,
            "preview_domain": result.preview_domain,
        }
        if warnings:
            op.warning(
                "Installation completed with warnings.",
                warnings=warnings,
                changed=1,
                context=context,
            )
        else:
            op.success("Installation completed.", changed=1, context=context)


@app.command("detect")
def detect(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    ssh_port: int = SSH_PORT_OPTION,
    user: str = USER_OPTION,
    password: str | None = PASSWORD_OPTION,
    key_file: Path | None = KEY_FILE_OPTION,
    passphrase: str | None = PASSPHRASE_OPTION,
    json_output: bool = typer.Option(False, "--json", help="Emit capabilities as JSON."),
) -> None:
    """Report which stack components are present on a host."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "detect",
        args={"host": host, "ssh_port": ssh_port, "user": user, "json": json_output},
        target={"kind": "host", "host": host},
    ) as op:
        connection_config = _connection_config(
            host, ssh_port, user, password, key_file, passphrase
        )
        detector = ConfigurationDetector(
            max_concurrency=config.detection.max_concurrency,
            min_runtime_version=config.detection.min_runtime_version,
        )
        try:
            connection_config.validate()
            with SSHConnection(
                connection_config,
                connect_timeout=config.ssh.connect_timeout,
                keepalive_interval=config.ssh.keepalive_interval,
                command_timeout=config.ssh.command_timeout,
            ) as connection:
                capabilities = detector.detect(connection)
        except ProvisionError as exc:
            _fail_with(op, exc)

        op.add_step("detect.probes", status="success", detail=capabilities.to_dict())
        if json_output:
            console.print_json(data=capabilities.to_dict())
        else:
            _render_capabilities(capabilities)
        op.success("Reported host capabilities.", changed=0, context=capabilities.to_dict())


@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port reservations as JSON instead of a table.",
    ),
) -> None:
    """List reserved preview ports."""
    runtime = _get_runtime(ctx)
    entries = [item.to_dict() for item in runtime.allocator.list_reservations()]

    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port reservations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Installation", style="bold")
        table.add_column("Port")
        table.add_column("Reserved at")

        if not entries:
            table.add_row("(none)", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry["installation_id"]), str(entry["port"]), str(entry["reserved_at"])
                )

        console.print(table)
        op.success("Reported port reservations.", changed=0)


@ports_app.command("release")
def ports_release(
    ctx: typer.Context,
    installation_id: str = typer.Argument(..., help="Installation whose port to release."),
) -> None:
    """Release the preview port held by an installation."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports release",
        args={"installation_id": installation_id},
        target={"kind": "ports", "installation_id": installation_id},
    ) as op:
        try:
            reservation = runtime.allocator.release(installation_id)
        except ProvisionError as exc:
            _fail_with(op, exc)
        except (StateRegistryError, OSError) as exc:
            _command_error(op, f"Failed to update port registry: {exc}")
        if reservation is None:
            console.print(f"No port reserved for '{installation_id}'.")
            op.success("No reservation to release.", changed=0)
            return
        console.print(f"Released port {reservation.port} from '{installation_id}'.")
        op.add_step("registry.write_ports", status="success", detail=reservation.port)
        op.success("Released port reservation.", changed=1, context=reservation.to_dict())


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
