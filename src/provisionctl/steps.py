"""Declared installation steps and their implementations."""

from __future__ import annotations

import logging

from .errors import CommandError, ConflictError, PreflightError
from .models import InstallationOptions, ServerCapabilities
from .pipeline import StepContext, StepDescriptor
from .stack import site_id_for

LOGGER = logging.getLogger(__name__)

BOOTSTRAP = "bootstrap"
PREVIEW_TEMPLATE = "nginx/preview.conf.j2"


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def full_path(capabilities: ServerCapabilities, options: InstallationOptions) -> bool:
    """Return ``True`` when the host needs system setup."""
    return not options.skip_system_setup and not capabilities.is_configured


def site_cli_missing(capabilities: ServerCapabilities, options: InstallationOptions) -> bool:
    """Return ``True`` when WP-CLI must be installed on demand."""
    return not capabilities.has_site_cli


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _site_id(ctx: StepContext) -> str:
    return site_id_for(ctx.domain, ctx.assigned_port)


def _attempt(ctx: StepContext, command: str) -> bool:
    """Run *command*, streaming output, and report success without raising."""
    return ctx.connection.run(command, on_line=ctx.output).ok


def _check_conflicts(ctx: StepContext, identifiers: list[str]) -> None:
    stack = ctx.stack
    for identifier in identifiers:
        if ctx.capabilities.has_site_manager and ctx.probe(stack.site_info(identifier)).ok:
            raise ConflictError(identifier, "the site manager already manages this site")
        if ctx.probe(stack.vhost_exists(identifier)).ok:
            raise ConflictError(
                identifier, f"an nginx vhost exists at {stack.vhost_path(identifier)}"
            )
        if ctx.probe(stack.wp_config_exists(identifier)).ok:
            raise ConflictError(
                identifier, f"WordPress is already installed in {stack.site_root(identifier)}"
            )
    if ctx.capabilities.has_database:
        result = ctx.probe(stack.database_exists(ctx.domain))
        if result.ok and result.stdout.strip():
            raise ConflictError(ctx.domain, f"database '{result.stdout.strip()}' already exists")


def _identifiers(ctx: StepContext) -> list[str]:
    site_id = _site_id(ctx)
    return [ctx.domain] if site_id == ctx.domain else [ctx.domain, site_id]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


def preflight(ctx: StepContext) -> None:
    """Refuse to touch a host that already serves the domain."""
    _check_conflicts(ctx, _identifiers(ctx))

    minimum = ctx.config.preflight.min_free_mb
    result = ctx.probe(ctx.stack.free_disk_mb())
    raw = result.stdout.strip()
    try:
        free_mb = int(raw)
    except ValueError:
        ctx.warn(f"Could not determine free disk space (got {raw!r}).")
        return
    ctx.output(f"Free disk space: {free_mb} MB")
    if free_mb < minimum:
        raise PreflightError(
            f"Only {free_mb} MB free on /; at least {minimum} MB is required."
        )


def system_update(ctx: StepContext) -> None:
    """Refresh and upgrade system packages."""
    for command in ctx.stack.system_update():
        ctx.run(command)


def dependencies(ctx: StepContext) -> None:
    """Install base packages."""
    for command in ctx.stack.dependencies():
        ctx.run(command)


def stack_install(ctx: StepContext) -> None:
    """Install the site manager and its web stack."""
    for command in ctx.stack.stack_install():
        ctx.run(command)


def site_cli(ctx: StepContext) -> None:
    """Install WP-CLI."""
    for command in ctx.stack.site_cli_install():
        ctx.run(command)


def site_create(ctx: StepContext) -> None:
    """Create the WordPress site and expose it on the preview port."""
    stack = ctx.stack
    site_id = _site_id(ctx)

    if ctx.probe(stack.site_info(site_id)).ok:
        raise ConflictError(site_id, "the site appeared on the host before creation")

    ctx.run(stack.kill_stale_creates(), critical=False)
    command = stack.site_create(
        site_id,
        username=ctx.admin_username,
        password=ctx.admin_password,
        email=ctx.admin_email,
    )
    result = ctx.connection.run(command, on_line=ctx.output)
    if not result.ok:
        if ctx.probe(stack.site_info(site_id)).ok:
            ctx.warn(
                f"Site creation exited with {result.exit_code} but {site_id} exists; continuing."
            )
        else:
            raise CommandError(
                ctx.mask(command),
                result.exit_code,
                ctx.mask(result.stderr or result.stdout),
            )

    if ctx.assigned_port is not None:
        _configure_preview_vhost(ctx, site_id, ctx.assigned_port)


def _configure_preview_vhost(ctx: StepContext, site_id: str, port: int) -> None:
    stack = ctx.stack
    content = ctx.templates.render_to_string(
        PREVIEW_TEMPLATE,
        {
            "domain": ctx.domain,
            "port": port,
            "site_id": site_id,
            "site_root": stack.site_root(site_id),
            "php_fpm_socket": ctx.config.site.php_fpm_socket,
            "preview_domain": ctx.preview_domain,
        },
    )
    ctx.run(stack.write_file(stack.vhost_path(site_id), content))
    ctx.run(stack.enable_vhost(site_id))
    if ctx.run(stack.web_server_test(), critical=False).ok:
        ctx.run(stack.web_server_reload(), critical=False)
    else:
        ctx.warn("nginx rejected the preview configuration; reload skipped.")


def customize(ctx: StepContext) -> None:
    """Apply site URL, title, theme and plugins."""
    stack = ctx.stack
    site_id = _site_id(ctx)
    custom = ctx.options.customization

    if ctx.assigned_port is not None:
        url = f"http://{ctx.connection.remote_ip}:{ctx.assigned_port}"
        ctx.run(stack.wp(site_id, "option", "update", "siteurl", url))
        ctx.run(stack.wp(site_id, "option", "update", "home", url))

    ctx.run(stack.wp(site_id, "option", "update", "blogname", ctx.site_title))

    if custom.theme is not None:
        theme = custom.theme
        installed = _attempt(ctx, stack.wp(site_id, "theme", "install", theme.slug, "--activate"))
        if not installed and theme.download_url:
            ctx.output(f"Theme '{theme.slug}' not found by slug; trying download URL.")
            installed = _attempt(
                ctx, stack.wp(site_id, "theme", "install", theme.download_url, "--activate")
            )
        if not installed:
            ctx.warn(f"Theme '{theme.slug}' could not be installed.")

    for plugin in custom.plugins:
        if not _attempt(ctx, stack.wp(site_id, "plugin", "install", plugin, "--activate")):
            ctx.warn(f"Plugin '{plugin}' could not be installed.")

    ctx.run(stack.wp(site_id, "cache", "flush"), critical=False)
    ctx.run(stack.wp(site_id, "rewrite", "structure", "/%postname%/", "--hard"), critical=False)


def hardening(ctx: StepContext) -> None:
    """Normalise file ownership and open the firewall."""
    for command in ctx.stack.normalize_permissions(_site_id(ctx)):
        ctx.run(command, critical=False)
    for command in ctx.stack.firewall_rules(ctx.assigned_port):
        ctx.run(command, critical=False)


def build_steps() -> list[StepDescriptor]:
    """Return the ordered step list for a WordPress installation."""
    return [
        StepDescriptor("preflight", "Preflight checks", preflight),
        StepDescriptor(
            "system_update", "Update system packages", system_update, full_path, BOOTSTRAP
        ),
        StepDescriptor("dependencies", "Install base packages", dependencies, full_path, BOOTSTRAP),
        StepDescriptor("stack_install", "Install web stack", stack_install, full_path, BOOTSTRAP),
        StepDescriptor("site_cli", "Install WP-CLI", site_cli, site_cli_missing, BOOTSTRAP),
        StepDescriptor("site_create", "Create WordPress site", site_create),
        StepDescriptor("customize", "Customize site", customize),
        StepDescriptor("hardening", "Harden site", hardening, full_path),
    ]


__all__ = [
    "BOOTSTRAP",
    "build_steps",
    "customize",
    "dependencies",
    "full_path",
    "hardening",
    "preflight",
    "site_cli",
    "site_cli_missing",
    "site_create",
    "stack_install",
    "system_update",
]
