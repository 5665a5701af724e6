"""Assemble the final installation result."""
from __future__ import annotations

from collections.abc import Sequence

from .models import (
    AccessMethod,
    InstallationOptions,
    InstallationResult,
    SiteCredentials,
    SiteInfo,
    StepRecord,
)

ADMIN_PATH = "/wp-admin"


def dns_instructions(ip_address: str) -> tuple[str, ...]:
    """Return generic DNS A-record instructions pointing at *ip_address*."""
    return (
        "Sign in to the DNS provider that hosts your domain.",
        "Open the DNS records of the domain.",
        "Remove any existing A records for @ and www.",
        f"Add an A record: name @, value {ip_address}",
        f"Add an A record: name www, value {ip_address}",
        "Wait for propagation (usually minutes, up to 48 hours).",
    )


def access_methods(
    options: InstallationOptions,
    ip_address: str,
    assigned_port: int | None,
    preview_domain: str | None,
) -> tuple[AccessMethod, ...]:
    """Return access methods, primary first."""
    methods: list[AccessMethod] = []
    if assigned_port is not None:
        methods.append(AccessMethod("port", f"http://{ip_address}:{assigned_port}", primary=True))
        if preview_domain:
            methods.append(AccessMethod("preview", f"http://{preview_domain}"))
        if not options.is_ip_installation:
            methods.append(AccessMethod("domain", f"http://{options.domain}"))
        methods.append(AccessMethod("ip", f"http://{ip_address}"))
        return tuple(methods)

    if options.is_ip_installation:
        methods.append(AccessMethod("ip", f"http://{ip_address}", primary=True))
    else:
        methods.append(AccessMethod("domain", f"http://{options.domain}", primary=True))
        methods.append(AccessMethod("ip", f"http://{ip_address}"))
    return tuple(methods)


def build_result(
    options: InstallationOptions,
    *,
    ip_address: str,
    assigned_port: int | None,
    preview_domain: str | None,
    username: str,
    password: str,
    steps: Sequence[StepRecord] = (),
) -> InstallationResult:
    """Return the :class:`InstallationResult` for a successful installation."""
    methods = access_methods(options, ip_address, assigned_port, preview_domain)
    access_url = methods[0].url
    admin_url = f"{access_url}{ADMIN_PATH}"
    return InstallationResult(
        success=True,
        site_info=SiteInfo(
            domain=options.domain,
            ip_address=ip_address,
            access_url=access_url,
            admin_url=admin_url,
            assigned_port=assigned_port,
        ),
        credentials=SiteCredentials(
            site_url=access_url,
            admin_url=admin_url,
            username=username,
            password=password,
        ),
        access_methods=methods,
        dns_instructions=dns_instructions(ip_address),
        preview_domain=preview_domain,
        steps=tuple(record.to_dict() for record in steps),
    )


__all__ = ["ADMIN_PATH", "access_methods", "build_result", "dns_instructions"]
