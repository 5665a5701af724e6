"""Shell command catalogue for the WordOps + nginx + MySQL + PHP stack.

Every value interpolated into a command goes through :func:`shlex.quote`.
The command strings are executed remotely by the pipeline steps; nothing in
this module touches the network.
"""
from __future__ import annotations

import shlex
from dataclasses import dataclass

from .config import SiteConfig

SITES_AVAILABLE = "/etc/nginx/sites-available"
SITES_ENABLED = "/etc/nginx/sites-enabled"
SITE_CLI_PATH = "/usr/local/bin/wp"

PROBE_COMMANDS: dict[str, str] = {
    "has_site_manager": "command -v wo",
    "has_web_server": "command -v nginx",
    "has_database": "command -v mysql",
    "has_runtime": "command -v php",
    "has_site_cli": "command -v wp",
}
RUNTIME_VERSION_COMMAND = "php -r 'echo PHP_VERSION;'"

BASE_PACKAGES: tuple[str, ...] = ("curl", "wget", "ca-certificates", "fail2ban", "ufw")
FIREWALL_PORTS: tuple[int, ...] = (22, 80, 443)


def site_id_for(domain: str, port: int | None) -> str:
    """Return the site identifier used by the site manager."""
    return f"{domain}-port{port}" if port is not None else domain


def database_name_for(domain: str) -> str:
    """Return the database name the site manager derives from *domain*."""
    return domain.replace(".", "_").replace("-", "_")


@dataclass(frozen=True, slots=True)
class WordOpsStack:
    """Build remote commands for one configured stack layout."""

    site: SiteConfig
    create_timeout: int = 120

    # -- Paths -------------------------------------------------------------

    def site_root(self, site_id: str) -> str:
        """Return the document root of *site_id*."""
        return f"{self.site.web_root}/{site_id}/htdocs"

    def vhost_path(self, site_id: str) -> str:
        """Return the nginx vhost path for *site_id*."""
        return f"{SITES_AVAILABLE}/{site_id}"

    # -- Preflight ---------------------------------------------------------

    def site_info(self, site_id: str) -> str:
        """Exit zero when the site manager knows *site_id*."""
        return f"wo site info {shlex.quote(site_id)}"

    def vhost_exists(self, site_id: str) -> str:
        """Exit zero when an nginx vhost exists for *site_id*."""
        return f"test -e {shlex.quote(self.vhost_path(site_id))}"

    def wp_config_exists(self, site_id: str) -> str:
        """Exit zero when the site root already holds ``wp-config.php``."""
        return f"test -e {shlex.quote(self.site_root(site_id) + '/wp-config.php')}"

    def database_exists(self, domain: str) -> str:
        """Print the database name when a database named after *domain* exists."""
        query = f"SHOW DATABASES LIKE '{database_name_for(domain)}'"
        return f"mysql -N -e {shlex.quote(query)}"

    def free_disk_mb(self) -> str:
        """Print the free megabytes on the root filesystem."""
        return "df -Pm / | awk 'NR==2 {print $4}'"

    # -- Bootstrap ---------------------------------------------------------

    def system_update(self) -> list[str]:
        """Refresh and upgrade the package index non-interactively."""
        return [
            "DEBIAN_FRONTEND=noninteractive apt-get update -y",
            "DEBIAN_FRONTEND=noninteractive apt-get upgrade -y",
        ]

    def dependencies(self) -> list[str]:
        """Install base packages required by the stack."""
        packages = " ".join(shlex.quote(name) for name in BASE_PACKAGES)
        return [f"DEBIAN_FRONTEND=noninteractive apt-get install -y {packages}"]

    def stack_install(self) -> list[str]:
        """Install the site manager and its web stack."""
        url = shlex.quote(self.site.site_manager_installer_url)
        return [
            f"wget -qO /tmp/wo {url} && bash /tmp/wo --force",
            "wo stack install --all",
        ]

    def site_cli_install(self) -> list[str]:
        """Install WP-CLI as a standalone phar."""
        url = shlex.quote(self.site.site_cli_url)
        target = shlex.quote(SITE_CLI_PATH)
        return [f"curl -fsSL -o {target} {url}", f"chmod +x {target}"]

    # -- Site lifecycle ----------------------------------------------------

    def kill_stale_creates(self) -> str:
        """Terminate lingering site creation processes."""
        return "pkill -f 'wo site create' || true"

    def site_create(self, site_id: str, *, username: str, password: str, email: str) -> str:
        """Create a WordPress site, bounded by ``timeout``."""
        parts = [
            "timeout",
            str(self.create_timeout),
            "wo",
            "site",
            "create",
            shlex.quote(site_id),
            "--wp",
            self.site.php_flag,
            f"--user={shlex.quote(username)}",
            f"--pass={shlex.quote(password)}",
            f"--email={shlex.quote(email)}",
        ]
        return " ".join(parts)

    def write_file(self, path: str, content: str) -> str:
        """Write *content* verbatim to *path* via a quoted heredoc."""
        marker = "PROVISIONCTL_EOF"
        return f"cat > {shlex.quote(path)} <<'{marker}'\n{content.rstrip()}\n{marker}"

    def enable_vhost(self, site_id: str) -> str:
        """Link the vhost of *site_id* into sites-enabled."""
        return f"ln -sf {shlex.quote(self.vhost_path(site_id))} {SITES_ENABLED}/"

    def web_server_test(self) -> str:
        """Validate the nginx configuration."""
        return "nginx -t"

    def web_server_reload(self) -> str:
        """Reload nginx."""
        return "systemctl reload nginx"

    # -- Customisation -----------------------------------------------------

    def wp(self, site_id: str, *args: str) -> str:
        """Run a WP-CLI command as the web user inside the site root."""
        quoted = " ".join(shlex.quote(arg) for arg in args)
        root = shlex.quote(self.site_root(site_id))
        return f"cd {root} && sudo -u {shlex.quote(self.site.web_user)} wp {quoted}"

    # -- Hardening ---------------------------------------------------------

    def normalize_permissions(self, site_id: str) -> list[str]:
        """Reset ownership and modes under the site root."""
        root = shlex.quote(self.site_root(site_id))
        owner = shlex.quote(f"{self.site.web_user}:{self.site.web_user}")
        return [
            f"chown -R {owner} {root}",
            f"find {root} -type d -exec chmod 755 {{}} +",
            f"find {root} -type f -exec chmod 644 {{}} +",
        ]

    def firewall_rules(self, preview_port: int | None) -> list[str]:
        """Open the SSH, HTTP, HTTPS and preview ports then enable ufw."""
        ports = list(FIREWALL_PORTS)
        if preview_port is not None:
            ports.append(preview_port)
        commands = [f"ufw allow {port}/tcp" for port in ports]
        commands.append("ufw --force enable")
        return commands


__all__ = [
    "BASE_PACKAGES",
    "PROBE_COMMANDS",
    "RUNTIME_VERSION_COMMAND",
    "SITES_AVAILABLE",
    "SITES_ENABLED",
    "SITE_CLI_PATH",
    "WordOpsStack",
    "database_name_for",
    "site_id_for",
]
