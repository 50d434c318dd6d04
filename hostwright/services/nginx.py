"""ReverseProxyManager: nginx site rendering, syntax check, and graceful activation."""

import logging
import shlex

from hostwright.errors import ActivationError, ConfigSyntaxError, RemoteCommandError, TemplateRenderError
from hostwright.services.base import HostManager
from hostwright.services.systemd import LOOPBACK

logger = logging.getLogger(__name__)

UPGRADE_MAP_NAME = "hostwright-upgrade-map.conf"

UPGRADE_MAP = """# Managed by hostwright. Shared by every hostwright site on this host.
map $http_upgrade $connection_upgrade {
    default upgrade;
    ''      close;
}
"""


def _proxy_location(port):
    return f"""    location / {{
        proxy_pass http://{LOOPBACK}:{port};
        proxy_http_version 1.1;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Host $host;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection $connection_upgrade;

        proxy_read_timeout 300s;
        proxy_send_timeout 300s;
    }}
"""


def _acme_location(webroot):
    return f"""    location ^~ /.well-known/acme-challenge/ {{
        root {webroot};
        default_type "text/plain";
    }}
"""


def render_site(descriptor, webroot, cert_paths=None) -> str:
    """Render the nginx site for *descriptor*.

    Without *cert_paths* this is the bootstrap site: plain HTTP proxying plus
    the ACME webroot, no redirect. With *cert_paths* port 80 only serves ACME
    challenges and redirects, and port 443 terminates TLS.
    """
    port = descriptor.app_port
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise TemplateRenderError(f"app_port must be an integer in 1..65535, got {port!r}")
    if not descriptor.domain:
        raise TemplateRenderError("domain is required to render the proxy site")

    header = f"# Managed by hostwright for project {descriptor.name}. Manual edits are overwritten.\n"

    if cert_paths is None:
        site = f"""{header}server {{
    listen 80;
    listen [::]:80;
    server_name {descriptor.domain};

{_acme_location(webroot)}
{_proxy_location(port)}}}
"""
    else:
        site = f"""{header}server {{
    listen 80;
    listen [::]:80;
    server_name {descriptor.domain};

{_acme_location(webroot)}
    location / {{
        return 301 https://$host$request_uri;
    }}
}}

server {{
    listen 443 ssl;
    listen [::]:443 ssl;
    server_name {descriptor.domain};

    ssl_certificate {cert_paths.fullchain};
    ssl_certificate_key {cert_paths.privkey};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_session_cache shared:hostwright_ssl:10m;
    ssl_session_timeout 1d;

{_proxy_location(port)}}}
"""

    if "0.0.0.0" in site:
        raise TemplateRenderError(f"Proxy site for {descriptor.name} must not reference 0.0.0.0")
    return site


class ReverseProxyManager(HostManager):
    """Owns ``sites-available/<name>.conf`` and its ``sites-enabled`` link.

    Activation is a graceful ``reload``: nginx starts new workers on the new
    config while old workers finish their in-flight requests, so there is no
    moment when neither config is serving.
    """

    def __init__(self, executor, settings):
        super().__init__(executor, settings)
        self._validated = False
        self.last_diagnostic = ""

    def site_path(self, descriptor) -> str:
        return f"{self.settings.nginx_dir}/sites-available/{descriptor.name}.conf"

    def enabled_path(self, descriptor) -> str:
        return f"{self.settings.nginx_dir}/sites-enabled/{descriptor.name}.conf"

    @property
    def upgrade_map_path(self) -> str:
        return f"{self.settings.nginx_dir}/conf.d/{UPGRADE_MAP_NAME}"

    def render(self, descriptor, cert_paths=None) -> str:
        return render_site(descriptor, self.settings.webroot, cert_paths)

    async def _snapshot(self, descriptor):
        return (
            await self.executor.read_file(self.site_path(descriptor)),
            await self.executor.file_exists(self.enabled_path(descriptor)),
        )

    async def _restore_files(self, descriptor, snapshot):
        content, enabled = snapshot
        site, link = self.site_path(descriptor), self.enabled_path(descriptor)
        if content is None:
            await self.executor.remove_file(link)
            await self.executor.remove_file(site)
            return
        await self.executor.put_file(content, site, mode="0644")
        if enabled:
            await self.executor.run(f"ln -sfn {shlex.quote(site)} {shlex.quote(link)}")
        else:
            await self.executor.remove_file(link)

    async def install(self, descriptor, cert_paths=None):
        """Write the site, syntax-check it, then reload nginx.

        Raises:
            ConfigSyntaxError: ``nginx -t`` rejected the site. The files are
                put back as they were and nginx is not reloaded, so the
                prior config stays live.
        """
        content = self.render(descriptor, cert_paths)
        previous = await self._snapshot(descriptor)
        self._originals.setdefault(descriptor.name, previous)

        await self.executor.put_file(UPGRADE_MAP, self.upgrade_map_path, mode="0644")
        await self.executor.put_file(content, self.site_path(descriptor), mode="0644")
        await self.executor.run(
            f"ln -sfn {shlex.quote(self.site_path(descriptor))} {shlex.quote(self.enabled_path(descriptor))}"
        )

        if not await self.validate():
            await self._restore_files(descriptor, previous)
            raise ConfigSyntaxError(
                f"nginx rejected the site for {descriptor.domain}; previous config left live",
                diagnostic=self.last_diagnostic,
            )
        await self.activate()
        mode = "HTTPS" if cert_paths else "HTTP-only"
        logger.info(f"  {descriptor.domain} -> {LOOPBACK}:{descriptor.app_port} ({mode}) active")

    async def validate(self) -> bool:
        """Run nginx's built-in syntax check against the files on disk."""
        result = await self.executor.run("nginx -t", check=False)
        self._validated = result.ok
        self.last_diagnostic = result.stderr
        if not result.ok:
            logger.error(f"nginx -t failed:\n{result.stderr.strip()}")
        return result.ok

    async def activate(self):
        """Gracefully reload nginx. Requires a successful validate() first."""
        if not self._validated:
            raise ActivationError("Refusing to reload nginx without a passing syntax check")
        self._validated = False
        try:
            await self.executor.run("systemctl reload nginx")
        except RemoteCommandError as e:
            raise ActivationError("nginx reload failed", diagnostic=e.stderr) from e

    async def reload(self):
        """Validate and activate whatever is on disk."""
        if not await self.validate():
            raise ConfigSyntaxError("nginx rejected the current config", diagnostic=self.last_diagnostic)
        await self.activate()

    async def revert(self, descriptor):
        """Put back the site found before this run first touched it, and reload."""
        if descriptor.name not in self._originals:
            return
        await self._restore_files(descriptor, self._originals[descriptor.name])
        await self.reload()
        logger.info(f"  {descriptor.domain} proxy config reverted")

    def violations(self, descriptor, state, cert_paths=None) -> list[str]:
        problems = []
        site = self.site_path(descriptor)
        if not state.file_matches(site, self.render(descriptor, cert_paths)):
            mode = "HTTPS" if cert_paths else "HTTP-only"
            problems.append(f"{site} differs from the rendered {mode} site")
        if not state.exists(self.enabled_path(descriptor)):
            problems.append(f"{self.enabled_path(descriptor)} is missing")
        if not state.file_matches(self.upgrade_map_path, UPGRADE_MAP):
            problems.append(f"{self.upgrade_map_path} is missing or differs")
        if state.unit("nginx.service").active_state != "active":
            problems.append("nginx.service is not active")
        return problems
