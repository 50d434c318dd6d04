"""Expand a ProjectDescriptor into the step graph that deploys it.

Each phase mirrors one section of the manual runbook: packages, directory
layout, database container, application checkout, service unit, proxy,
certificate, and the TLS proxy. Every step's precondition is evaluated
against a fresh HostState, so a rerun only does the work that is missing.
"""

import logging
import shlex
from urllib.parse import quote

from hostwright.engine.state import ProbeTargets, is_loopback, published_address
from hostwright.engine.step import Phase, Step
from hostwright.services.nginx import ReverseProxyManager
from hostwright.services.systemd import LOOPBACK, ServiceUnitManager

logger = logging.getLogger(__name__)

RUNTIME_UNITS = ["docker.service", "nginx.service"]


class ProjectLayout:
    """Paths on the host that belong to one project."""

    def __init__(self, descriptor, settings):
        self.root = settings.project_dir(descriptor)
        self.logs = f"{self.root}/logs"
        self.app = f"{self.root}/app"
        self.git = f"{self.app}/.git"
        self.venv = f"{self.root}/venv"
        self.app_server = f"{self.venv}/bin/{descriptor.app_server}"
        self.env_file = f"{self.root}/.env"
        self.webroot = settings.webroot


def render_env(descriptor) -> str:
    """Environment file read by the service unit."""
    password = quote(descriptor.db_password, safe="")
    return (
        "# Managed by hostwright. Manual edits are overwritten.\n"
        f"DATABASE_URL=postgresql://{descriptor.db_user}:{password}@{LOOPBACK}:{descriptor.db_port}/{descriptor.db_name}\n"
        f"APP_BIND={LOOPBACK}:{descriptor.app_port}\n"
    )


def database_violations(descriptor, state) -> list[str]:
    container = state.container(descriptor.db_container)
    if container is None:
        return [f"container {descriptor.db_container} does not exist"]
    problems = []
    if container.state != "running":
        problems.append(f"container {descriptor.db_container} is {container.state}")
    wanted = f"{LOOPBACK}:{descriptor.db_port}"
    if wanted not in container.published:
        problems.append(f"container {descriptor.db_container} does not publish {wanted}")
    exposed = [b for b in container.published if not is_loopback(published_address(b))]
    if exposed:
        problems.append(f"container {descriptor.db_container} publishes on non-loopback {', '.join(exposed)}")
    return problems


def _database_run_command(descriptor) -> str:
    return " ".join(
        [
            "docker run -d",
            f"--name {shlex.quote(descriptor.db_container)}",
            "--restart unless-stopped",
            f"-p {LOOPBACK}:{descriptor.db_port}:5432",
            f"-e POSTGRES_USER={shlex.quote(descriptor.db_user)}",
            f"-e POSTGRES_PASSWORD={shlex.quote(descriptor.db_password)}",
            f"-e POSTGRES_DB={shlex.quote(descriptor.db_name)}",
            f"-v {shlex.quote(descriptor.name + '-pgdata')}:/var/lib/postgresql/data",
            shlex.quote(descriptor.db_image),
        ]
    )


def build_steps(descriptor, settings, executor, certs):
    """Return ``(steps, probe_targets)`` for deploying *descriptor*.

    Unit and proxy templates are rendered here, before anything runs, so a
    TemplateRenderError surfaces while the host is still untouched.

    Args:
        descriptor: the project to deploy.
        settings: EngineSettings describing the host layout.
        executor: transport to the target host.
        certs: CertificateManager for the project's domain.
    """
    layout = ProjectLayout(descriptor, settings)
    units = ServiceUnitManager(executor, settings)
    proxy = ReverseProxyManager(executor, settings)
    cert_paths = certs.paths(descriptor.domain)
    packages = descriptor.all_packages

    units.render(descriptor)
    proxy.render(descriptor)
    proxy.render(descriptor, cert_paths)
    env_text = render_env(descriptor)

    def certificate_present(state):
        return state.exists(cert_paths.fullchain) and state.exists(cert_paths.privkey)

    def bootstrap_certs(state):
        # Once a certificate exists the HTTP step's desired state is the TLS
        # site, so reruns never flip the proxy back to HTTP-only.
        return cert_paths if certificate_present(state) else None

    # ── packages ─────────────────────────────────────────────────

    async def install_packages(ex, state):
        missing = state.missing_packages(packages)
        await ex.run("apt-get update -q")
        await ex.run(
            "DEBIAN_FRONTEND=noninteractive apt-get install -y -q --no-install-recommends "
            + " ".join(shlex.quote(p) for p in missing)
        )

    def runtime_violations(state):
        problems = []
        for name in RUNTIME_UNITS:
            info = state.unit(name)
            if info.active_state != "active":
                problems.append(f"{name} is {info.active_state}")
            if info.unit_file_state != "enabled":
                problems.append(f"{name} is not enabled")
        return problems

    async def start_runtime(ex, state):
        await ex.run("systemctl enable --now docker nginx")

    # ── layout ───────────────────────────────────────────────────

    layout_dirs = [layout.root, layout.logs, layout.webroot]

    async def create_layout(ex, state):
        await ex.run("mkdir -p " + " ".join(shlex.quote(d) for d in layout_dirs))
        await ex.run(f"chown {descriptor.run_as}:{descriptor.run_as} {shlex.quote(layout.logs)}")

    async def write_env(ex, state):
        await ex.put_file(env_text, layout.env_file, mode="0600")

    # ── database ─────────────────────────────────────────────────

    async def ensure_database(ex, state):
        name = shlex.quote(descriptor.db_container)
        container = state.container(descriptor.db_container)
        if container is not None:
            # Stopped containers report no published ports; start them and let
            # the postcondition check the bindings.
            if container.state != "running":
                await ex.run(f"docker start {name}")
                return
            logger.warning(f"  {descriptor.db_container} is published incorrectly; recreating (data volume kept)")
            await ex.run(f"docker rm -f {name}")
        await ex.run(_database_run_command(descriptor), timeout=900)

    # ── application ──────────────────────────────────────────────

    async def checkout(ex, state):
        branch = f" --branch {shlex.quote(descriptor.branch)}" if descriptor.branch else ""
        await ex.run(
            f"git clone --depth 1{branch} {shlex.quote(descriptor.repo_url)} {shlex.quote(layout.app)}",
            timeout=900,
        )

    async def build_venv(ex, state):
        pip = shlex.quote(f"{layout.venv}/bin/pip")
        requirements = shlex.quote(f"{layout.app}/requirements.txt")
        await ex.run(f"python3 -m venv {shlex.quote(layout.venv)}")
        await ex.run(f"{pip} install -q --upgrade pip", timeout=900)
        await ex.run(f"if [ -f {requirements} ]; then {pip} install -q -r {requirements}; fi", timeout=1800)
        await ex.run(f"{pip} install -q {shlex.quote(descriptor.app_server)}", timeout=900)

    # ── service ──────────────────────────────────────────────────

    async def install_unit(ex, state):
        await units.bind(ex).install(descriptor)

    async def restore_unit(ex):
        await units.bind(ex).restore(descriptor)

    # ── proxy and certificate ────────────────────────────────────

    async def install_proxy(ex, state):
        await proxy.bind(ex).install(descriptor, bootstrap_certs(state))

    async def install_tls_proxy(ex, state):
        await proxy.bind(ex).install(descriptor, cert_paths)

    async def revert_proxy(ex):
        await proxy.bind(ex).revert(descriptor)

    async def issue_certificate(ex, state):
        await certs.bind(ex).issue(descriptor.domain)

    site = proxy.site_path(descriptor)
    steps = [
        Step(
            id="packages",
            description=f"install {', '.join(packages)}",
            phase=Phase.PACKAGES,
            precondition=lambda s: s.has_packages(packages),
            action=install_packages,
            postcondition=lambda s: [f"package {p} not installed" for p in s.missing_packages(packages)],
            resources=["apt"],
            expected="all packages installed",
        ),
        Step(
            id="runtime-services",
            description="enable and start docker and nginx",
            phase=Phase.PACKAGES,
            precondition=lambda s: not runtime_violations(s),
            action=start_runtime,
            postcondition=runtime_violations,
            depends_on=["packages"],
            expected="docker and nginx active and enabled",
        ),
        Step(
            id="layout",
            description=f"create {layout.root} and the ACME webroot",
            phase=Phase.LAYOUT,
            precondition=lambda s: all(s.exists(d) for d in layout_dirs),
            action=create_layout,
            postcondition=lambda s: [f"{d} is missing" for d in layout_dirs if not s.exists(d)],
            depends_on=["packages"],
            resources=[f"dir:{layout.root}"],
            expected="project directories exist",
        ),
        Step(
            id="env-file",
            description=f"write {layout.env_file}",
            phase=Phase.LAYOUT,
            precondition=lambda s: s.file_matches(layout.env_file, env_text),
            action=write_env,
            postcondition=lambda s: [] if s.file_matches(layout.env_file, env_text) else [f"{layout.env_file} differs"],
            depends_on=["layout"],
            resources=[f"dir:{layout.root}"],
            expected="environment file matches the descriptor",
        ),
        Step(
            id="database",
            description=f"run {descriptor.db_image} as {descriptor.db_container} on {LOOPBACK}:{descriptor.db_port}",
            phase=Phase.DATABASE,
            precondition=lambda s: not database_violations(descriptor, s),
            action=ensure_database,
            postcondition=lambda s: database_violations(descriptor, s),
            depends_on=["runtime-services"],
            resources=[f"container:{descriptor.db_container}", f"port:{descriptor.db_port}"],
            expected=f"{descriptor.db_container} running, published only on {LOOPBACK}:{descriptor.db_port}",
        ),
        Step(
            id="checkout",
            description=f"clone {descriptor.repo_url}",
            phase=Phase.APPLICATION,
            precondition=lambda s: s.exists(layout.git),
            action=checkout,
            postcondition=lambda s: [] if s.exists(layout.git) else [f"{layout.git} is missing"],
            depends_on=["layout"],
            resources=[f"dir:{layout.root}"],
            expected=f"repository checked out at {layout.app}",
        ),
        Step(
            id="virtualenv",
            description=f"build {layout.venv} with {descriptor.app_server}",
            phase=Phase.APPLICATION,
            precondition=lambda s: s.exists(layout.app_server),
            action=build_venv,
            postcondition=lambda s: [] if s.exists(layout.app_server) else [f"{layout.app_server} is missing"],
            depends_on=["checkout"],
            resources=[f"dir:{layout.root}"],
            expected=f"{layout.app_server} installed",
        ),
        Step(
            id="service",
            description=f"install and start {descriptor.unit_name}",
            phase=Phase.SERVICE,
            precondition=lambda s: not units.violations(descriptor, s),
            action=install_unit,
            postcondition=lambda s: units.violations(descriptor, s),
            depends_on=["env-file", "virtualenv", "database"],
            resources=[f"unit:{descriptor.unit_name}", f"port:{descriptor.app_port}"],
            undo=restore_unit,
            expected=f"{descriptor.unit_name} active, enabled, listening only on {LOOPBACK}:{descriptor.app_port}",
        ),
        Step(
            id="proxy",
            description=f"route http://{descriptor.domain} to {LOOPBACK}:{descriptor.app_port}",
            phase=Phase.PROXY,
            precondition=lambda s: not proxy.violations(descriptor, s, bootstrap_certs(s)),
            action=install_proxy,
            postcondition=lambda s: proxy.violations(descriptor, s, bootstrap_certs(s)),
            depends_on=["service", "layout"],
            resources=[f"proxy:{site}", "nginx"],
            undo=revert_proxy,
            expected=f"{site} installed and nginx reloaded",
        ),
        Step(
            id="certificate",
            description=f"obtain a certificate for {descriptor.domain}",
            phase=Phase.CERTIFICATE,
            precondition=certificate_present,
            action=issue_certificate,
            postcondition=lambda s: [] if certificate_present(s) else [f"{cert_paths.fullchain} is missing"],
            depends_on=["proxy"],
            resources=[f"cert:{descriptor.domain}"],
            expected=f"certificate at {cert_paths.fullchain}",
        ),
        Step(
            id="proxy-tls",
            description=f"serve https://{descriptor.domain}",
            phase=Phase.PROXY_TLS,
            precondition=lambda s: not proxy.violations(descriptor, s, cert_paths),
            action=install_tls_proxy,
            postcondition=lambda s: proxy.violations(descriptor, s, cert_paths),
            depends_on=["certificate"],
            resources=[f"proxy:{site}", f"cert:{descriptor.domain}", "nginx"],
            undo=revert_proxy,
            expected=f"{site} terminates TLS with {cert_paths.fullchain}",
        ),
    ]

    targets = ProbeTargets(
        units=[descriptor.unit_name] + RUNTIME_UNITS,
        paths=layout_dirs
        + [layout.git, layout.app_server, proxy.enabled_path(descriptor), cert_paths.fullchain, cert_paths.privkey],
        files=[layout.env_file, units.unit_path(descriptor), site, proxy.upgrade_map_path],
    )
    return steps, targets
