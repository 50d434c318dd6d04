"""ServiceUnitManager: render, install and reconcile the application's systemd unit."""

import logging
import re
import shlex
from enum import Enum

from hostwright.errors import ActivationError, RemoteCommandError, TemplateRenderError
from hostwright.engine.state import HostState, ProbeTargets, is_loopback
from hostwright.services.base import HostManager

logger = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
RESTART_DELAY_SECONDS = 5
SYSTEM_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

_BIND_RE = re.compile(r"--bind\s+(\S+?):\d+|--host\s+(\S+)")


class ServiceStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVATING = "activating"
    ACTIVE = "active"
    FAILED = "failed"
    RESTARTING = "restarting"


def service_status(unit) -> ServiceStatus:
    """Map systemd's ActiveState/SubState pair onto ServiceStatus."""
    if unit.active_state == "failed":
        return ServiceStatus.FAILED
    if unit.sub_state == "auto-restart":
        return ServiceStatus.RESTARTING
    if unit.active_state == "active":
        return ServiceStatus.ACTIVE
    if unit.active_state in ("activating", "reloading"):
        return ServiceStatus.ACTIVATING
    return ServiceStatus.INACTIVE


def start_command(descriptor, project_dir) -> str:
    """Application server command line. Always binds the loopback address."""
    port = descriptor.app_port
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise TemplateRenderError(f"app_port must be an integer in 1..65535, got {port!r}")
    if not descriptor.app_entrypoint:
        raise TemplateRenderError("app_entrypoint is required to render the unit")

    venv_bin = f"{project_dir}/venv/bin"
    if descriptor.app_server == "gunicorn":
        return f"{venv_bin}/gunicorn --bind {LOOPBACK}:{port} --workers {descriptor.workers} {descriptor.app_entrypoint}"
    if descriptor.app_server == "uvicorn":
        return f"{venv_bin}/uvicorn --host {LOOPBACK} --port {port} --workers {descriptor.workers} {descriptor.app_entrypoint}"
    raise TemplateRenderError(f"Unsupported app_server {descriptor.app_server!r}")


def bind_addresses(unit_text) -> list[str]:
    """Addresses the unit's ExecStart asks the app server to bind."""
    addresses = []
    for line in unit_text.splitlines():
        if line.startswith("ExecStart="):
            for match in _BIND_RE.finditer(line):
                addresses.append(match.group(1) or match.group(2))
    return addresses


def render_unit(descriptor, project_dir) -> str:
    """Render the systemd unit for *descriptor*.

    Raises:
        TemplateRenderError: missing or invalid descriptor fields, or a
            rendering that would bind anything but the loopback address.
    """
    for field_name in ("name", "run_as"):
        if not getattr(descriptor, field_name):
            raise TemplateRenderError(f"{field_name} is required to render the unit")

    command = start_command(descriptor, project_dir)
    unit = f"""# Managed by hostwright for project {descriptor.name}. Manual edits are overwritten.
[Unit]
Description={descriptor.name} web application
After=network-online.target docker.service
Wants=network-online.target

[Service]
Type=exec
User={descriptor.run_as}
Group={descriptor.run_as}
WorkingDirectory={project_dir}/app
Environment=PATH={project_dir}/venv/bin:{SYSTEM_PATH}
Environment=PYTHONUNBUFFERED=1
EnvironmentFile={project_dir}/.env
ExecStart={command}
Restart=on-failure
RestartSec={RESTART_DELAY_SECONDS}
StandardOutput=append:{project_dir}/logs/app.log
StandardError=append:{project_dir}/logs/error.log

[Install]
WantedBy=multi-user.target
"""
    addresses = bind_addresses(unit)
    if not addresses or any(a != LOOPBACK for a in addresses) or "0.0.0.0" in unit:
        raise TemplateRenderError(f"Unit for {descriptor.name} must bind only {LOOPBACK}", observed=", ".join(addresses))
    return unit


class ServiceUnitManager(HostManager):
    """Installs and supervises ``<name>.service`` on the host."""

    def unit_path(self, descriptor) -> str:
        return f"{self.settings.systemd_dir}/{descriptor.unit_name}"

    def project_dir(self, descriptor) -> str:
        return self.settings.project_dir(descriptor)

    def render(self, descriptor) -> str:
        return render_unit(descriptor, self.project_dir(descriptor))

    async def _journal(self, unit) -> str:
        status = await self.executor.run(f"systemctl status {unit} --no-pager --lines=0", check=False)
        journal = await self.executor.run(f"journalctl -u {unit} --no-pager -n 30", check=False)
        return f"{status.stdout}{status.stderr}\n{journal.stdout}"

    async def _write_unit(self, path, content):
        if content is None:
            await self.executor.remove_file(path)
        else:
            await self.executor.put_file(content, path, mode="0644")
        await self.executor.run("systemctl daemon-reload")

    async def install(self, descriptor):
        """Write, enable and (re)start the unit.

        If systemd rejects the new unit, the previous unit file is put back
        and restarted before ActivationError is raised, so whatever was
        running before keeps running.
        """
        unit = descriptor.unit_name
        path = self.unit_path(descriptor)
        content = self.render(descriptor)

        previous = await self.executor.read_file(path)
        self._originals.setdefault(unit, previous)

        await self._write_unit(path, content)
        try:
            await self.executor.run(f"systemctl enable {unit}")
            await self.executor.run(f"systemctl restart {unit}")
        except RemoteCommandError as e:
            diagnostic = f"{e.stderr}\n{await self._journal(unit)}"
            logger.error(f"systemd rejected {unit}; restoring the previous unit")
            await self._write_unit(path, previous)
            if previous is not None:
                await self.executor.run(f"systemctl restart {unit}", check=False)
            raise ActivationError(f"systemd rejected {unit}", diagnostic=diagnostic) from e
        logger.info(f"  {unit} installed and started")

    async def status(self, descriptor) -> ServiceStatus:
        state = await HostState.probe(self.executor, ProbeTargets(units=[descriptor.unit_name]))
        return service_status(state.unit(descriptor.unit_name))

    async def reconcile(self, descriptor) -> ServiceStatus:
        """Probe the unit and restart it if it has failed."""
        status = await self.status(descriptor)
        if status == ServiceStatus.FAILED:
            logger.warning(f"{descriptor.unit_name} has failed; restarting")
            try:
                await self.executor.run(f"systemctl restart {descriptor.unit_name}")
            except RemoteCommandError as e:
                raise ActivationError(
                    f"systemd could not restart {descriptor.unit_name}",
                    diagnostic=f"{e.stderr}\n{await self._journal(descriptor.unit_name)}",
                ) from e
            status = await self.status(descriptor)
        return status

    async def stop(self, descriptor, check=True):
        await self.executor.run(f"systemctl stop {descriptor.unit_name}", check=check)

    async def restore(self, descriptor):
        """Stop and disable the unit and put back the unit file found before this run."""
        unit = descriptor.unit_name
        # Either may fail when the unit never got installed
        await self.stop(descriptor, check=False)
        await self.executor.run(f"systemctl disable {unit}", check=False)
        if unit in self._originals:
            await self._write_unit(self.unit_path(descriptor), self._originals[unit])
        logger.info(f"  {unit} stopped and restored")

    async def health_check(self, descriptor, timeout=5) -> bool:
        """True if something accepts TCP connections on the app's loopback port."""
        probe = shlex.quote(f"exec 3<>/dev/tcp/{LOOPBACK}/{descriptor.app_port}")
        result = await self.executor.run(f"timeout {timeout} bash -c {probe}", check=False)
        return result.ok

    def violations(self, descriptor, state) -> list[str]:
        """Why the unit is not in its desired state (empty when it is)."""
        problems = []
        unit = descriptor.unit_name
        content = self.render(descriptor)
        if not state.file_matches(self.unit_path(descriptor), content):
            problems.append(f"{self.unit_path(descriptor)} differs from the rendered unit")
        info = state.unit(unit)
        status = service_status(info)
        if status != ServiceStatus.ACTIVE:
            problems.append(f"{unit} is {status.value} ({info.active_state}/{info.sub_state})")
        if info.unit_file_state != "enabled":
            problems.append(f"{unit} is not enabled ({info.unit_file_state or 'unknown'})")
        exposed = [a for a in state.listeners_on(descriptor.app_port) if not is_loopback(a)]
        if exposed:
            problems.append(f"port {descriptor.app_port} is listening on non-loopback {', '.join(exposed)}")
        return problems
