"""Deploy orchestration: build_plan, deploy_project, deploy, status, renew."""

import asyncio
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from hostwright.descriptor import validate_descriptor
from hostwright.deploy.params import DeployParams
from hostwright.deploy.steps import build_steps
from hostwright.engine.locks import DEFAULT_LOCKS
from hostwright.engine.plan import DeploymentPlan, PlanState
from hostwright.errors import HostwrightError, ValidationError
from hostwright.redact import redact_secrets, register_secret
from hostwright.services.certs import CertificateManager
from hostwright.services.dns import DnsResolver
from hostwright.services.nginx import ReverseProxyManager
from hostwright.services.systemd import ServiceUnitManager
from hostwright.transport.local import LocalExecutor
from hostwright.transport.ssh_transport import SSHExecutor

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_ROLLED_BACK = 2
EXIT_ROLLBACK_FAILED = 3
EXIT_DEFERRED = 4

_STATE_EXIT_CODES = {
    PlanState.SUCCEEDED: EXIT_OK,
    PlanState.ROLLED_BACK: EXIT_ROLLED_BACK,
    PlanState.FAILED: EXIT_ROLLBACK_FAILED,
    PlanState.DEFERRED: EXIT_DEFERRED,
}

# Most severe first: the code reported when several projects end differently
_SEVERITY = [EXIT_ROLLBACK_FAILED, EXIT_ROLLED_BACK, EXIT_VALIDATION, EXIT_DEFERRED, EXIT_OK]


def exit_code(state: PlanState) -> int:
    return _STATE_EXIT_CODES[state]


def worst_exit_code(codes) -> int:
    codes = set(codes)
    for code in _SEVERITY:
        if code in codes:
            return code
    return EXIT_OK


def make_executor(params: DeployParams):
    """Create the transport for *params*: local shell or SSH."""
    project = params.project
    timeout = project.settings.command_timeout
    if params.local:
        return LocalExecutor(use_sudo=params.use_sudo, default_timeout=timeout)
    target = project.target
    if not target.server:
        raise ValidationError(f"{params.name}: target.server (or --server) is required for SSH deploys")
    ssh_key = os.path.expanduser(target.ssh_key) if target.ssh_key else None
    return SSHExecutor(target.server, ssh_key, target.ssh_port, default_timeout=timeout)


def make_certificate_manager(params: DeployParams, executor, resolver=None, acme=None):
    project = params.project
    settings = project.settings
    return CertificateManager(
        executor,
        settings,
        resolver=resolver or DnsResolver(settings.dns_resolver_url),
        host_address=project.target.public_ip,
        acme=acme,
        email=project.descriptor.admin_email,
    )


def build_plan(params: DeployParams, executor=None, locks=None, resolver=None, acme=None) -> DeploymentPlan:
    """Build the (draft) deployment plan for one project.

    Raises:
        ValidationError: the descriptor is invalid or a template cannot be
            rendered. Nothing has touched the host at this point.
    """
    descriptor = params.project.descriptor
    validate_descriptor(descriptor)
    register_secret(descriptor.db_password)
    executor = executor or make_executor(params)
    certs = make_certificate_manager(params, executor, resolver=resolver, acme=acme)
    steps, targets = build_steps(descriptor, params.project.settings, executor, certs)
    return DeploymentPlan(descriptor, executor, steps, targets, locks=locks)


def save_audit(plan: DeploymentPlan, audit_dir) -> Path:
    """Write the plan's execution log as JSON. Returns the file path."""
    directory = Path(os.path.expanduser(audit_dir))
    directory.mkdir(parents=True, exist_ok=True)
    stamp = (plan.finished_at or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
    # Runs finishing in the same second get distinct files
    path = directory / f"{plan.descriptor.name}-{stamp}-{uuid.uuid4().hex[:6]}.json"
    path.write_text(redact_secrets(json.dumps(plan.to_dict(), indent=2)) + "\n")
    return path


def _log_summary(plan):
    name = plan.descriptor.name
    logger.info("")
    logger.info(f"[{name}] {plan.state.value}")
    for result in plan.results:
        logger.info(f"  {result.step_id:<18} {result.outcome.value:<8} {result.duration:6.1f}s")
    if plan.left_in_place:
        logger.info(f"  left in place: {', '.join(plan.left_in_place)}")
    if plan.error is not None and plan.state != PlanState.SUCCEEDED:
        level = logging.WARNING if plan.state == PlanState.DEFERRED else logging.ERROR
        logger.log(level, plan.error.format_message())


async def deploy_project(params: DeployParams, executor=None, locks=None, resolver=None, acme=None, audit=True) -> int:
    """Validate and run one project's plan. Returns its exit code."""
    try:
        plan = build_plan(params, executor=executor, locks=locks, resolver=resolver, acme=acme)
        plan.validate()
    except ValidationError as e:
        logger.error(f"[{params.name}] {e.format_message()}")
        return EXIT_VALIDATION

    if not await plan.executor.check_connection():
        logger.error(f"[{params.name}] {params.host} is unreachable; nothing was changed")
        return EXIT_ROLLED_BACK

    state = await plan.execute()
    if audit:
        path = save_audit(plan, params.project.settings.audit_dir)
        logger.info(f"[{params.name}] audit log: {path}")
    _log_summary(plan)
    return exit_code(state)


async def deploy(params_list, locks=None, resolver=None, acme=None, audit=True) -> int:
    """Deploy several projects concurrently. Returns the most severe exit code.

    Plans that share a host serialize on the resources they have in common
    (unit names, proxy files, ports, directories) through *locks*.
    """
    codes = await asyncio.gather(
        *(deploy_project(p, locks=locks, resolver=resolver, acme=acme, audit=audit) for p in params_list)
    )
    return worst_exit_code(codes)


async def status(params: DeployParams, executor=None) -> dict:
    """Reconcile the project's service and report service, health and certificate state."""
    descriptor = params.project.descriptor
    executor = executor or make_executor(params)
    units = ServiceUnitManager(executor, params.project.settings)
    certs = make_certificate_manager(params, executor)

    service = await units.reconcile(descriptor)
    healthy = await units.health_check(descriptor)
    expires = await certs.expiry(descriptor.domain)
    return {
        "project": descriptor.name,
        "host": executor.host,
        "service": service.value,
        "healthy": healthy,
        "certificate_expires": expires.isoformat() if expires else None,
    }


async def renew(params: DeployParams, executor=None, resolver=None, acme=None, locks=None) -> bool:
    """Renew the project's certificate if due, then reload the proxy to pick it up.

    The reload runs under the host-wide nginx lock so it never checks a site
    that a concurrent deploy has written but not yet validated.
    """
    descriptor = params.project.descriptor
    executor = executor or make_executor(params)
    certs = make_certificate_manager(params, executor, resolver=resolver, acme=acme)
    renewed = await certs.renew(descriptor.domain)
    if renewed:
        try:
            async with (locks or DEFAULT_LOCKS).hold(executor.host, ["nginx"], executor):
                await ReverseProxyManager(executor, params.project.settings).reload()
        except HostwrightError as e:
            logger.error(f"Certificate renewed but nginx was not reloaded: {e.format_message()}")
            raise
        logger.info(f"Renewed certificate for {descriptor.domain}; nginx reloaded")
    return renewed
