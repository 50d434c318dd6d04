"""Status command: reconcile each project's service and report health."""

import asyncio
import logging
import sys

from hostwright.commands.deploy import add_project_args, add_ssh_args, load_params
from hostwright.deploy.orchestrate import EXIT_OK, EXIT_ROLLED_BACK, status
from hostwright.errors import HostwrightError
from hostwright.services.systemd import ServiceStatus

logger = logging.getLogger(__name__)


def handle_status(args):
    """Handle the status command."""
    sys.exit(asyncio.run(_handle_status(args)))


async def _handle_status(args):
    params_list = load_params(args, local=args.local)
    code = EXIT_OK
    for params in params_list:
        try:
            report = await status(params)
        except HostwrightError as e:
            logger.error(f"[{params.name}] {e.format_message()}")
            code = EXIT_ROLLED_BACK
            continue
        expires = report["certificate_expires"] or "no certificate"
        health = "healthy" if report["healthy"] else "not answering"
        logger.info(f"[{report['project']}] {report['host']}: service {report['service']}, {health}, certificate: {expires}")
        if report["service"] != ServiceStatus.ACTIVE.value or not report["healthy"]:
            code = EXIT_ROLLED_BACK
    return code


def register_status_command(subparsers):
    """Register the status command."""
    parser = subparsers.add_parser("status", help="Reconcile and report a deployed project's service")
    add_project_args(parser)
    add_ssh_args(parser)
    parser.add_argument("--local", action="store_true", help="Inspect this machine instead of the SSH target")
    parser.add_argument("--sudo", action="store_true", help="With --local, run commands through sudo -n")
    parser.set_defaults(func=handle_status)
