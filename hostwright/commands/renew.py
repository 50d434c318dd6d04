"""Renew command: speculative certificate renewal, safe to run from cron."""

import asyncio
import logging
import sys

from hostwright.commands.deploy import add_project_args, add_ssh_args, load_params
from hostwright.deploy.orchestrate import EXIT_OK, EXIT_ROLLED_BACK, renew
from hostwright.errors import HostwrightError

logger = logging.getLogger(__name__)


def handle_renew(args):
    """Handle the renew command."""
    sys.exit(asyncio.run(_handle_renew(args)))


async def _handle_renew(args):
    params_list = load_params(args, local=args.local)
    code = EXIT_OK
    for params in params_list:
        try:
            await renew(params)
        except HostwrightError as e:
            logger.error(f"[{params.name}] {e.format_message()}")
            code = EXIT_ROLLED_BACK
    return code


def register_renew_command(subparsers):
    """Register the renew command."""
    parser = subparsers.add_parser("renew", help="Renew certificates that are close to expiry")
    add_project_args(parser)
    add_ssh_args(parser)
    parser.add_argument("--local", action="store_true", help="Renew on this machine instead of the SSH target")
    parser.add_argument("--sudo", action="store_true", help="With --local, run commands through sudo -n")
    parser.set_defaults(func=handle_renew)
