"""Local deploy target: runs the plan on this machine."""

import asyncio
import sys

from hostwright.commands.deploy import add_project_args, load_params
from hostwright.deploy.orchestrate import deploy


def handle_local(args):
    """Handle the local deploy target."""
    params_list = load_params(args, local=True)
    sys.exit(asyncio.run(deploy(params_list, audit=not args.no_audit)))


def register_local_target(subparsers):
    """Register the local deploy target."""
    parser = subparsers.add_parser("local", help="Deploy onto this machine")
    add_project_args(parser)
    parser.add_argument("--sudo", action="store_true", help="Run commands through sudo -n")
    parser.add_argument("--no-audit", action="store_true", help="Do not write the JSON audit log")
    parser.set_defaults(func=handle_local)
