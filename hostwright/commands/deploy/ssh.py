"""SSH deploy target: runs the plan on a remote host over SSH + SCP."""

import asyncio
import sys

from hostwright.commands.deploy import add_project_args, add_ssh_args, load_params
from hostwright.deploy.orchestrate import deploy


def handle_ssh(args):
    """Handle the SSH deploy target."""
    params_list = load_params(args)
    sys.exit(asyncio.run(deploy(params_list, audit=not args.no_audit)))


def register_ssh_target(subparsers):
    """Register the SSH deploy target."""
    parser = subparsers.add_parser("ssh", help="Deploy to a remote server via SSH")
    add_project_args(parser)
    add_ssh_args(parser)
    parser.add_argument("--no-audit", action="store_true", help="Do not write the JSON audit log")
    parser.set_defaults(func=handle_ssh)
