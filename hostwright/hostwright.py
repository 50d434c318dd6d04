#!/usr/bin/env python3
"""hostwright: idempotent web-service deployment. CLI entrypoint."""

import argparse

from hostwright.commands.deploy.local import register_local_target
from hostwright.commands.deploy.ssh import register_ssh_target
from hostwright.commands.plan import register_plan_command
from hostwright.commands.renew import register_renew_command
from hostwright.commands.status import register_status_command
from hostwright.logging_setup import setup_cli_logging


def main():
    parser = argparse.ArgumentParser(description="Deploy Python web services behind nginx with systemd and TLS")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show every remote command")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # deploy subcommand with target sub-subcommands
    deploy_parser = subparsers.add_parser("deploy", help="Deploy projects to a host")
    deploy_subparsers = deploy_parser.add_subparsers(dest="target", required=True)

    register_ssh_target(deploy_subparsers)
    register_local_target(deploy_subparsers)

    register_plan_command(subparsers)
    register_status_command(subparsers)
    register_renew_command(subparsers)

    args = parser.parse_args()
    setup_cli_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
