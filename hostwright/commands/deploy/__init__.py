"""Shared deploy CLI logic: project-file loading and common arguments."""

import logging
import sys

import yaml

from hostwright.deploy.orchestrate import EXIT_VALIDATION
from hostwright.deploy.params import DeployParams
from hostwright.descriptor import load_project
from hostwright.errors import ValidationError

logger = logging.getLogger(__name__)


def add_project_args(parser):
    """Arguments every command that reads project files accepts."""
    parser.add_argument(
        "--project",
        action="append",
        required=True,
        metavar="FILE",
        help="Project YAML file (repeat to deploy several projects concurrently)",
    )
    parser.add_argument("--env", default=None, help="Environment override from the project's environments: section")
    parser.add_argument("--public-ip", default=None, help="Host's public IPv4 address (default: looked up on the host)")


def add_ssh_args(parser, required=False):
    parser.add_argument("--server", required=required, default=None, help="SSH address (user@host); overrides target.server")
    parser.add_argument("--ssh-key", default=None, help="SSH key path; overrides target.ssh_key")
    parser.add_argument("--ssh-port", type=int, default=None, help="SSH port; overrides target.ssh_port")


def load_params(args, local=False) -> list[DeployParams]:
    """Load every --project file and apply CLI overrides.

    Exits with the validation exit code if any file cannot be loaded, before
    any host is contacted.
    """
    params_list = []
    for path in args.project:
        try:
            project = load_project(path, environment=args.env)
        except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
            logger.error(f"{path}: {e}")
            sys.exit(EXIT_VALIDATION)
        except ValidationError as e:
            logger.error(f"{path}: {e.format_message()}")
            sys.exit(EXIT_VALIDATION)

        target = project.target
        if getattr(args, "server", None):
            target.server = args.server
        if getattr(args, "ssh_key", None):
            target.ssh_key = args.ssh_key
        if getattr(args, "ssh_port", None):
            target.ssh_port = args.ssh_port
        if args.public_ip:
            target.public_ip = args.public_ip

        params_list.append(DeployParams(project=project, local=local, use_sudo=getattr(args, "sudo", False)))

    names = [p.name for p in params_list]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        logger.error(f"Project names must be unique per run: {', '.join(duplicates)}")
        sys.exit(EXIT_VALIDATION)
    return params_list
