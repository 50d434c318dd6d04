"""Plan command: validate project files and print the ordered steps without touching a host."""

import logging
import sys

from hostwright.commands.deploy import add_project_args, load_params
from hostwright.deploy.orchestrate import EXIT_OK, EXIT_VALIDATION, build_plan
from hostwright.deploy.steps import render_env
from hostwright.errors import ValidationError
from hostwright.services.nginx import render_site
from hostwright.services.systemd import render_unit

logger = logging.getLogger(__name__)


def _print_plan(plan):
    descriptor = plan.descriptor
    logger.info(f"Plan for '{descriptor.name}' ({descriptor.domain} -> 127.0.0.1:{descriptor.app_port})")
    for i, step in enumerate(plan.ordered, 1):
        flags = " [reversible]" if step.reversible else ""
        logger.info(f"  {i:2d}. {step.id:<18} {step.phase.name.lower():<12} {step.description}{flags}")
        if step.depends_on:
            logger.info(f"      after: {', '.join(step.depends_on)}")
        if step.resources:
            logger.info(f"      locks: {', '.join(sorted(step.resources))}")


def _print_rendered(params):
    descriptor = params.project.descriptor
    settings = params.project.settings
    project_dir = settings.project_dir(descriptor)
    logger.info(f"\n# {settings.systemd_dir}/{descriptor.unit_name}")
    logger.info(render_unit(descriptor, project_dir))
    logger.info(f"# {settings.nginx_dir}/sites-available/{descriptor.name}.conf (before certificate)")
    logger.info(render_site(descriptor, settings.webroot))
    logger.info(f"# {project_dir}/.env")
    logger.info(render_env(descriptor))


def handle_plan(args):
    """Handle the plan command."""
    params_list = load_params(args, local=True)
    failed = False
    for params in params_list:
        try:
            plan = build_plan(params)
            plan.validate()
        except ValidationError as e:
            logger.error(f"[{params.name}] {e.format_message()}")
            failed = True
            continue
        _print_plan(plan)
        if args.render:
            _print_rendered(params)
        logger.info("")
    sys.exit(EXIT_VALIDATION if failed else EXIT_OK)


def register_plan_command(subparsers):
    """Register the plan command."""
    parser = subparsers.add_parser("plan", help="Validate project files and show the ordered steps")
    add_project_args(parser)
    parser.add_argument("--render", action="store_true", help="Also print the rendered unit, site and env file")
    parser.set_defaults(func=handle_plan)
