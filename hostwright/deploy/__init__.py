"""Deployment: step graph construction and multi-project orchestration."""

from hostwright.deploy.orchestrate import (
    EXIT_DEFERRED,
    EXIT_OK,
    EXIT_ROLLBACK_FAILED,
    EXIT_ROLLED_BACK,
    EXIT_VALIDATION,
    build_plan,
    deploy,
    exit_code,
    make_executor,
    save_audit,
)
from hostwright.deploy.params import DeployParams
from hostwright.deploy.steps import build_steps, render_env

__all__ = [
    "DeployParams",
    "EXIT_DEFERRED",
    "EXIT_OK",
    "EXIT_ROLLBACK_FAILED",
    "EXIT_ROLLED_BACK",
    "EXIT_VALIDATION",
    "build_plan",
    "build_steps",
    "deploy",
    "exit_code",
    "make_executor",
    "render_env",
    "save_audit",
]
