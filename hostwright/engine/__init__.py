"""Deployment engine: host state, steps, runner, locks, and plan state machine."""

from hostwright.engine.locks import DEFAULT_LOCKS, ResourceLocks
from hostwright.engine.plan import TERMINAL_STATES, DeploymentPlan, PlanState, topological_order
from hostwright.engine.runner import IdempotentStepRunner
from hostwright.engine.state import HostState, ProbeTargets
from hostwright.engine.step import ExecutionResult, Outcome, Phase, Step

__all__ = [
    "DEFAULT_LOCKS",
    "DeploymentPlan",
    "ExecutionResult",
    "HostState",
    "IdempotentStepRunner",
    "Outcome",
    "Phase",
    "PlanState",
    "ProbeTargets",
    "ResourceLocks",
    "Step",
    "TERMINAL_STATES",
    "topological_order",
]
