"""DeploymentPlan: ordered execution of a project's steps with rollback."""

import heapq
import logging
from datetime import datetime, timezone
from enum import Enum

from hostwright.descriptor import validate_descriptor
from hostwright.errors import HostwrightError, PreconditionError, RemoteExecutionError, RollbackError, ValidationError
from hostwright.engine.locks import DEFAULT_LOCKS, SHARED_RESOURCES
from hostwright.engine.runner import IdempotentStepRunner
from hostwright.engine.state import HostState
from hostwright.engine.step import ExecutionResult, Outcome

logger = logging.getLogger(__name__)


class PlanState(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    DEFERRED = "deferred"


TERMINAL_STATES = {PlanState.SUCCEEDED, PlanState.ROLLED_BACK, PlanState.FAILED, PlanState.DEFERRED}


def topological_order(steps):
    """Order *steps* so every step comes after its dependencies.

    Ties are broken by phase, then by the order the steps were given in,
    so the same graph always yields the same plan.

    Raises:
        ValidationError: duplicate ids, unknown dependencies, or a cycle.
    """
    by_id = {}
    for index, step in enumerate(steps):
        if step.id in by_id:
            raise ValidationError(f"Duplicate step id '{step.id}'")
        by_id[step.id] = (index, step)

    dependents = {step.id: [] for step in steps}
    indegree = {step.id: 0 for step in steps}
    for step in steps:
        for dep in step.depends_on:
            if dep not in by_id:
                raise ValidationError(f"Step '{step.id}' depends on unknown step '{dep}'", step_id=step.id)
            dependents[dep].append(step.id)
            indegree[step.id] += 1

    ready = [(step.phase, index, step.id) for index, step in enumerate(steps) if indegree[step.id] == 0]
    heapq.heapify(ready)

    ordered = []
    while ready:
        _, _, step_id = heapq.heappop(ready)
        index, step = by_id[step_id]
        ordered.append(step)
        for child in dependents[step_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                child_index, child_step = by_id[child]
                heapq.heappush(ready, (child_step.phase, child_index, child))

    if len(ordered) != len(steps):
        stuck = sorted(step_id for step_id, degree in indegree.items() if degree > 0)
        raise ValidationError("Step dependency cycle", observed=", ".join(stuck))
    return ordered


class DeploymentPlan:
    """Drives one project's steps through Draft → Validated → Executing → terminal.

    Args:
        descriptor: the project being deployed.
        executor: transport to the target host.
        steps: the step graph (any order; validate() sorts it).
        targets: ProbeTargets describing what HostState.probe should inspect.
        locks: advisory lock registry shared with concurrent plans.
    """

    def __init__(self, descriptor, executor, steps, targets, locks=None):
        self.descriptor = descriptor
        self.executor = executor
        self.steps = list(steps)
        self.targets = targets
        self.locks = locks or DEFAULT_LOCKS
        self.state = PlanState.DRAFT
        self.ordered = []
        self.results: list[ExecutionResult] = []
        self.left_in_place: list[str] = []
        self.error: HostwrightError | None = None
        self.started_at = None
        self.finished_at = None
        self.runner = IdempotentStepRunner(executor, self.probe)

    async def probe(self) -> HostState:
        return await HostState.probe(self.executor, self.targets)

    def _require(self, *states):
        if self.state not in states:
            expected = " or ".join(s.value for s in states)
            raise RuntimeError(f"Plan for '{self.descriptor.name}' is {self.state.value}, expected {expected}")

    # ── Draft → Validated ────────────────────────────────────────

    def validate(self):
        """Check the descriptor and sort the step graph. Returns the ordered steps."""
        self._require(PlanState.DRAFT)
        validate_descriptor(self.descriptor)
        self.ordered = topological_order(self.steps)
        self.state = PlanState.VALIDATED
        return self.ordered

    # ── Validated → Executing → terminal ─────────────────────────

    def _project_resources(self):
        resources = set()
        for step in self.ordered:
            resources.update(r for r in step.resources if r not in SHARED_RESOURCES)
        return resources

    def _hold_shared(self, step):
        shared = [r for r in step.resources if r in SHARED_RESOURCES]
        return self.locks.hold(self.executor.host, shared, self.executor)

    async def execute(self) -> PlanState:
        """Apply every step in order, rolling back on the first failure."""
        self._require(PlanState.VALIDATED)
        self.state = PlanState.EXECUTING
        self.started_at = datetime.now(timezone.utc)
        host = self.executor.host
        logger.info(f"Deploying '{self.descriptor.name}' to {host} ({len(self.ordered)} steps)")

        try:
            async with self.locks.hold(host, self._project_resources(), self.executor):
                await self._run_steps()
        except RemoteExecutionError as e:
            # Only lock acquisition raises here; no step has run yet
            self.error = e
            self.state = PlanState.ROLLED_BACK
            logger.error(f"Could not lock resources on {host}; nothing was changed")
            logger.error(e.format_message())
        finally:
            self.finished_at = datetime.now(timezone.utc)

        logger.info(f"Plan for '{self.descriptor.name}' finished: {self.state.value}")
        return self.state

    async def _run_steps(self):
        touched = []  # steps that may have mutated the host, in applied order
        for step in self.ordered:
            try:
                async with self._hold_shared(step):
                    state = await self.probe()
                    result = await self.runner.apply(step, state)
            except PreconditionError as e:
                if e.step_id is None:
                    e.step_id = step.id
                self.results.append(ExecutionResult(step.id, Outcome.SKIPPED, detail=f"deferred: {e.format_message()}"))
                self.error = e
                self.state = PlanState.DEFERRED
                logger.warning(f"  [defer] {e.format_message()}")
                logger.warning("Earlier steps remain applied; rerun once the precondition holds.")
                return
            except RemoteExecutionError as e:
                # Lock or probe failed before the step acted; only earlier steps need undoing
                if e.step_id is None:
                    e.step_id = step.id
                logger.error(f"  [fail] {e.format_message()}")
                self.results.append(ExecutionResult(step.id, Outcome.FAILED, detail=e.format_message(), error=e))
                self.error = e
                await self._rollback(touched)
                return

            self.results.append(result)
            if result.outcome == Outcome.APPLIED:
                touched.append(step)
            elif result.outcome == Outcome.FAILED:
                self.error = result.error
                touched.append(step)
                await self._rollback(touched)
                return

        self.state = PlanState.SUCCEEDED

    async def _rollback(self, touched):
        """Undo reversible steps in reverse applied order."""
        self.state = PlanState.ROLLING_BACK
        logger.warning(f"Rolling back '{self.descriptor.name}'...")
        for step in reversed(touched):
            if not step.reversible:
                self.left_in_place.append(step.id)
                continue
            logger.info(f"  [undo] {step.id}")
            try:
                async with self._hold_shared(step):
                    await step.undo(self.executor)
            except HostwrightError as e:
                self.error = RollbackError(
                    "Rollback failed; manual cleanup required",
                    step_id=step.id,
                    diagnostic=e.format_message(),
                )
                self.state = PlanState.FAILED
                logger.error(self.error.format_message())
                return
        if self.left_in_place:
            logger.info(f"  Left in place (not reversible): {', '.join(self.left_in_place)}")
        self.state = PlanState.ROLLED_BACK

    # ── reporting ────────────────────────────────────────────────

    def to_dict(self):
        """Audit record of the run. Never includes the database password."""
        return {
            "project": self.descriptor.name,
            "domain": self.descriptor.domain,
            "host": self.executor.host,
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": [step.id for step in self.ordered],
            "results": [r.to_dict() for r in self.results],
            "left_in_place": list(self.left_in_place),
            "error": self.error.format_message() if self.error else None,
        }
