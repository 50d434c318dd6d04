"""IdempotentStepRunner: apply one step only if the host differs from the desired state."""

import logging
import time

from hostwright.errors import ActivationError, HostwrightError, RemoteExecutionError
from hostwright.engine.step import ExecutionResult, Outcome
from hostwright.transport.executor import Executor

logger = logging.getLogger(__name__)


class RecordingExecutor(Executor):
    """Executor wrapper that keeps the output of every command a step runs."""

    def __init__(self, inner):
        super().__init__(inner.default_timeout)
        self.inner = inner
        self.host = inner.host
        self.stdout = []
        self.stderr = []

    async def _exec(self, command, timeout):
        result = await self.inner._exec(command, timeout)
        if result.stdout.strip():
            self.stdout.append(result.stdout)
        if result.stderr.strip():
            self.stderr.append(result.stderr)
        return result

    async def _stage(self, content, timeout):
        return await self.inner._stage(content, timeout)

    async def _spawn(self, command):
        return await self.inner._spawn(command)


class IdempotentStepRunner:
    """Applies steps through an executor.

    Args:
        executor: transport to the target host.
        probe: async callable returning a fresh HostState; used for the
            postcondition check after a step's action.
    """

    def __init__(self, executor, probe):
        self.executor = executor
        self.probe = probe

    async def apply(self, step, state) -> ExecutionResult:
        """Apply *step* given the freshly probed *state*.

        The postcondition check is the only retry boundary and it is not
        retried here: a failed check is reported and the caller decides.
        PreconditionError and ValidationError propagate to the caller.
        """
        start = time.monotonic()

        if step.precondition(state):
            logger.info(f"  [skip] {step.id}: {step.description}")
            return ExecutionResult(
                step.id,
                Outcome.SKIPPED,
                duration=time.monotonic() - start,
                detail="already in desired state",
            )

        logger.info(f"  [run]  {step.id}: {step.description}")
        recorder = RecordingExecutor(self.executor)
        try:
            await step.action(recorder, state)
            after = await self.probe()
        except (RemoteExecutionError, ActivationError) as e:
            if e.step_id is None:
                e.step_id = step.id
            logger.error(f"  [fail] {e.format_message()}")
            stderr = recorder.stderr + ([e.diagnostic] if e.diagnostic else [])
            return ExecutionResult(
                step.id,
                Outcome.FAILED,
                stdout="".join(recorder.stdout),
                stderr="\n".join(stderr),
                duration=time.monotonic() - start,
                detail=e.format_message(),
                error=e,
            )

        violations = step.postcondition(after)
        duration = time.monotonic() - start
        if violations:
            error = HostwrightError(
                "postcondition not met",
                step_id=step.id,
                expected=step.expected or step.description,
                observed="; ".join(violations),
            )
            logger.error(f"  [fail] {error.format_message()}")
            return ExecutionResult(
                step.id,
                Outcome.FAILED,
                stdout="".join(recorder.stdout),
                stderr="".join(recorder.stderr),
                duration=duration,
                detail=error.format_message(),
                error=error,
            )

        return ExecutionResult(
            step.id,
            Outcome.APPLIED,
            stdout="".join(recorder.stdout),
            stderr="".join(recorder.stderr),
            duration=duration,
        )
