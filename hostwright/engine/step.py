"""Declarative steps and their execution results."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable


class Outcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class Phase(int, Enum):
    """Coarse ordering used to break ties in the dependency sort."""

    PACKAGES = 0
    LAYOUT = 1
    DATABASE = 2
    APPLICATION = 3
    SERVICE = 4
    PROXY = 5
    CERTIFICATE = 6
    PROXY_TLS = 7


def _no_violations(state):
    return []


@dataclass
class Step:
    """One idempotent unit of work.

    ``precondition`` returns True when the host already has the desired state,
    in which case the step is skipped. ``postcondition`` returns a list of
    violations observed after the action; empty means the step succeeded.
    """

    id: str
    description: str
    phase: Phase
    precondition: Callable
    action: Callable[..., Awaitable]
    postcondition: Callable = _no_violations
    depends_on: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    undo: Callable[..., Awaitable] | None = None
    expected: str = ""

    @property
    def reversible(self) -> bool:
        return self.undo is not None


@dataclass
class ExecutionResult:
    """What happened when one step was applied."""

    step_id: str
    outcome: Outcome
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    detail: str = ""
    error: Exception | None = field(default=None, repr=False, compare=False)

    def to_dict(self):
        return {
            "step_id": self.step_id,
            "outcome": self.outcome.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": round(self.duration, 3),
            "detail": self.detail,
        }
