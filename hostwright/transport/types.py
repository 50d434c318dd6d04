"""Shared data types for host transports."""

from dataclasses import dataclass


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command on the host."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
