"""Host transports: SSH and local executors behind one Executor interface."""

from hostwright.transport.executor import DEFAULT_TIMEOUT, Executor
from hostwright.transport.local import LocalExecutor
from hostwright.transport.ssh_transport import SSHExecutor, scp_base_args, ssh_base_args
from hostwright.transport.types import CommandResult

__all__ = [
    "CommandResult",
    "DEFAULT_TIMEOUT",
    "Executor",
    "LocalExecutor",
    "SSHExecutor",
    "scp_base_args",
    "ssh_base_args",
]
