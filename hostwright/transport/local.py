"""Local transport: run commands and write files on the machine running hostwright."""

import asyncio
import logging
import os
import shlex
import tempfile

from hostwright.errors import CommandTimeout
from hostwright.transport.executor import DEFAULT_TIMEOUT, Executor
from hostwright.transport.types import CommandResult

logger = logging.getLogger(__name__)


class LocalExecutor(Executor):
    """Executor for deploying onto the current machine.

    Unlike SSH there is no remote side to leave running: on timeout or
    cancellation the command itself is killed.
    """

    host = "localhost"

    def __init__(self, use_sudo=False, default_timeout=DEFAULT_TIMEOUT):
        super().__init__(default_timeout)
        self.use_sudo = use_sudo

    def _wrap(self, command):
        if self.use_sudo:
            return f"sudo -n sh -c {shlex.quote(command)}"
        return command

    async def _exec(self, command, timeout) -> CommandResult:
        command = self._wrap(command)
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            logger.error(f"Command timed out after {timeout}s: {command}")
            proc.kill()
            await proc.wait()
            raise CommandTimeout(f"Timed out after {timeout}s", diagnostic=command) from None
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        stdout = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
        return CommandResult(proc.returncode, stdout, stderr)

    async def _stage(self, content, timeout) -> str:
        fd, path = tempfile.mkstemp(prefix="hostwright-")
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        return path

    async def _spawn(self, command):
        return await asyncio.create_subprocess_shell(
            self._wrap(command),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
