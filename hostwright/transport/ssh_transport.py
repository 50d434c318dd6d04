"""SSH transport: run commands and write files on remote servers via SSH/SCP."""

import asyncio
import logging
import os
import shlex
import tempfile
import uuid

from hostwright.errors import CommandTimeout, TransportError
from hostwright.transport.executor import DEFAULT_TIMEOUT, Executor
from hostwright.transport.types import CommandResult

logger = logging.getLogger(__name__)

# ssh exits 255 when the connection itself failed
SSH_CONNECTION_FAILED = 255

REMOTE_STAGING_DIR = "/tmp"


def _common_options():
    return [
        "-o", "StrictHostKeyChecking=accept-new",
        "-o", "BatchMode=yes",
        "-o", "ConnectTimeout=15",
        "-o", "ServerAliveInterval=60",
        "-o", "ServerAliveCountMax=5",
    ]


def ssh_base_args(server, ssh_key, ssh_port):
    """Build base SSH arguments."""
    args = ["ssh", *_common_options()]
    if ssh_key:
        args += ["-i", os.path.expanduser(ssh_key)]
    if ssh_port and ssh_port != 22:
        args += ["-p", str(ssh_port)]
    args.append(server)
    return args


def scp_base_args(ssh_key, ssh_port):
    """Build base SCP arguments (note: scp spells the port flag -P)."""
    args = ["scp", "-q", *_common_options()]
    if ssh_key:
        args += ["-i", os.path.expanduser(ssh_key)]
    if ssh_port and ssh_port != 22:
        args += ["-P", str(ssh_port)]
    return args


async def _communicate(args, timeout, label):
    """Run a local ssh/scp client and collect its output.

    On timeout or cancellation only the local client is stopped. Whatever it
    started on the remote side is left to finish and is reconciled by the
    next host probe.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise TransportError(f"'{args[0]}' not found. Is it installed and on PATH?") from e

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        logger.error(f"Command timed out after {timeout}s: {label}")
        proc.kill()
        await proc.wait()
        raise CommandTimeout(
            f"Timed out after {timeout}s; the remote command may still be running",
            diagnostic=label,
        ) from None
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    stdout = stdout_bytes.decode(errors="replace") if stdout_bytes else ""
    stderr = stderr_bytes.decode(errors="replace") if stderr_bytes else ""
    return proc.returncode, stdout, stderr


class SSHExecutor(Executor):
    """Executor for a remote host reached over OpenSSH.

    Non-root users run every command through ``sudo -n`` so the login user
    only needs passwordless sudo, as on a stock EC2 image.
    """

    def __init__(self, server, ssh_key=None, ssh_port=22, default_timeout=DEFAULT_TIMEOUT):
        super().__init__(default_timeout)
        self.server = server
        self.ssh_key = ssh_key
        self.ssh_port = ssh_port
        self.user = server.split("@")[0] if "@" in server else None
        self.host = server.split("@")[-1]

    @property
    def use_sudo(self) -> bool:
        return self.user not in (None, "root")

    def _wrap(self, command):
        if self.use_sudo:
            return f"sudo -n sh -c {shlex.quote(command)}"
        return command

    async def _exec(self, command, timeout) -> CommandResult:
        args = ssh_base_args(self.server, self.ssh_key, self.ssh_port)
        args.append(self._wrap(command))
        rc, stdout, stderr = await _communicate(args, timeout, command)
        if rc == SSH_CONNECTION_FAILED:
            raise TransportError(f"SSH connection to {self.server}:{self.ssh_port} failed", diagnostic=stderr)
        return CommandResult(rc, stdout, stderr)

    async def _stage(self, content, timeout) -> str:
        remote_path = f"{REMOTE_STAGING_DIR}/hostwright-{uuid.uuid4().hex}"

        # Write to a temp file locally, then SCP
        with tempfile.NamedTemporaryFile(mode="wb", prefix="hostwright-", delete=False) as f:
            f.write(content)
            tmp_path = f.name

        try:
            args = scp_base_args(self.ssh_key, self.ssh_port)
            args += [tmp_path, f"{self.server}:{remote_path}"]
            rc, _, stderr = await _communicate(args, timeout or self.default_timeout, f"scp -> {remote_path}")
        finally:
            os.unlink(tmp_path)

        if rc != 0:
            raise TransportError(f"Failed to copy file to {self.server}:{remote_path}", diagnostic=stderr)
        return remote_path

    async def _spawn(self, command):
        args = ssh_base_args(self.server, self.ssh_key, self.ssh_port)
        args.append(self._wrap(command))
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise TransportError(f"'{args[0]}' not found. Is it installed and on PATH?") from e

    def _spawn_error(self, command, exit_code, stderr):
        if exit_code == SSH_CONNECTION_FAILED:
            return TransportError(f"SSH connection to {self.server}:{self.ssh_port} failed", diagnostic=stderr)
        return super()._spawn_error(command, exit_code, stderr)
