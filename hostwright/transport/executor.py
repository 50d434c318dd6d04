"""Executor base: the single I/O boundary between the engine and a host.

Concrete transports implement ``_exec`` (run one shell command) and
``_stage`` (get bytes onto the host at a scratch path). Everything else,
including atomic file placement, is built on those two primitives so every
transport gets the same write semantics.
"""

import asyncio
import contextlib
import logging
import posixpath
import re
import shlex
import time
import uuid

from hostwright.errors import CommandTimeout, RemoteCommandError, TransportError
from hostwright.transport.types import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600

LOCK_DIR = "/run/lock"
LOCK_WAIT = 600
LOCK_ACQUIRED = b"locked"


def lock_path(resource) -> str:
    """Host-side lock file for *resource*, e.g. 'unit:demo.service' -> /run/lock/hostwright-unit_demo.service.lock."""
    return f"{LOCK_DIR}/hostwright-{re.sub(r'[^A-Za-z0-9._-]+', '_', resource).strip('_')}.lock"


class Executor:
    """Runs commands and places files on one host.

    All methods are coroutines. Over SSH, cancelling the awaiting task or
    hitting a timeout stops only the local client; the remote process is left
    to finish and the next probe reconciles it. LocalExecutor has no separate
    remote side, so there the command itself is killed.
    """

    host = "localhost"

    def __init__(self, default_timeout=DEFAULT_TIMEOUT):
        self.default_timeout = default_timeout

    async def _exec(self, command, timeout) -> CommandResult:
        raise NotImplementedError

    async def _stage(self, content: bytes, timeout) -> str:
        """Put *content* somewhere on the host and return that path."""
        raise NotImplementedError

    async def _spawn(self, command) -> asyncio.subprocess.Process:
        """Start *command* on the host with stdin, stdout and stderr piped."""
        raise NotImplementedError

    def _spawn_error(self, command, exit_code, stderr) -> Exception:
        return RemoteCommandError(command, exit_code, stderr)

    async def run(self, command, timeout=None, check=True) -> CommandResult:
        """Run *command* through a shell on the host.

        Raises:
            TransportError: the host could not be reached.
            CommandTimeout: *timeout* expired; the command may still be running.
            RemoteCommandError: non-zero exit and *check* is True.
        """
        timeout = timeout or self.default_timeout
        logger.debug(f"[{self.host}] $ {command}")
        start = time.monotonic()
        result = await self._exec(command, timeout)
        result = CommandResult(result.exit_code, result.stdout, result.stderr, time.monotonic() - start)
        if result.exit_code != 0:
            logger.debug(f"[{self.host}] exit {result.exit_code}: {result.stderr.strip()}")
            if check:
                raise RemoteCommandError(command, result.exit_code, result.stderr)
        return result

    async def put_file(self, content, remote_path, mode="0644", owner="root:root", timeout=None):
        """Write *content* to *remote_path* atomically.

        The file is staged, copied next to its destination with the final
        mode and owner, then renamed over the destination. An interrupted
        write leaves either the old file or the new one, never a partial one.
        """
        if isinstance(content, str):
            content = content.encode()
        directory, name = posixpath.split(remote_path)
        user, _, group = owner.partition(":")
        tmp_path = posixpath.join(directory, f".{name}.hostwright-{uuid.uuid4().hex[:8]}")

        staged = await self._stage(content, timeout)
        try:
            await self.run(f"mkdir -p {shlex.quote(directory)}", timeout=timeout)
            await self.run(
                f"install -m {mode} -o {user} -g {group or user} {shlex.quote(staged)} {shlex.quote(tmp_path)}",
                timeout=timeout,
            )
            await self.run(f"mv -f {shlex.quote(tmp_path)} {shlex.quote(remote_path)}", timeout=timeout)
        finally:
            await self.run(f"rm -f {shlex.quote(staged)}", timeout=timeout, check=False)
        logger.debug(f"[{self.host}] wrote {remote_path} ({len(content)} bytes, mode {mode})")

    @contextlib.asynccontextmanager
    async def hold_lock(self, resource, wait=LOCK_WAIT):
        """Hold ``flock`` on *resource*'s lock file on the host for the block.

        The lock belongs to a helper process that keeps it until its stdin
        closes, so separate hostwright processes deploying to the same host
        serialize, and a client that dies never leaves a stale lock.

        Raises:
            RemoteCommandError: the lock was not free within *wait* seconds.
            TransportError: the host could not be reached.
            CommandTimeout: the helper never answered.
        """
        path = lock_path(resource)
        holder = shlex.quote(f"echo {LOCK_ACQUIRED.decode()}; exec cat >/dev/null")
        command = f"mkdir -p {LOCK_DIR} && exec flock -w {wait} {shlex.quote(path)} sh -c {holder}"
        proc = await self._spawn(command)
        try:
            line = await asyncio.wait_for(proc.stdout.readline(), timeout=wait + 60)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandTimeout(f"Timed out waiting for {path}", diagnostic=command) from None
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        if line.strip() != LOCK_ACQUIRED:
            stderr = (await proc.stderr.read()).decode(errors="replace")
            await proc.wait()
            raise self._spawn_error(command, proc.returncode, stderr or f"{path} is held by another process")
        logger.debug(f"[{self.host}] locked {path}")

        try:
            yield
        finally:
            proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=30)
            except TimeoutError:
                proc.kill()
                await proc.wait()
            logger.debug(f"[{self.host}] released {path}")

    async def check_connection(self, timeout=30) -> bool:
        """Return True if a trivial command runs on the host."""
        try:
            result = await self.run("true", timeout=timeout, check=False)
        except (TransportError, CommandTimeout) as e:
            logger.error(f"Cannot reach {self.host}: {e.format_message()}")
            return False
        return result.ok

    async def file_exists(self, path) -> bool:
        result = await self.run(f"test -e {shlex.quote(path)}", check=False)
        return result.ok

    async def read_file(self, path) -> str | None:
        """Return the file's text, or None if it does not exist."""
        result = await self.run(f"cat {shlex.quote(path)}", check=False)
        if not result.ok:
            return None
        return result.stdout

    async def remove_file(self, path):
        await self.run(f"rm -f {shlex.quote(path)}")
