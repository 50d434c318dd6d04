"""Error taxonomy for the deployment engine.

Every error carries the step it happened in, the expected vs. observed host
state, and the raw remote diagnostic so nothing reaches the operator without
context.
"""


class HostwrightError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message, step_id=None, expected=None, observed=None, diagnostic=None):
        self.message = message
        self.step_id = step_id
        self.expected = expected
        self.observed = observed
        self.diagnostic = diagnostic
        super().__init__(self.format_message())

    def format_message(self):
        parts = [f"[{self.step_id}] {self.message}" if self.step_id else self.message]
        if self.expected is not None:
            parts.append(f"expected: {self.expected}")
        if self.observed is not None:
            parts.append(f"observed: {self.observed}")
        if self.diagnostic:
            parts.append(f"diagnostic: {self.diagnostic.strip()}")
        return "\n".join(parts)


# ── Validation (before any remote mutation) ─────────────────────────


class ValidationError(HostwrightError):
    """Descriptor or plan is invalid; nothing was touched on the host."""


class TemplateRenderError(ValidationError):
    """A unit or proxy template could not be rendered from the descriptor."""


# ── Preconditions (halt, no rollback) ───────────────────────────────


class PreconditionError(HostwrightError):
    """Host is not yet in a state where the step can run."""


class DNSNotReadyError(PreconditionError):
    """Domain does not resolve to this host yet."""


# ── Remote execution (triggers rollback) ────────────────────────────


class RemoteExecutionError(HostwrightError):
    """A command could not be run, or failed, on the host."""


class TransportError(RemoteExecutionError, ConnectionError):
    """The transport to the host could not be established."""


class CommandTimeout(RemoteExecutionError, TimeoutError):
    """The caller's timeout expired. The remote command may still be running."""


class RemoteCommandError(RemoteExecutionError):
    """A remote command exited non-zero."""

    def __init__(self, command, exit_code, stderr, step_id=None):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Command exited with {exit_code}: {command}",
            step_id=step_id,
            diagnostic=stderr,
        )


class IssuanceError(RemoteExecutionError):
    """The ACME collaborator failed to issue or renew a certificate."""


# ── Activation (prior config stays live) ────────────────────────────


class ActivationError(HostwrightError):
    """The supervisor or proxy rejected the new configuration."""


class ConfigSyntaxError(ActivationError):
    """The proxy's syntax check rejected the rendered configuration."""


# ── Fatal ───────────────────────────────────────────────────────────


class RollbackError(HostwrightError):
    """Undoing applied steps failed; the host needs manual cleanup."""
