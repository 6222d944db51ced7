"""
Error taxonomy for the deployment core.

Transport-level errors (ExecError and subclasses) are raised by executors
and the SSH session. Only SSHConnectionError is retryable; the session's
reconnect loop consults the ``retryable`` class attribute.

Everything the orchestrator raises to its caller is an OperationFailed
carrying the last completed state and the underlying cause.
"""

from typing import Any, Dict, List, Optional, Sequence

STDERR_TAIL_CHARS = 2000


def tail(text: str, limit: int = STDERR_TAIL_CHARS) -> str:
    """Return the last ``limit`` characters of ``text``."""
    if not text:
        return ""
    return text[-limit:]


class DcdError(Exception):
    """Base class for every error raised by the deployment core."""
    retryable = False


# ── Transport ────────────────────────────────────────────────────

class ExecError(DcdError):
    """A command or file transfer could not be carried out."""


class SSHConnectionError(ExecError):
    """
    The SSH connection could not be established or was lost.

    ``command_sent`` is True when the connection dropped after a command
    was already handed to the remote host, so its side effects are unknown.
    """
    retryable = True

    def __init__(self, message: str, command_sent: bool = False):
        super().__init__(message)
        self.command_sent = command_sent


class AuthError(ExecError):
    """Authentication was rejected. Never retried."""


class HostKeyError(AuthError):
    """The server's host key is unknown (strict mode) or does not match."""


class ProtocolError(ExecError):
    """SSH or SFTP protocol-level failure."""


class CommandError(ExecError):
    """A command exited non-zero."""

    def __init__(self, argv: Sequence[str], exit_code: int, stderr: str = ""):
        self.argv = list(argv)
        self.exit_code = exit_code
        self.stderr_tail = tail(stderr)
        cmd = " ".join(self.argv)
        super().__init__(
            f"command failed (exit {exit_code}): {cmd[:200]}"
            + (f"\n{self.stderr_tail.strip()}" if self.stderr_tail.strip() else "")
        )


class CommandTimeout(ExecError, TimeoutError):
    """A command or transfer exceeded its timeout; its channel was closed."""


# ── Deployment ───────────────────────────────────────────────────

class PlanError(DcdError):
    """The deployment plan cannot be executed as given."""


class SyncError(DcdError):
    """File synchronization failed, e.g. a post-upload hash mismatch."""


class DockerSetupError(DcdError):
    """Docker or Compose could not be made available on the remote host."""


class FirewallError(DcdError):
    """Firewall rules could not be applied."""


class HealthCheckFailed(DcdError):
    """One or more services ended the health window unhealthy."""

    def __init__(self, message: str, services: Optional[List[Any]] = None):
        super().__init__(message)
        self.services = services or []


class HealthCheckTimeout(HealthCheckFailed):
    """Services were still starting when the health window closed."""


class OperationCancelled(DcdError):
    """The operation was interrupted on the control machine."""


class UserAborted(DcdError):
    """The operator declined an interactive confirmation."""


class OperationFailed(DcdError):
    """
    Terminal failure of an up/status/destroy invocation.

    Attributes:
        operation: "up", "status" or "destroy".
        last_state: Last FSM state that completed successfully.
        cause: The error that stopped the machine.
        report: Partial report collected before the failure, if any.
    """

    def __init__(self, operation: str, last_state: Any, cause: BaseException,
                 report: Any = None):
        self.operation = operation
        self.last_state = last_state
        self.cause = cause
        self.report = report
        state_name = getattr(last_state, "value", last_state)
        super().__init__(f"{operation} failed after state '{state_name}': {cause}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "last_state": getattr(self.last_state, "value", self.last_state),
            "error": type(self.cause).__name__,
            "message": str(self.cause),
        }
