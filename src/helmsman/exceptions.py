"""Exception hierarchy for helmsman.

Every error carries a human-readable ``msg`` suitable for showing an
operator as-is, plus structured fields for programmatic handling.

Pattern, validation and local-lock errors are fatal to the whole run.
Transport, remote-lock and per-host task errors are caught at the host
boundary and recorded in the run outcome.
"""

from typing import Any


class HelmsmanError(Exception):
    """Base class for all helmsman errors.

    Example:
        raise HelmsmanError("Something broke", host="web1")
        # error.fields == {"host": "web1"}
    """

    def __init__(self, msg: str, **fields: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        self.fields: dict[str, Any] = fields

    def __str__(self) -> str:
        return self.msg


class PatternError(HelmsmanError):
    """Raised when a target pattern cannot be resolved."""


class InvalidPattern(PatternError):
    def __init__(self, token: str, detail: str) -> None:
        super().__init__(f"Invalid pattern '{token}': {detail}", token=token)
        self.token = token


class UnknownServer(PatternError):
    def __init__(self, name: str) -> None:
        super().__init__(f"No server matches '{name}'", name=name)
        self.name = name


class UnknownRole(PatternError):
    def __init__(self, role: str) -> None:
        super().__init__(f"No such role '{role}'", role=role)
        self.role = role


class AmbiguousReference(PatternError):
    def __init__(self, name: str, candidates: list[str]) -> None:
        listed = ", ".join(candidates)
        super().__init__(
            f"Server abbreviation '{name}' is ambiguous: {listed}",
            name=name,
            candidates=candidates,
        )
        self.name = name
        self.candidates = candidates


class LockError(HelmsmanError):
    """Raised when a lock cannot be taken."""


class AlreadyLocked(LockError):
    """Someone else holds the lock.

    Attributes:
        scope: "local" or "remote"
        target: "local" for the control-node lock, the host name otherwise
    """

    def __init__(self, scope: str, target: str, holder: str = "") -> None:
        if scope == "local":
            msg = "Local lock is already held by another run"
        else:
            msg = f"Remote lock on {target} is already held by another run"
        if holder:
            msg += f" ({holder})"
        super().__init__(msg, scope=scope, target=target)
        self.scope = scope
        self.target = target
        self.holder = holder


class TransportError(HelmsmanError):
    """Raised when a remote session cannot be used."""


class ConnectFailed(TransportError):
    def __init__(self, host: str, detail: str) -> None:
        super().__init__(f"Could not connect to {host}: {detail}", host=host)
        self.host = host


class AuthFailed(TransportError):
    def __init__(self, host: str, detail: str) -> None:
        super().__init__(f"Authentication failed for {host}: {detail}", host=host)
        self.host = host


class TransportTimeout(TransportError):
    def __init__(self, host: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout}s on {host}", host=host, timeout=timeout)
        self.host = host
        self.timeout = timeout


class TaskError(HelmsmanError):
    """Raised by tasks."""


class TaskValidationError(TaskError):
    """Task options are unusable. Fatal before any host is touched."""


class TaskFailed(TaskError):
    """The task failed on the current host only."""


class RemoteCommandError(TaskFailed):
    """A remote command exited non-zero."""

    def __init__(self, host: str, command: str, exit_status: int, stderr: str = "") -> None:
        msg = f"Command '{command}' failed on {host} with exit status {exit_status}"
        if stderr.strip():
            msg += f": {stderr.strip()}"
        super().__init__(msg, host=host, command=command, exit_status=exit_status)
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr


class FatalTaskError(TaskError):
    """The task wants the whole run stopped. Remaining hosts are skipped."""


class LoadFailed(HelmsmanError):
    """A configuration source could not be loaded."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Could not load configuration from {source}: {reason}", source=source)
        self.source = source
        self.reason = reason


class UnknownKey(HelmsmanError):
    """Nothing is registered under this key."""

    def __init__(self, extension_point: str, key: str) -> None:
        super().__init__(f"Unknown {extension_point} '{key}'", extension_point=extension_point, key=key)
        self.extension_point = extension_point
        self.key = key
