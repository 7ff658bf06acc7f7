"""Type definitions for the helmsman automation engine.

This module defines the core data types shared by the resolver, the lock
coordinator and the dispatch orchestrator. Servers are immutable once loaded;
outcomes are plain dataclasses that the CLI turns into reports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class LockScope(str, Enum):
    """Which side(s) of the control/remote boundary a run locks."""

    NONE = "none"
    LOCAL = "local"
    REMOTE = "remote"
    BOTH = "both"

    @property
    def wants_local(self) -> bool:
        return self in (LockScope.LOCAL, LockScope.BOTH)

    @property
    def wants_remote(self) -> bool:
        return self in (LockScope.REMOTE, LockScope.BOTH)


class ExecutionMode(str, Enum):
    """How hosts are dispatched."""

    SERIAL = "serial"
    PARALLEL = "parallel"


class NotifyLevel(str, Enum):
    """Minimum level of log events delivered to channels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]


_LEVEL_RANKS = {
    NotifyLevel.DEBUG: 0,
    NotifyLevel.INFO: 1,
    NotifyLevel.WARN: 2,
    NotifyLevel.ERROR: 3,
}


class HostStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class FailureReason(str, Enum):
    """Why a host failed. Each maps onto one branch of the error taxonomy."""

    CONNECTION = "connection"
    AUTH = "auth"
    TIMEOUT = "timeout"
    LOCK = "lock"
    TASK = "task"


@dataclass(frozen=True)
class Server:
    """A single server known to the configuration directory.

    Servers are immutable and compared by name, so the resolver can
    deduplicate them no matter how they were selected.

    Attributes:
        name: Canonical name, typically a DNS name or address
        roles: Role labels attached to this server
        port: SSH port override (None uses the transport default)
        timeout: Per-host timeout override in seconds
        user: Remote login user override

    Example:
        >>> web = Server(name="web1.example.com", roles=frozenset({"web"}))
        >>> web.has_role("web")
        True
        >>> web.short_name
        'web1'
    """

    name: str
    roles: frozenset[str] = field(default_factory=frozenset, compare=False)
    port: int | None = field(default=None, compare=False)
    timeout: float | None = field(default=None, compare=False)
    user: str | None = field(default=None, compare=False)

    def has_role(self, role: str) -> bool:
        """Check if this server carries the given role."""
        return role in self.roles

    @property
    def short_name(self) -> str:
        """Name up to the first dot."""
        return self.name.split(".", 1)[0]

    def __str__(self) -> str:
        return self.name


@dataclass
class HostOutcome:
    """Result of running a task against one server.

    Attributes:
        server: Server the task ran against
        status: Success, failure, or skipped after an abort
        reason: Failure category (only set on failure)
        message: Human-readable failure detail
        duration: Seconds spent in the unit of work
    """

    server: Server
    status: HostStatus
    reason: FailureReason | None = None
    message: str = ""
    duration: float = 0.0

    @property
    def is_success(self) -> bool:
        return self.status is HostStatus.SUCCESS

    @property
    def is_failure(self) -> bool:
        return self.status is HostStatus.FAILURE

    @classmethod
    def success(cls, server: Server, duration: float = 0.0) -> "HostOutcome":
        return cls(server=server, status=HostStatus.SUCCESS, duration=duration)

    @classmethod
    def failure(
        cls,
        server: Server,
        reason: FailureReason,
        message: str,
        duration: float = 0.0,
    ) -> "HostOutcome":
        return cls(
            server=server,
            status=HostStatus.FAILURE,
            reason=reason,
            message=message,
            duration=duration,
        )

    @classmethod
    def skipped(cls, server: Server, message: str = "") -> "HostOutcome":
        return cls(server=server, status=HostStatus.SKIPPED, message=message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "status": self.status.value,
            "duration": round(self.duration, 3),
        }
        if self.reason is not None:
            result["reason"] = self.reason.value
        if self.message:
            result["message"] = self.message
        return result


@dataclass
class RunOutcome:
    """Aggregate outcome of one run.

    Attributes:
        hosts: Per-host outcomes in resolved target order
        aborted: True when a fatal condition skipped remaining hosts

    Example:
        >>> outcome = RunOutcome()
        >>> outcome.is_success
        True
    """

    hosts: list[HostOutcome] = field(default_factory=list)
    aborted: bool = False

    @property
    def is_success(self) -> bool:
        """True only if no host failed. Zero targets is a success."""
        return not any(h.is_failure for h in self.hosts)

    @property
    def failures(self) -> list[HostOutcome]:
        return [h for h in self.hosts if h.is_failure]

    @property
    def successes(self) -> list[HostOutcome]:
        return [h for h in self.hosts if h.is_success]

    @property
    def skipped(self) -> list[HostOutcome]:
        return [h for h in self.hosts if h.status is HostStatus.SKIPPED]

    def get(self, name: str) -> HostOutcome | None:
        for host in self.hosts:
            if host.server.name == name:
                return host
        return None


DEFAULT_MAX_PARALLEL = 100


@dataclass
class RunConfig:
    """Run-wide settings threaded explicitly through the orchestrator.

    Attributes:
        mode: Serial or parallel dispatch
        max_parallel: Upper bound on concurrently active hosts
        timeout: Per-host timeout in seconds (None for no limit)
        lock_scope: Which locks to take around the run
        lock_contention: "continue" records a host failure when its remote
            lock is held; "abort" also skips every host not yet started
        notify_level: Minimum level delivered to channels
        sudo: Remote user to run commands as
        lock_dir: Directory holding local lock files

    Example:
        >>> config = RunConfig(mode="parallel", max_parallel=10, lock_scope="both")
        >>> config.lock_scope.wants_remote
        True
    """

    mode: ExecutionMode = ExecutionMode.SERIAL
    max_parallel: int = DEFAULT_MAX_PARALLEL
    timeout: float | None = None
    lock_scope: LockScope = LockScope.NONE
    lock_contention: str = "continue"
    notify_level: NotifyLevel = NotifyLevel.INFO
    sudo: str | None = None
    lock_dir: Path | None = None

    def __post_init__(self) -> None:
        """Coerce string values and validate bounds."""
        self.mode = ExecutionMode(self.mode)
        self.lock_scope = LockScope(self.lock_scope)
        self.notify_level = NotifyLevel(self.notify_level)

        if self.max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1 (got {self.max_parallel})")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive (got {self.timeout})")
        if self.lock_contention not in ("continue", "abort"):
            raise ValueError(
                f"lock_contention must be 'continue' or 'abort' (got {self.lock_contention})"
            )

        if self.lock_dir is None:
            self.lock_dir = Path.home() / ".helmsman" / "locks"
        elif isinstance(self.lock_dir, str):
            self.lock_dir = Path(self.lock_dir)
