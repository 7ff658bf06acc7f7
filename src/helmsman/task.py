"""Task interface for helmsman.

A task is the logic run once per target host. The orchestrator calls, in
order: ``validate`` once, ``setup`` once, ``execute`` per host, and
``teardown`` once. Only ``execute`` must be implemented.

Example:
    class Uptime(Task):
        async def execute(self, session, server):
            result = await session.run("uptime")
            self.notify(server).info(result.stdout.strip())
"""

import inspect
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .events import EventBroadcaster, ServerNotifier
from .exceptions import TaskValidationError
from .types import Server

if TYPE_CHECKING:
    from .ssh import Session


@dataclass
class RunContext:
    """Shared settings one task instance is bound to for a run.

    Attributes:
        task_name: Name the task was invoked as
        options: Extra ``key=value`` options from the command line
        args: Extra positional arguments from the command line
        sudo: User to run remote commands as
        timeout: Per-host timeout in seconds
        notify: Broadcaster for lifecycle and log events
    """

    task_name: str
    options: dict[str, str] = field(default_factory=dict)
    args: list[str] = field(default_factory=list)
    sudo: str | None = None
    timeout: float | None = None
    notify: EventBroadcaster = field(default_factory=EventBroadcaster)

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def require(self, *keys: str) -> None:
        """Fail validation unless every option is present and non-empty."""
        missing = [k for k in keys if not self.options.get(k)]
        if missing:
            names = ", ".join(f"{k}=..." for k in missing)
            raise TaskValidationError(
                f"Task '{self.task_name}' requires option(s): {names}",
                missing=missing,
            )


class Task:
    """Base class for tasks.

    Subclasses implement ``execute``; every other hook has a default.
    Instances hold no per-host state unless a subclass adds it.
    """

    def __init__(self, context: RunContext) -> None:
        self.context = context

    @property
    def name(self) -> str:
        return self.context.task_name

    def validate(self) -> None:
        """Check options before any host is touched.

        Raises:
            TaskValidationError: If the run cannot proceed
        """

    async def setup(self) -> None:
        """Prepare the control node once before dispatching hosts."""

    async def execute(self, session: "Session", server: Server) -> None:
        """Do the work on one host.

        Raises:
            TaskFailed: Fails this host only
            FatalTaskError: Fails this host and skips every remaining one
        """
        raise NotImplementedError(f"Task {type(self).__name__} must implement execute()")

    async def teardown(self) -> None:
        """Clean up once after every host has been processed."""

    @classmethod
    def help(cls, name: str = "") -> str:
        """Help text for this task, taken from the class docstring."""
        if cls.__doc__ and cls is not Task:
            return inspect.cleandoc(cls.__doc__)
        return f'No help documentation for "{name or cls.__name__}"'

    def notify(self, server: Server | None = None) -> "EventBroadcaster | ServerNotifier":
        """The run's broadcaster, optionally bound to a server."""
        if server is None:
            return self.context.notify
        return self.context.notify.for_server(server)

    @staticmethod
    def unique_tmp_file(prefix: str = "", suffix: str = "") -> str:
        """A path under /tmp that no other run will pick.

        Example:
            >>> Task.unique_tmp_file(suffix=".patch")  # doctest: +SKIP
            '/tmp/3f2b8c1e-0d4a-4c52-9a8e-9e1f7b2d6a10.patch'
        """
        return f"/tmp/{prefix}{uuid.uuid4()}{suffix}"
