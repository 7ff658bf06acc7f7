"""helmsman - run tasks across a fleet of servers over SSH.

Targets are picked by name, abbreviation, numeric range or role; runs can
be serial or bounded-parallel, guarded by local and per-host locks, and
reported through pluggable notification channels.

Quick Start:
    from helmsman import TaskExecutor, RunConfig, RunContext, create_default_registry
    from helmsman.host_filter import resolve_targets

    registry = create_default_registry()
    directory = registry.load_directory("servers.yml")
    targets = resolve_targets(directory, roles=["web"])
    task = registry.task_class("exec")(RunContext("exec", args=["uptime"]))
    outcome = await TaskExecutor(config=RunConfig(mode="parallel")).run(task, targets)
"""

__version__ = "0.1.0"

from helmsman.executor import TaskExecutor
from helmsman.registry import ExtensionPoint, PluginRegistry, create_default_registry
from helmsman.task import RunContext, Task
from helmsman.types import RunConfig, RunOutcome, Server

__all__ = [
    "__version__",
    "ExtensionPoint",
    "PluginRegistry",
    "RunConfig",
    "RunContext",
    "RunOutcome",
    "Server",
    "Task",
    "TaskExecutor",
    "create_default_registry",
]
