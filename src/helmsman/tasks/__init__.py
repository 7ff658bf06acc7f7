"""Built-in tasks.

Each task is a Task subclass registered under its name by the default
plugin registry.
"""

from .exec import ExecTask
from .get import GetTask
from .patch import PatchTask
from .put import PutTask
from .rsync_put import RsyncPutTask

BUILTIN_TASKS = {
    "exec": ExecTask,
    "get": GetTask,
    "put": PutTask,
    "patch": PatchTask,
    "rsync_put": RsyncPutTask,
}

__all__ = [
    "BUILTIN_TASKS",
    "ExecTask",
    "GetTask",
    "PatchTask",
    "PutTask",
    "RsyncPutTask",
]
