"""Run a shell command on every host."""

import shlex

from ..exceptions import TaskValidationError
from ..task import Task


class ExecTask(Task):
    """Run a command on each server.

    Usage:
        helmsman run exec -r web -- uptime
        helmsman run exec -s db1 --sudo postgres -- psql -c 'select 1'

    Each line the command writes to stdout is reported as an info
    message for that server. A non-zero exit status fails the server.
    """

    @property
    def command(self) -> str:
        args = self.context.args
        if len(args) == 1:
            return args[0]
        return shlex.join(args)

    def validate(self) -> None:
        if not self.context.args:
            raise TaskValidationError("Task 'exec' needs a command to run")

    async def execute(self, session, server) -> None:
        result = await session.run(self.command)
        notify = self.notify(server)
        for line in result.stdout.splitlines():
            notify.info(line)
