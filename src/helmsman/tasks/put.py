"""Upload a file to every host."""

import shlex
from pathlib import Path

from ..exceptions import TaskValidationError
from ..task import Task


class PutTask(Task):
    """Upload a local file to each server.

    Options:
        local=<file>    File to upload
        remote=<path>   Destination on the server

    The file is first uploaded to a unique temporary path and then moved
    into place, as the --sudo user when one is given.
    """

    def validate(self) -> None:
        self.context.require("local", "remote")
        local = Path(self.context.option("local"))
        if not local.is_file():
            raise TaskValidationError(f"Local file {local} does not exist", path=str(local))

    async def execute(self, session, server) -> None:
        remote = self.context.option("remote")
        staged = self.unique_tmp_file(prefix="helmsman-put-")
        await session.put(self.context.option("local"), staged)
        try:
            await session.run(f"mv {shlex.quote(staged)} {shlex.quote(remote)}")
        except Exception:
            await session.run(f"rm -f {shlex.quote(staged)}", sudo=False, check=False)
            raise
        self.notify(server).info(f"Installed {remote}")
