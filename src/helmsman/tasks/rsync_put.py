"""Copy files to every host with rsync."""

import asyncio
import logging
import shutil

from ..exceptions import TaskFailed, TaskValidationError
from ..task import Task

logger = logging.getLogger(__name__)


class RsyncPutTask(Task):
    """Sync a local path to each server with rsync.

    Options:
        local=<path>    Local file or directory
        remote=<path>   Destination on the server

    rsync runs on the control node in archive mode (``rsync -a``) over
    ssh, so it must be installed locally and on every server.
    """

    def validate(self) -> None:
        self.context.require("local", "remote")
        if shutil.which("rsync") is None:
            raise TaskValidationError("rsync was not found on PATH")

    def command(self, server) -> list[str]:
        """Build the rsync command line for a server."""
        argv = ["rsync", "-a"]
        if server.port:
            argv += ["-e", f"ssh -p {server.port}"]
        if self.context.sudo:
            argv += ["--rsync-path", f"sudo -n -u {self.context.sudo} rsync"]
        host = f"{server.user}@{server.name}" if server.user else server.name
        argv += [self.context.option("local"), f"{host}:{self.context.option('remote')}"]
        return argv

    async def execute(self, session, server) -> None:
        argv = self.command(server)
        logger.debug(f"Running {' '.join(argv)}")
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        if process.returncode != 0:
            raise TaskFailed(
                f"rsync to {server.name} failed with exit status {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}",
                host=server.name,
            )
        self.notify(server).info(f"Synced {self.context.option('local')}")
