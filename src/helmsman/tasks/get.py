"""Download a file from every host."""

import posixpath
from pathlib import Path

from ..task import Task


class GetTask(Task):
    """Download a remote file from each server.

    Options:
        remote=<path>   File to fetch
        local=<dir>     Directory to store copies in

    Each copy is saved as <dir>/<basename>.<server> so files from
    different servers never overwrite each other.
    """

    def validate(self) -> None:
        self.context.require("remote", "local")

    @property
    def local_dir(self) -> Path:
        return Path(self.context.option("local"))

    async def setup(self) -> None:
        self.local_dir.mkdir(parents=True, exist_ok=True)

    def destination(self, server) -> Path:
        basename = posixpath.basename(self.context.option("remote").rstrip("/"))
        return self.local_dir / f"{basename}.{server.name}"

    async def execute(self, session, server) -> None:
        destination = self.destination(server)
        await session.get(self.context.option("remote"), destination)
        self.notify(server).info(f"Saved to {destination}")
