"""Apply a patch file on every host."""

import logging
import shlex
from pathlib import Path

from ..exceptions import TaskValidationError
from ..task import Task

logger = logging.getLogger(__name__)


class PatchTask(Task):
    """Apply a patch to a directory on each server.

    Options:
        file=<patch>    Local patch file
        target=<dir>    Directory on the server to patch
        strip=<n>       Leading path components to strip (default 0)

    The patch is uploaded to a temporary file, applied with
    ``patch -N`` (already applied hunks are not reversed) and removed.
    """

    def validate(self) -> None:
        self.context.require("file", "target")
        patch_file = Path(self.context.option("file"))
        if not patch_file.is_file():
            raise TaskValidationError(f"Patch file {patch_file} does not exist", path=str(patch_file))
        try:
            strip = int(self.context.option("strip", 0))
        except ValueError:
            strip = -1
        if strip < 0:
            raise TaskValidationError(
                f"strip must be a non-negative integer (got {self.context.option('strip')})"
            )

    @property
    def strip(self) -> int:
        return int(self.context.option("strip", 0))

    async def execute(self, session, server) -> None:
        staged = self.unique_tmp_file(prefix="helmsman-", suffix=".patch")
        target = self.context.option("target")
        await session.put(self.context.option("file"), staged)
        try:
            result = await session.run(
                f"patch -N -p{self.strip} -d {shlex.quote(target)} -i {shlex.quote(staged)}"
            )
        finally:
            try:
                await session.run(f"rm -f {shlex.quote(staged)}", sudo=False, check=False)
            except Exception as e:
                logger.warning(f"Could not remove {staged} on {server.name}: {e}")
        for line in result.stdout.splitlines():
            self.notify(server).debug(line)
        self.notify(server).info(f"Patched {target}")
