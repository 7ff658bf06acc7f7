"""Run locking for helmsman.

Two kinds of advisory lock keep overlapping runs of the same task apart:

- local: one file lock on the control node, held for the whole run
- remote: one lock directory per target host, held only around that
  host's task execution

Lock identity is the task name plus the control node (local) or the
target host (remote), so unrelated tasks never contend. Contention fails
fast; nothing waits for a lock to free up.
"""

import asyncio
import fcntl
import logging
import os
import re
import socket
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from .exceptions import AlreadyLocked, LockError
from .types import LockScope, Server

if TYPE_CHECKING:
    from .ssh import Session

logger = logging.getLogger(__name__)

REMOTE_LOCK_ROOT = "/tmp"

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")


def _safe(part: str) -> str:
    return _UNSAFE_RE.sub("_", part)


class LockHandle:
    """A held lock. Releasing is idempotent.

    Attributes:
        scope: "local" or "remote"
        target: "local" or the host name

    Example:
        >>> handle = coordinator.acquire_local()
        >>> await handle.release()
        >>> await handle.release()  # no-op
    """

    def __init__(
        self,
        scope: str,
        target: str,
        release: Callable[[], Awaitable[None]],
    ) -> None:
        self.scope = scope
        self.target = target
        self._release = release
        self._released = False
        self._guard = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    async def release(self) -> None:
        """Release the lock once. Later calls do nothing."""
        with self._guard:
            if self._released:
                return
            self._released = True
        await self._release()
        logger.debug(f"Released {self.scope} lock for {self.target}")

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"<LockHandle {self.scope}:{self.target} {state}>"


class LockCoordinator:
    """Acquires and releases the locks a run's scope asks for.

    Attributes:
        scope: Lock scope for the run
        task_name: Name of the task being run
        run_id: Identifier written into held locks
        lock_dir: Directory holding local lock files
        node: Control-node identity (defaults to the local hostname)

    Example:
        >>> coordinator = LockCoordinator(LockScope.BOTH, "deploy", run_id)
        >>> async with coordinator.run_lock():
        ...     async with coordinator.host_lock(session, server):
        ...         await task.execute(session, server)
    """

    def __init__(
        self,
        scope: LockScope | str,
        task_name: str,
        run_id: str,
        lock_dir: Path | str | None = None,
        node: str | None = None,
    ) -> None:
        self.scope = LockScope(scope)
        self.task_name = task_name
        self.run_id = run_id
        self.lock_dir = Path(lock_dir) if lock_dir else Path.home() / ".helmsman" / "locks"
        self.node = node or socket.gethostname()
        self._local_file: IO[str] | None = None
        self._state_lock = threading.Lock()

    @property
    def local_lock_path(self) -> Path:
        """Lock file for this task on this control node."""
        return self.lock_dir / f"{_safe(self.task_name)}@{_safe(self.node)}.lock"

    @property
    def remote_lock_path(self) -> str:
        """Lock directory created on each target host."""
        return f"{REMOTE_LOCK_ROOT}/helmsman.{_safe(self.task_name)}.lock"

    def acquire_local(self) -> LockHandle | None:
        """Take the control-node lock if the scope asks for it.

        Returns:
            Handle for the held lock, or None when the scope has no local part

        Raises:
            AlreadyLocked: If another run holds the lock
            LockError: If the lock file cannot be created
        """
        if not self.scope.wants_local:
            return None

        path = self.local_lock_path
        with self._state_lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                handle = path.open("a+", encoding="utf-8")
            except OSError as e:
                raise LockError(f"Could not open local lock file {path}: {e}") from e

            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                handle.seek(0)
                holder = handle.read().strip()
                handle.close()
                raise AlreadyLocked("local", "local", holder) from e

            handle.seek(0)
            handle.truncate()
            started = datetime.now(timezone.utc).isoformat()
            handle.write(f"pid={os.getpid()} run={self.run_id} started={started}\n")
            handle.flush()
            self._local_file = handle

        logger.debug(f"Acquired local lock {path}")
        return LockHandle("local", "local", self._release_local)

    async def _release_local(self) -> None:
        with self._state_lock:
            handle = self._local_file
            self._local_file = None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    async def acquire_remote(self, session: "Session", server: Server) -> LockHandle | None:
        """Take the per-host lock on a server if the scope asks for it.

        The lock is a directory created with ``mkdir``, which either
        creates it or fails atomically.

        Args:
            session: Open session to the server
            server: Server being locked

        Returns:
            Handle for the held lock, or None when the scope has no remote part

        Raises:
            AlreadyLocked: If another run holds this host's lock
            LockError: If the lock cannot be created for another reason
        """
        if not self.scope.wants_remote:
            return None

        path = self.remote_lock_path
        result = await session.run(
            f"mkdir {path} && echo '{self.run_id} {self.node}' > {path}/owner",
            sudo=False,
            check=False,
        )
        if result.exit_status != 0:
            holder = await session.run(f"cat {path}/owner", sudo=False, check=False)
            if holder.exit_status == 0:
                raise AlreadyLocked("remote", server.name, holder.stdout.strip())
            raise LockError(
                f"Could not create remote lock {path} on {server.name}: {result.stderr.strip()}",
                host=server.name,
            )

        logger.debug(f"Acquired remote lock {path} on {server.name}")

        async def release() -> None:
            released = await session.run(f"rm -rf {path}", sudo=False, check=False)
            if released.exit_status != 0:
                logger.warning(f"Could not remove remote lock {path} on {server.name}")

        return LockHandle("remote", server.name, release)

    @asynccontextmanager
    async def run_lock(self) -> AsyncIterator[LockHandle | None]:
        """Hold the local lock (if any) for the body of the run."""
        handle = self.acquire_local()
        try:
            yield handle
        finally:
            if handle is not None:
                await handle.release()

    @asynccontextmanager
    async def host_lock(self, session: "Session", server: Server) -> AsyncIterator[LockHandle | None]:
        """Hold a server's remote lock (if any) around its task execution.

        The lock is released even when the body fails or is cancelled.
        """
        handle = await self.acquire_remote(session, server)
        try:
            yield handle
        finally:
            if handle is not None:
                await asyncio.shield(handle.release())

    def describe(self) -> dict[str, Any]:
        """Summarize lock identity for reporting."""
        return {
            "scope": self.scope.value,
            "local": str(self.local_lock_path) if self.scope.wants_local else None,
            "remote": self.remote_lock_path if self.scope.wants_remote else None,
        }
