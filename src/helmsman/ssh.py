"""Async SSH transport for helmsman.

Provides the remote-shell sessions tasks run through, built on asyncssh.
The orchestrator only depends on the Session/Transport protocols below,
so tests can substitute an in-memory transport.

Features:
- Async SSH connections with asyncssh
- Per-host connect and command timeouts
- Optional sudo for remote commands
- SFTP file transfers
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import asyncssh

from .exceptions import AuthFailed, ConnectFailed, RemoteCommandError, TransportTimeout
from .types import Server

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0


@dataclass
class CommandResult:
    """Output of one remote command.

    Attributes:
        command: Command as sent to the host
        stdout: Captured standard output
        stderr: Captured standard error
        exit_status: Remote exit status
    """

    command: str
    stdout: str = ""
    stderr: str = ""
    exit_status: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class Session(Protocol):
    """An open remote-shell session to one server."""

    server: Server
    sudo_user: str | None

    async def run(
        self,
        command: str,
        *,
        sudo: bool = True,
        check: bool = True,
        stdin: str | None = None,
    ) -> CommandResult:
        """Run a command, as the sudo user when one is set and ``sudo`` is true."""
        ...

    async def put(self, local: str | Path, remote: str) -> None:
        """Upload a local file."""
        ...

    async def get(self, remote: str, local: str | Path) -> None:
        """Download a remote file."""
        ...

    async def close(self) -> None:
        ...


class Transport(Protocol):
    """Opens sessions to servers."""

    async def open(
        self,
        server: Server,
        timeout: float | None = None,
        sudo_user: str | None = None,
    ) -> Session:
        """Open a session, raising ConnectFailed, AuthFailed or TransportTimeout."""
        ...


def sudo_wrap(command: str, user: str | None) -> str:
    """Wrap a command so it runs as another user.

    Example:
        >>> sudo_wrap("whoami", "deploy")
        'sudo -n -u deploy -- sh -c whoami'
        >>> sudo_wrap("whoami", None)
        'whoami'
    """
    if not user:
        return command
    return f"sudo -n -u {shlex.quote(user)} -- sh -c {shlex.quote(command)}"


class SSHSession:
    """Session over one asyncssh connection.

    Example:
        session = await SSHTransport().open(server, timeout=30)
        try:
            result = await session.run("uptime")
            print(result.stdout)
        finally:
            await session.close()
    """

    def __init__(
        self,
        server: Server,
        conn: asyncssh.SSHClientConnection,
        timeout: float | None = None,
        sudo_user: str | None = None,
    ) -> None:
        self.server = server
        self.sudo_user = sudo_user
        self.timeout = timeout
        self._conn = conn

    async def run(
        self,
        command: str,
        *,
        sudo: bool = True,
        check: bool = True,
        stdin: str | None = None,
    ) -> CommandResult:
        """Run a command on the remote host.

        Args:
            command: Shell command to execute
            sudo: Run as the session's sudo user, if one is set
            check: Raise RemoteCommandError on a non-zero exit status
            stdin: Input to send to the command

        Returns:
            CommandResult with output and exit status

        Raises:
            TransportTimeout: If the command outlives the session timeout
            RemoteCommandError: If ``check`` is set and the command fails
        """
        wrapped = sudo_wrap(command, self.sudo_user if sudo else None)
        logger.debug(f"Running on {self.server.name}: {wrapped[:100]}")

        try:
            completed = await asyncio.wait_for(
                self._conn.run(wrapped, input=stdin, check=False),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Command timed out after {self.timeout}s: {command[:50]}")
            raise TransportTimeout(self.server.name, self.timeout or 0)

        result = CommandResult(
            command=command,
            stdout=_as_text(completed.stdout),
            stderr=_as_text(completed.stderr),
            exit_status=completed.exit_status or 0,
        )

        logger.debug(
            f"Command completed: rc={result.exit_status}, "
            f"stdout={len(result.stdout)} bytes, stderr={len(result.stderr)} bytes"
        )

        if check and not result.ok:
            raise RemoteCommandError(self.server.name, command, result.exit_status, result.stderr)
        return result

    async def put(self, local: str | Path, remote: str) -> None:
        """Upload a local file over SFTP."""
        logger.debug(f"Uploading {local} to {self.server.name}:{remote}")
        async with self._conn.start_sftp_client() as sftp:
            await sftp.put(str(local), remote)

    async def get(self, remote: str, local: str | Path) -> None:
        """Download a remote file over SFTP."""
        logger.debug(f"Downloading {self.server.name}:{remote} to {local}")
        async with self._conn.start_sftp_client() as sftp:
            await sftp.get(remote, str(local))

    async def close(self) -> None:
        """Close the SSH connection."""
        if not self._conn.is_closed():
            self._conn.close()
            await self._conn.wait_closed()
            logger.debug(f"Disconnected from {self.server.name}")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)


class SSHTransport:
    """Transport opening asyncssh connections.

    Attributes:
        known_hosts: Known hosts file; () uses asyncssh's default, None disables checking
        client_keys: Private key paths (None uses the agent and default keys)
        connect_timeout: Connect timeout when neither the run nor the server sets one

    Example:
        transport = SSHTransport(known_hosts=None)
        session = await transport.open(server, timeout=10, sudo_user="root")
    """

    def __init__(
        self,
        known_hosts: Any = (),
        client_keys: list[str] | None = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        self.known_hosts = known_hosts
        self.client_keys = client_keys
        self.connect_timeout = connect_timeout

    def connect_options(self, server: Server, timeout: float | None) -> dict[str, Any]:
        """Build asyncssh.connect() kwargs for a server."""
        options: dict[str, Any] = {
            "host": server.name,
            "connect_timeout": server.timeout or timeout or self.connect_timeout,
        }
        if server.port:
            options["port"] = server.port
        if server.user:
            options["username"] = server.user
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None
        elif self.known_hosts != ():
            options["known_hosts"] = self.known_hosts
        return options

    async def open(
        self,
        server: Server,
        timeout: float | None = None,
        sudo_user: str | None = None,
    ) -> SSHSession:
        """Connect to a server.

        Raises:
            AuthFailed: If the server rejects our credentials
            TransportTimeout: If the connection is not up within the timeout
            ConnectFailed: For any other connection problem
        """
        options = self.connect_options(server, timeout)
        logger.debug(f"Connecting to {server.name}:{options.get('port', 22)}")

        try:
            conn = await asyncssh.connect(**options)
        except asyncssh.PermissionDenied as e:
            raise AuthFailed(server.name, e.reason) from e
        except asyncio.TimeoutError as e:
            raise TransportTimeout(server.name, options["connect_timeout"]) from e
        except (OSError, asyncssh.Error) as e:
            raise ConnectFailed(server.name, str(e)) from e

        logger.info(f"Connected to {server.name}")
        return SSHSession(server, conn, timeout=server.timeout or timeout, sudo_user=sudo_user)
