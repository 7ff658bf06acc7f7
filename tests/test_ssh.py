"""Tests for the asyncssh transport."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import asyncssh
import pytest

from helmsman.exceptions import AuthFailed, ConnectFailed, RemoteCommandError, TransportTimeout
from helmsman.ssh import SSHSession, SSHTransport, sudo_wrap
from helmsman.types import Server


def fake_connection(stdout="", stderr="", exit_status=0):
    conn = MagicMock()
    conn.run = AsyncMock(return_value=SimpleNamespace(stdout=stdout, stderr=stderr, exit_status=exit_status))
    conn.is_closed.return_value = False
    conn.wait_closed = AsyncMock()
    return conn


class TestSudoWrap:
    """Tests for sudo_wrap."""

    def test_no_user(self):
        """Test commands pass through without a sudo user."""
        assert sudo_wrap("ls -l", None) == "ls -l"

    def test_quotes_command(self):
        """Test the command is quoted for sh -c."""
        assert sudo_wrap("echo $HOME", "deploy") == "sudo -n -u deploy -- sh -c 'echo $HOME'"


class TestSSHTransport:
    """Tests for SSHTransport."""

    def test_connect_options(self):
        """Test server settings become connect options."""
        transport = SSHTransport(known_hosts=None, client_keys=["~/.ssh/id_ed25519"])
        options = transport.connect_options(Server("db1", port=2222, user="deploy"), timeout=10)
        assert options == {
            "host": "db1",
            "connect_timeout": 10,
            "port": 2222,
            "username": "deploy",
            "client_keys": ["~/.ssh/id_ed25519"],
            "known_hosts": None,
        }

    def test_server_timeout_wins(self):
        """Test a server's own timeout overrides the run timeout."""
        options = SSHTransport().connect_options(Server("db1", timeout=3), timeout=10)
        assert options["connect_timeout"] == 3
        assert "known_hosts" not in options

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,expected", [
        (asyncssh.PermissionDenied("publickey"), AuthFailed),
        (asyncio.TimeoutError(), TransportTimeout),
        (ConnectionRefusedError("refused"), ConnectFailed),
        (asyncssh.ConnectionLost("reset"), ConnectFailed),
    ])
    async def test_open_errors(self, error, expected):
        """Test connection errors map onto the transport taxonomy."""
        with patch("helmsman.ssh.asyncssh.connect", AsyncMock(side_effect=error)):
            with pytest.raises(expected) as exc_info:
                await SSHTransport().open(Server("web1"), timeout=5)
        assert exc_info.value.host == "web1"

    @pytest.mark.asyncio
    async def test_open_session(self):
        """Test a successful connect yields a session with the sudo user."""
        conn = fake_connection()
        with patch("helmsman.ssh.asyncssh.connect", AsyncMock(return_value=conn)):
            session = await SSHTransport().open(Server("web1"), timeout=5, sudo_user="root")
        assert isinstance(session, SSHSession)
        assert session.sudo_user == "root"
        assert session.timeout == 5


class TestSSHSession:
    """Tests for SSHSession."""

    @pytest.mark.asyncio
    async def test_run_with_sudo(self):
        """Test commands are wrapped for the sudo user."""
        conn = fake_connection(stdout=b"ok\n")
        session = SSHSession(Server("web1"), conn, sudo_user="root")

        result = await session.run("whoami")

        assert result.stdout == "ok\n"
        assert conn.run.call_args[0][0] == "sudo -n -u root -- sh -c whoami"

    @pytest.mark.asyncio
    async def test_run_without_sudo(self):
        """Test sudo=False runs as the login user."""
        conn = fake_connection()
        session = SSHSession(Server("web1"), conn, sudo_user="root")
        await session.run("mkdir /tmp/x", sudo=False)
        assert conn.run.call_args[0][0] == "mkdir /tmp/x"

    @pytest.mark.asyncio
    async def test_check(self):
        """Test a failing command raises unless check is off."""
        conn = fake_connection(stderr="nope", exit_status=2)
        session = SSHSession(Server("web1"), conn)

        with pytest.raises(RemoteCommandError) as exc_info:
            await session.run("false")
        assert exc_info.value.exit_status == 2

        result = await session.run("false", check=False)
        assert not result.ok

    @pytest.mark.asyncio
    async def test_command_timeout(self):
        """Test a command outliving the timeout raises TransportTimeout."""
        conn = fake_connection()

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        conn.run = slow
        session = SSHSession(Server("web1"), conn, timeout=0.01)
        with pytest.raises(TransportTimeout):
            await session.run("sleep 60")

    @pytest.mark.asyncio
    async def test_close(self):
        """Test close shuts the connection once."""
        conn = fake_connection()
        session = SSHSession(Server("web1"), conn)
        await session.close()
        conn.close.assert_called_once()
        conn.wait_closed.assert_awaited_once()
