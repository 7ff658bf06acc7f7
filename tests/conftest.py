"""Shared test doubles: an in-memory transport and a recording channel."""

import asyncio
import logging
from pathlib import Path

import pytest

from helmsman.events import Channel, RunInfo
from helmsman.exceptions import RemoteCommandError
from helmsman.inventory import Directory
from helmsman.ssh import CommandResult
from helmsman.task import Task
from helmsman.types import Server


class FakeSession:
    """Session that records commands instead of running them."""

    def __init__(self, transport: "FakeTransport", server: Server, sudo_user: str | None) -> None:
        self.transport = transport
        self.server = server
        self.sudo_user = sudo_user
        self.commands: list[tuple[str, bool]] = []
        self.uploads: list[tuple[str, str]] = []
        self.closed = False

    async def run(self, command, *, sudo=True, check=True, stdin=None):
        self.commands.append((command, sudo))
        self.transport.commands.append((self.server.name, command))
        locks = self.transport.remote_locks.setdefault(self.server.name, {})
        words = command.split()

        if command.startswith("mkdir ") and "&&" in command:
            path = words[1]
            if path in locks:
                result = CommandResult(command, stderr="mkdir: File exists", exit_status=1)
            else:
                locks[path] = f"{self.transport.run_id} test-node"
                result = CommandResult(command)
        elif command.startswith("cat ") and command.endswith("/owner"):
            path = words[1].rsplit("/", 1)[0]
            if path in locks:
                result = CommandResult(command, stdout=locks[path] + "\n")
            else:
                result = CommandResult(command, stderr="No such file", exit_status=1)
        elif command.startswith("rm -rf "):
            locks.pop(words[2], None)
            result = CommandResult(command)
        else:
            result = self.transport.responses.get(command, CommandResult(command))

        if check and not result.ok:
            raise RemoteCommandError(self.server.name, command, result.exit_status, result.stderr)
        return result

    async def put(self, local, remote):
        self.uploads.append((str(local), remote))
        self.transport.uploads.append((self.server.name, str(local), remote))

    async def get(self, remote, local):
        Path(local).write_text(f"{remote} from {self.server.name}\n")

    async def close(self):
        if not self.closed:
            self.closed = True
            self.transport.active -= 1


class FakeTransport:
    """Transport handing out FakeSessions.

    Attributes:
        failures: Exceptions raised when opening a session to a host
        responses: Canned results by exact command text
        remote_locks: Lock directories held per host, path -> owner
        delay: Seconds ``open`` takes, to let parallel units overlap
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.failures: dict[str, Exception] = {}
        self.responses: dict[str, CommandResult] = {}
        self.remote_locks: dict[str, dict[str, str]] = {}
        self.sessions: list[FakeSession] = []
        self.commands: list[tuple[str, str]] = []
        self.uploads: list[tuple[str, str, str]] = []
        self.opened: list[str] = []
        self.run_id = "test-run"
        self.active = 0
        self.peak = 0

    def hold_lock(self, host: str, path: str, owner: str = "other-run elsewhere") -> None:
        self.remote_locks.setdefault(host, {})[path] = owner

    async def open(self, server, timeout=None, sudo_user=None):
        self.opened.append(server.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if server.name in self.failures:
            raise self.failures[server.name]
        self.active += 1
        self.peak = max(self.peak, self.active)
        session = FakeSession(self, server, sudo_user)
        self.sessions.append(session)
        return session


class RecordingChannel(Channel):
    """Channel that keeps every call it receives."""

    def __init__(self, buffered: bool = False) -> None:
        self.buffered = buffered
        self.calls: list[tuple] = []

    def initialize(self, run: RunInfo) -> None:
        self.calls.append(("initialize", run.task))

    def finalize(self, run: RunInfo) -> None:
        self.calls.append(("finalize", run.task))

    def start_server(self, server: Server) -> None:
        self.calls.append(("start_server", server.name))

    def end_server(self, server: Server) -> None:
        self.calls.append(("end_server", server.name))

    def debug(self, message, server=None):
        self.calls.append(("debug", message, server.name if server else None))

    def info(self, message, server=None):
        self.calls.append(("info", message, server.name if server else None))

    def warn(self, message, server=None):
        self.calls.append(("warn", message, server.name if server else None))

    def error(self, message, server=None):
        self.calls.append(("error", message, server.name if server else None))

    def kinds(self) -> list[str]:
        return [call[0] for call in self.calls]


class RecordingTask(Task):
    """Task that records its lifecycle and can be told to misbehave."""

    def __init__(self, context, delay=0.0, fail_on=(), fatal_on=(), crash_on=()):
        super().__init__(context)
        self.delay = delay
        self.fail_on = set(fail_on)
        self.fatal_on = set(fatal_on)
        self.crash_on = set(crash_on)
        self.calls: list[str] = []

    def validate(self):
        self.calls.append("validate")

    async def setup(self):
        self.calls.append("setup")

    async def execute(self, session, server):
        from helmsman.exceptions import FatalTaskError, TaskFailed

        self.calls.append(f"execute:{server.name}")
        if self.delay:
            await asyncio.sleep(self.delay)
        if server.name in self.fatal_on:
            raise FatalTaskError(f"fatal on {server.name}")
        if server.name in self.fail_on:
            raise TaskFailed(f"failed on {server.name}")
        if server.name in self.crash_on:
            raise RuntimeError("boom")
        await session.run("true")

    async def teardown(self):
        self.calls.append("teardown")


def make_servers(*names: str, roles: tuple[str, ...] = ()) -> list[Server]:
    return [Server(name=name, roles=frozenset(roles)) for name in names]


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def directory():
    """web1-3 carry role web, db1 carries role db."""
    return Directory.from_servers(
        make_servers("web1.example.com", "web2.example.com", "web3.example.com", roles=("web",))
        + make_servers("db1.example.com", roles=("db",))
    )


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "servers.yml"
    path.write_text(
        "defaults:\n"
        "  port: 22\n"
        "servers:\n"
        "  - name: web[1-3].example.com\n"
        "    roles: [web]\n"
        "  - name: db1.example.com\n"
        "    roles: [db]\n"
        "    port: 2222\n"
        "    user: deploy\n"
    )
    return path


@pytest.fixture
def restore_root():
    """Drop the handlers configure_logging installs and restore levels."""
    root = logging.getLogger()
    level = root.level
    asyncssh_level = logging.getLogger("asyncssh").level
    yield root
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
    logging.getLogger("asyncssh").setLevel(asyncssh_level)
