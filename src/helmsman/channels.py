"""Built-in event channels for helmsman.

Channels are created from URIs by the plugin registry:

- ``console:``                     coloured terminal output (immediate)
- ``file:/var/log/helmsman.log``   timestamped lines appended to a file (immediate)
- ``mailto:ops@example.com``       one summary email sent at the end of the run (buffered)
"""

import getpass
import logging
import smtplib
import socket
import sys
from datetime import datetime, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import IO, Any
from urllib.parse import parse_qs, unquote, urlparse

from rich.console import Console
from rich.text import Text

from .events import Channel, RunInfo
from .inventory import uri_path
from .types import Server

logger = logging.getLogger(__name__)

LEVEL_STYLES = {
    "debug": "dim",
    "info": "blue",
    "warn": "yellow",
    "error": "red bold",
}

DEFAULT_SMTP_TIMEOUT = 30.0


def _prefix(server: Server | None) -> str:
    return f"[{server.name}] " if server else ""


class ConsoleChannel(Channel):
    """Reports the run on the terminal with Rich.

    Example:
        >>> channel = ConsoleChannel(Console(file=io.StringIO()))
        >>> channel.start_server(Server(name="web1"))
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True, highlight=False)

    def _print(self, message: str, style: str = "") -> None:
        self.console.print(Text(message, style=style))

    def initialize(self, run: RunInfo) -> None:
        self._print(f"Running task '{run.task}' on {len(run.servers)} server(s)", "bold")

    def finalize(self, run: RunInfo) -> None:
        outcome = run.outcome
        if outcome is None:
            return
        failed = len(outcome.failures)
        total = len(outcome.hosts)
        if failed == 0:
            self._print(f"Task '{run.task}' succeeded on {total} server(s)", "green bold")
        else:
            self._print(f"Task '{run.task}' failed on {failed}/{total} server(s)", "red bold")

    def start_server(self, server: Server) -> None:
        self._print(f"[{server.name}] starting", "cyan")

    def end_server(self, server: Server) -> None:
        self._print(f"[{server.name}] done", "cyan")

    def debug(self, message: str, server: Server | None = None) -> None:
        self._print(f"{_prefix(server)}{message}", LEVEL_STYLES["debug"])

    def info(self, message: str, server: Server | None = None) -> None:
        self._print(f"{_prefix(server)}{message}", LEVEL_STYLES["info"])

    def warn(self, message: str, server: Server | None = None) -> None:
        self._print(f"{_prefix(server)}Warning: {message}", LEVEL_STYLES["warn"])

    def error(self, message: str, server: Server | None = None) -> None:
        self._print(f"{_prefix(server)}Error: {message}", LEVEL_STYLES["error"])


class FileChannel(Channel):
    """Appends timestamped lines to a log file.

    The file is opened at Initialize and closed at Finalize. Messages
    arriving outside that window go to the file in append mode one at a
    time, so nothing is lost.

    Example:
        >>> channel = FileChannel("/var/log/helmsman.log")
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: IO[str] | None = None

    def _write(self, line: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        text = f"[{stamp}] {line}\n"
        if self._handle is not None:
            self._handle.write(text)
            self._handle.flush()
        else:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(text)

    def initialize(self, run: RunInfo) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("a", encoding="utf-8")
        servers = ", ".join(s.name for s in run.servers)
        self._write(f"BEGIN task={run.task} run={run.run_id} servers={servers}")

    def finalize(self, run: RunInfo) -> None:
        status = "unknown"
        if run.outcome is not None:
            status = "success" if run.outcome.is_success else "failure"
        self._write(f"END task={run.task} run={run.run_id} status={status}")
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def start_server(self, server: Server) -> None:
        self._write(f"START {server.name}")

    def end_server(self, server: Server) -> None:
        self._write(f"END {server.name}")

    def debug(self, message: str, server: Server | None = None) -> None:
        self._write(f"DEBUG {_prefix(server)}{message}")

    def info(self, message: str, server: Server | None = None) -> None:
        self._write(f"INFO {_prefix(server)}{message}")

    def warn(self, message: str, server: Server | None = None) -> None:
        self._write(f"WARN {_prefix(server)}{message}")

    def error(self, message: str, server: Server | None = None) -> None:
        self._write(f"ERROR {_prefix(server)}{message}")


class MailtoChannel(Channel):
    """Sends one summary email per run.

    Buffered: the broadcaster hands over every event of the run at once
    when it finalizes, and the message goes out from ``finalize``.

    Attributes:
        recipients: Addresses to send to
        smtp_host: SMTP relay (default localhost)
        sender: From address (default user@hostname)
        timeout: Seconds to wait on the SMTP relay before giving up

    Example:
        >>> channel = MailtoChannel(["ops@example.com"], smtp_host="mail.example.com")
    """

    buffered = True

    def __init__(
        self,
        recipients: list[str],
        smtp_host: str = "localhost",
        sender: str | None = None,
        timeout: float = DEFAULT_SMTP_TIMEOUT,
    ) -> None:
        self.recipients = recipients
        self.smtp_host = smtp_host
        self.timeout = timeout
        self.sender = sender or f"{getpass.getuser()}@{socket.gethostname()}"
        self.lines: list[str] = []

    def start_server(self, server: Server) -> None:
        self.lines.append(f"== {server.name}")

    def debug(self, message: str, server: Server | None = None) -> None:
        self.lines.append(f"DEBUG {_prefix(server)}{message}")

    def info(self, message: str, server: Server | None = None) -> None:
        self.lines.append(f"INFO {_prefix(server)}{message}")

    def warn(self, message: str, server: Server | None = None) -> None:
        self.lines.append(f"WARN {_prefix(server)}{message}")

    def error(self, message: str, server: Server | None = None) -> None:
        self.lines.append(f"ERROR {_prefix(server)}{message}")

    def compose(self, run: RunInfo) -> EmailMessage:
        """Build the summary email for a finished run."""
        status = "finished"
        if run.outcome is not None:
            status = "succeeded" if run.outcome.is_success else "FAILED"

        message = EmailMessage()
        message["Subject"] = f"helmsman: task '{run.task}' {status}"
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)

        body = [
            f"Task: {run.task}",
            f"Run: {run.run_id}",
            f"Started: {run.started.isoformat()}",
            f"Servers: {', '.join(s.name for s in run.servers)}",
            "",
            *self.lines,
        ]
        if run.outcome is not None and run.outcome.failures:
            body.append("")
            body.append("Failures:")
            for host in run.outcome.failures:
                body.append(f"  {host.server.name}: {host.message}")
        message.set_content("\n".join(body) + "\n")
        return message

    def finalize(self, run: RunInfo) -> None:
        message = self.compose(run)
        self.lines = []
        with smtplib.SMTP(self.smtp_host, timeout=self.timeout) as smtp:
            smtp.send_message(message)
        logger.info(f"Sent run summary to {', '.join(self.recipients)}")


def console_channel(uri: str) -> Channel:
    """Create a console channel. ``console:stdout`` writes to stdout."""
    target = urlparse(uri).path
    if target == "stdout":
        return ConsoleChannel(Console(file=sys.stdout, highlight=False))
    return ConsoleChannel()


def file_channel(uri: str) -> Channel:
    """Create a file channel from ``file:<path>``."""
    path = uri_path(uri)
    if not str(path) or str(path) == ".":
        raise ValueError(f"file channel needs a path: {uri}")
    return FileChannel(path)


def mailto_channel(uri: str) -> Channel:
    """Create a mail channel from ``mailto:a@x,b@y?smtp=host&from=addr&timeout=secs``."""
    parsed = urlparse(uri)
    recipients = [unquote(r) for r in parsed.path.split(",") if r]
    if not recipients:
        raise ValueError(f"mailto channel needs at least one recipient: {uri}")
    query: dict[str, Any] = parse_qs(parsed.query)
    smtp_host = query.get("smtp", ["localhost"])[0]
    sender = query.get("from", [None])[0]
    timeout = float(query.get("timeout", [DEFAULT_SMTP_TIMEOUT])[0])
    return MailtoChannel(recipients, smtp_host=smtp_host, sender=sender, timeout=timeout)
