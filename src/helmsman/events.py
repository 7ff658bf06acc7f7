"""Lifecycle and log events for helmsman.

Every observable thing a run does is an Event, fanned out by an
EventBroadcaster to the channels registered for the run. Channels receive
events one at a time, in registration order, either immediately or (for
buffered channels) all at once when the run finalizes.

Warnings and errors are never dropped: they bypass the level filter, and
when no channel is registered (or a channel fails to take them) they are
written straight to the console.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from rich.console import Console
from rich.text import Text

from .types import NotifyLevel, RunOutcome, Server

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    INITIALIZE = "initialize"
    FINALIZE = "finalize"
    START_SERVER = "start_server"
    END_SERVER = "end_server"
    LOG = "log"


@dataclass
class RunInfo:
    """What channels know about the run they observe.

    Attributes:
        task: Name of the task being run
        run_id: Unique identifier of this run
        servers: Resolved target servers
        started: When the run started (UTC)
        outcome: Filled in before Finalize is emitted
    """

    task: str
    run_id: str
    servers: list[Server] = field(default_factory=list)
    started: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    outcome: RunOutcome | None = None


@dataclass
class Event:
    """One lifecycle or log event.

    Attributes:
        kind: Which lifecycle point or log call this is
        run: Run information (Initialize and Finalize)
        server: Server concerned (StartServer, EndServer, host-scoped logs)
        level: Log level (Log only)
        message: Log text (Log only)
        timestamp: When the event was emitted (UTC)
    """

    kind: EventKind
    run: RunInfo | None = None
    server: Server | None = None
    level: NotifyLevel | None = None
    message: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def initialize(cls, run: RunInfo) -> "Event":
        return cls(EventKind.INITIALIZE, run=run)

    @classmethod
    def finalize(cls, run: RunInfo) -> "Event":
        return cls(EventKind.FINALIZE, run=run)

    @classmethod
    def start_server(cls, server: Server) -> "Event":
        return cls(EventKind.START_SERVER, server=server)

    @classmethod
    def end_server(cls, server: Server) -> "Event":
        return cls(EventKind.END_SERVER, server=server)

    @classmethod
    def log(cls, level: NotifyLevel | str, message: str, server: Server | None = None) -> "Event":
        return cls(EventKind.LOG, level=NotifyLevel(level), message=message, server=server)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "event": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.run is not None:
            result["task"] = self.run.task
            result["run_id"] = self.run.run_id
        if self.server is not None:
            result["server"] = self.server.name
        if self.level is not None:
            result["level"] = self.level.value
            result["message"] = self.message
        return result


class Channel:
    """Base class for event observers.

    Every hook is a no-op here, so a channel overrides only what it cares
    about. Set ``buffered = True`` to receive the whole run's events in one
    burst when the run finalizes instead of as they happen.
    """

    buffered: bool = False

    def initialize(self, run: RunInfo) -> None:
        pass

    def finalize(self, run: RunInfo) -> None:
        pass

    def start_server(self, server: Server) -> None:
        pass

    def end_server(self, server: Server) -> None:
        pass

    def debug(self, message: str, server: Server | None = None) -> None:
        pass

    def info(self, message: str, server: Server | None = None) -> None:
        pass

    def warn(self, message: str, server: Server | None = None) -> None:
        pass

    def error(self, message: str, server: Server | None = None) -> None:
        pass

    def deliver(self, event: Event) -> None:
        """Route an event to the matching hook."""
        if event.kind is EventKind.INITIALIZE:
            self.initialize(event.run)
        elif event.kind is EventKind.FINALIZE:
            self.finalize(event.run)
        elif event.kind is EventKind.START_SERVER:
            self.start_server(event.server)
        elif event.kind is EventKind.END_SERVER:
            self.end_server(event.server)
        else:
            getattr(self, event.level.value)(event.message, event.server)

    @property
    def name(self) -> str:
        return type(self).__name__


def _must_surface(event: Event) -> bool:
    return event.kind is EventKind.LOG and event.level in (NotifyLevel.WARN, NotifyLevel.ERROR)


class EventBroadcaster:
    """Fans events out to every registered channel.

    Emission is serialized, so concurrent hosts never interleave inside a
    channel. A failing channel is logged and skipped; ``emit`` itself never
    raises.

    Attributes:
        level: Minimum level for debug and info events

    Example:
        >>> notify = EventBroadcaster(level="warn")
        >>> notify.add_channel(ConsoleChannel())
        >>> notify.info("hidden")      # below the configured level
        >>> notify.error("shown")      # warn and error always get through
    """

    def __init__(
        self,
        channels: Iterable[Channel] | None = None,
        level: NotifyLevel | str = NotifyLevel.INFO,
        fallback: Console | None = None,
    ) -> None:
        self.level = NotifyLevel(level)
        self._channels: list[Channel] = []
        self._buffers: dict[int, list[Event]] = {}
        self._lock = threading.RLock()
        self._fallback = fallback or Console(stderr=True)
        for channel in channels or ():
            self.add_channel(channel)

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    def add_channel(self, channel: Channel) -> None:
        with self._lock:
            self._channels.append(channel)
            if channel.buffered:
                self._buffers[id(channel)] = []

    def passes(self, level: NotifyLevel) -> bool:
        """Check whether a log level gets through the filter."""
        if level in (NotifyLevel.WARN, NotifyLevel.ERROR):
            return True
        return level.rank >= self.level.rank

    def emit(self, event: Event) -> None:
        """Deliver an event to every channel, in registration order."""
        with self._lock:
            if event.kind is EventKind.LOG and not self.passes(event.level):
                return

            if not self._channels:
                if _must_surface(event):
                    self._write_fallback(event)
                return

            for channel in self._channels:
                if channel.buffered:
                    buffer = self._buffers[id(channel)]
                    buffer.append(event)
                    if event.kind is EventKind.FINALIZE:
                        self._flush(channel, buffer)
                else:
                    self._deliver(channel, event)

    def _flush(self, channel: Channel, buffer: list[Event]) -> None:
        pending = list(buffer)
        buffer.clear()
        logger.debug(f"Flushing {len(pending)} buffered events to {channel.name}")
        surfaced: set[int] = set()
        for event in pending:
            if self._deliver(channel, event):
                continue
            if event.kind is EventKind.FINALIZE:
                # The channel never sent its buffer out, so nothing it held reached anyone
                for held in pending:
                    if _must_surface(held) and id(held) not in surfaced:
                        self._write_fallback(held)
            elif _must_surface(event):
                surfaced.add(id(event))

    def _deliver(self, channel: Channel, event: Event) -> bool:
        try:
            channel.deliver(event)
        except Exception as e:
            logger.warning(f"Channel {channel.name} failed on {event.kind.value}: {e}")
            if _must_surface(event):
                self._write_fallback(event)
            return False
        return True

    def _write_fallback(self, event: Event) -> None:
        label = "Warning" if event.level is NotifyLevel.WARN else "Error"
        prefix = f"[{event.server.name}] " if event.server else ""
        style = "yellow" if event.level is NotifyLevel.WARN else "red bold"
        self._fallback.print(Text(f"{label}: {prefix}{event.message}", style=style))

    # Convenience emitters

    def initialize(self, run: RunInfo) -> None:
        self.emit(Event.initialize(run))

    def finalize(self, run: RunInfo) -> None:
        self.emit(Event.finalize(run))

    def start_server(self, server: Server) -> None:
        self.emit(Event.start_server(server))

    def end_server(self, server: Server) -> None:
        self.emit(Event.end_server(server))

    def log(self, level: NotifyLevel | str, message: str, server: Server | None = None) -> None:
        self.emit(Event.log(level, message, server))

    def debug(self, message: str, server: Server | None = None) -> None:
        self.log(NotifyLevel.DEBUG, message, server)

    def info(self, message: str, server: Server | None = None) -> None:
        self.log(NotifyLevel.INFO, message, server)

    def warn(self, message: str, server: Server | None = None) -> None:
        self.log(NotifyLevel.WARN, message, server)

    def error(self, message: str, server: Server | None = None) -> None:
        self.log(NotifyLevel.ERROR, message, server)

    def for_server(self, server: Server) -> "ServerNotifier":
        """Get a notifier that tags every log message with a server."""
        return ServerNotifier(self, server)


class ServerNotifier:
    """Log emitter bound to one server, handed to tasks per host."""

    def __init__(self, broadcaster: EventBroadcaster, server: Server) -> None:
        self.broadcaster = broadcaster
        self.server = server

    def debug(self, message: str) -> None:
        self.broadcaster.debug(message, self.server)

    def info(self, message: str) -> None:
        self.broadcaster.info(message, self.server)

    def warn(self, message: str) -> None:
        self.broadcaster.warn(message, self.server)

    def error(self, message: str) -> None:
        self.broadcaster.error(message, self.server)
