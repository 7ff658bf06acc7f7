"""Tests for the event broadcaster."""

import io
import logging

import pytest
from rich.console import Console

from helmsman.events import Channel, Event, EventBroadcaster, EventKind, RunInfo
from helmsman.types import NotifyLevel, Server

from conftest import RecordingChannel


def fallback_console():
    output = io.StringIO()
    return Console(file=output, width=200, color_system=None), output


class BrokenChannel(Channel):
    def info(self, message, server=None):
        raise OSError("disk full")

    def error(self, message, server=None):
        raise OSError("disk full")


class TestLevelFiltering:
    """Tests for level filtering."""

    @pytest.mark.parametrize("level,delivered", [
        ("debug", ["debug", "info", "warn", "error"]),
        ("info", ["info", "warn", "error"]),
        ("warn", ["warn", "error"]),
        ("error", ["warn", "error"]),
    ])
    def test_levels(self, level, delivered):
        """Test debug/info follow the level while warn/error always pass."""
        channel = RecordingChannel()
        notify = EventBroadcaster([channel], level=level)

        notify.debug("d")
        notify.info("i")
        notify.warn("w")
        notify.error("e")

        assert channel.kinds() == delivered

    def test_lifecycle_events_not_filtered(self):
        """Test lifecycle events ignore the level."""
        channel = RecordingChannel()
        notify = EventBroadcaster([channel], level="error")
        run = RunInfo(task="deploy", run_id="r1")

        notify.initialize(run)
        notify.start_server(Server("web1"))
        notify.end_server(Server("web1"))
        notify.finalize(run)

        assert channel.kinds() == ["initialize", "start_server", "end_server", "finalize"]


class TestFallback:
    """Tests for the no-channel fallback path."""

    def test_error_with_zero_channels(self):
        """Test an error with no channels at level warn still surfaces."""
        console, output = fallback_console()
        notify = EventBroadcaster(level="warn", fallback=console)

        notify.error("disk on fire", Server("web1"))

        assert "Error: [web1] disk on fire" in output.getvalue()

    def test_info_with_zero_channels_is_dropped(self):
        """Test info has no fallback."""
        console, output = fallback_console()
        notify = EventBroadcaster(fallback=console)
        notify.info("routine")
        assert output.getvalue() == ""


class TestDelivery:
    """Tests for ordering, buffering and isolation."""

    def test_registration_order(self):
        """Test channels receive events in registration order."""
        seen = []

        class Named(Channel):
            def __init__(self, name):
                self.label = name

            def info(self, message, server=None):
                seen.append(self.label)

        notify = EventBroadcaster([Named("a"), Named("b")])
        notify.add_channel(Named("c"))
        notify.info("hello")
        assert seen == ["a", "b", "c"]

    def test_buffered_flushes_at_finalize(self):
        """Test a buffered channel gets everything in one burst at Finalize."""
        immediate = RecordingChannel()
        buffered = RecordingChannel(buffered=True)
        notify = EventBroadcaster([immediate, buffered])
        run = RunInfo(task="deploy", run_id="r1")

        notify.initialize(run)
        notify.start_server(Server("web1"))
        notify.info("working", Server("web1"))
        notify.end_server(Server("web1"))

        assert len(immediate.calls) == 4
        assert buffered.calls == []

        notify.finalize(run)
        assert buffered.calls == immediate.calls
        assert buffered.kinds()[-1] == "finalize"

    def test_buffered_respects_level(self):
        """Test filtered events never reach a buffered channel."""
        buffered = RecordingChannel(buffered=True)
        notify = EventBroadcaster([buffered], level="warn")
        run = RunInfo(task="deploy", run_id="r1")

        notify.info("hidden")
        notify.warn("shown")
        notify.finalize(run)

        assert buffered.kinds() == ["warn", "finalize"]

    def test_failing_channel_is_isolated(self, caplog):
        """Test one channel failing does not stop the others or emit()."""
        console, output = fallback_console()
        good = RecordingChannel()
        notify = EventBroadcaster([BrokenChannel(), good], fallback=console)

        with caplog.at_level(logging.WARNING, logger="helmsman.events"):
            notify.info("routine")
            notify.error("bad news")

        assert good.kinds() == ["info", "error"]
        assert "BrokenChannel failed" in caplog.text
        # the error the broken channel dropped went to the fallback instead
        assert "bad news" in output.getvalue()
        assert "routine" not in output.getvalue()

    def test_buffered_finalize_failure_surfaces_held_errors(self, caplog):
        """Test a buffered channel that cannot send still lets warn/error out."""
        console, output = fallback_console()

        class UnsentMail(RecordingChannel):
            def finalize(self, run):
                raise OSError("smtp down")

        notify = EventBroadcaster([UnsentMail(buffered=True)], level="warn", fallback=console)
        run = RunInfo(task="deploy", run_id="r1")

        with caplog.at_level(logging.WARNING, logger="helmsman.events"):
            notify.initialize(run)
            notify.warn("slow disk", Server("web2"))
            notify.error("disk full", Server("web1"))
            notify.finalize(run)

        text = output.getvalue()
        assert "Warning: [web2] slow disk" in text
        assert "Error: [web1] disk full" in text
        assert "UnsentMail failed on finalize" in caplog.text

    def test_buffered_error_written_once(self):
        """Test an error the buffered channel rejected is not repeated at Finalize."""
        console, output = fallback_console()

        class Rejecting(RecordingChannel):
            def error(self, message, server=None):
                raise OSError("bad encoding")

            def finalize(self, run):
                raise OSError("smtp down")

        notify = EventBroadcaster([Rejecting(buffered=True)], fallback=console)
        run = RunInfo(task="deploy", run_id="r1")

        notify.error("disk full")
        notify.finalize(run)

        assert output.getvalue().count("disk full") == 1

    def test_buffered_success_has_no_fallback(self):
        """Test nothing reaches the fallback when the buffered channel sends."""
        console, output = fallback_console()
        notify = EventBroadcaster([RecordingChannel(buffered=True)], fallback=console)
        run = RunInfo(task="deploy", run_id="r1")

        notify.error("disk full")
        notify.finalize(run)

        assert output.getvalue() == ""

    def test_for_server(self):
        """Test a server notifier tags messages with its server."""
        channel = RecordingChannel()
        notify = EventBroadcaster([channel])
        notify.for_server(Server("db1")).warn("slow")
        assert channel.calls == [("warn", "slow", "db1")]


class TestEvent:
    """Tests for Event."""

    def test_log_to_dict(self):
        """Test JSON form of a log event."""
        data = Event.log("warn", "slow", Server("db1")).to_dict()
        assert data["event"] == "log"
        assert data["level"] == "warn"
        assert data["server"] == "db1"
        assert data["message"] == "slow"

    def test_level_coerced(self):
        """Test string levels become NotifyLevel."""
        event = Event.log("error", "x")
        assert event.kind is EventKind.LOG
        assert event.level is NotifyLevel.ERROR
