"""Test CLI functionality."""

import json

import pytest
from click.testing import CliRunner

from helmsman import __version__
from helmsman.cli import cli, format_results_json, format_results_text, parse_options
from helmsman.exceptions import ConnectFailed
from helmsman.types import FailureReason, HostOutcome, RunOutcome, Server

from conftest import FakeTransport


@pytest.fixture(autouse=True)
def _logging(restore_root):
    yield


def invoke(args, transport=None, **kwargs):
    runner = CliRunner()
    obj = {"transport": transport} if transport else {}
    return runner.invoke(cli, args, obj=obj, **kwargs)


def test_cli_version():
    """Test CLI version output."""
    result = invoke(["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_cli_help():
    """Test CLI help output."""
    result = invoke(["--help"])
    assert result.exit_code == 0
    for command in ("run", "servers", "tasks", "help"):
        assert command in result.output


def test_cli_run_help():
    """Test run help lists the selection options."""
    result = invoke(["run", "--help"])
    assert result.exit_code == 0
    for option in ("--config", "--role", "--exclude-server", "--max-parallel", "--lock", "--notify"):
        assert option in result.output


class TestParseOptions:
    """Tests for parse_options."""

    def test_empty(self):
        """Test no options gives an empty dict."""
        assert parse_options(()) == {}
        assert parse_options(None) == {}

    def test_repeated_and_combined(self):
        """Test repeated flags and space-separated pairs merge."""
        result = parse_options(["local=app.conf remote=/etc/app.conf", "strip=1"])
        assert result == {"local": "app.conf", "remote": "/etc/app.conf", "strip": "1"}

    def test_quoted_and_equals_in_value(self):
        """Test quoted values and '=' inside values."""
        assert parse_options(["msg='hello world' query=a=b"]) == {"msg": "hello world", "query": "a=b"}

    @pytest.mark.parametrize("value", ["novalue", "=x", "msg='unterminated"])
    def test_invalid(self, value):
        """Test malformed pairs are rejected."""
        with pytest.raises(ValueError):
            parse_options([value])


class TestFormatResults:
    """Tests for the report formatters."""

    def outcome(self):
        return RunOutcome(hosts=[
            HostOutcome.success(Server("web1")),
            HostOutcome.failure(Server("web2"), FailureReason.CONNECTION, "Could not connect to web2: refused"),
        ])

    def test_text(self):
        """Test failures are listed with host and reason."""
        text = format_results_text(self.outcome(), "deploy")
        assert "Results for task 'deploy':" in text
        assert "Total hosts: 2" in text
        assert "Failed: 1" in text
        assert "web2: [connection] Could not connect to web2: refused" in text

    def test_json(self):
        """Test the JSON report."""
        data = json.loads(format_results_json(self.outcome(), "deploy", 1.5))
        assert data["task"] == "deploy"
        assert data["success"] is False
        assert data["failed"] == 1
        assert data["results"]["web2"]["reason"] == "connection"
        assert data["duration"] == 1.5


class TestServersCommand:
    """Tests for `helmsman servers`."""

    def test_role_minus_server(self, config_file):
        """Test role web minus web2."""
        result = invoke(["servers", "-c", str(config_file), "-r", "web", "--exclude-server", "web2"])
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].startswith("web1.example.com")
        assert lines[1].startswith("web3.example.com")
        assert "Selected 2/4 servers" in result.output

    def test_json(self, config_file):
        """Test JSON listing carries server settings."""
        result = invoke(["servers", "-c", str(config_file), "-s", "db1", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data == [{"name": "db1.example.com", "roles": ["db"], "port": 2222, "timeout": None, "user": "deploy"}]

    def test_config_from_env(self, config_file):
        """Test HELMSMAN_CONFIG supplies the configuration."""
        result = invoke(["servers", "-s", "web[1-2]"], env={"HELMSMAN_CONFIG": str(config_file)})
        assert result.exit_code == 0
        assert "Selected 2/4 servers" in result.output

    def test_missing_config(self):
        """Test a missing configuration is a clean error."""
        result = invoke(["servers"], env={"HELMSMAN_CONFIG": ""})
        assert result.exit_code != 0
        assert "No server configuration" in result.output

    @pytest.mark.parametrize("args,message", [
        (["-s", "web"], "ambiguous"),
        (["-r", "mail"], "No such role"),
        (["-s", "web[3-1]"], "greater than"),
    ])
    def test_pattern_errors(self, config_file, args, message):
        """Test resolution errors exit non-zero with one message."""
        result = invoke(["servers", "-c", str(config_file), *args])
        assert result.exit_code != 0
        assert message in result.output
        assert "Traceback" not in result.output


class TestTaskCommands:
    """Tests for `helmsman tasks` and `helmsman help`."""

    def test_tasks(self):
        """Test every built-in task is listed with a summary."""
        result = invoke(["tasks"])
        assert result.exit_code == 0
        assert "exec" in result.output
        assert "Upload a local file to each server." in result.output

    def test_help(self):
        """Test help prints a task's docstring."""
        result = invoke(["help", "patch"])
        assert result.exit_code == 0
        assert "strip=<n>" in result.output

    def test_help_unknown(self):
        """Test help for an unknown task fails."""
        result = invoke(["help", "deploy"])
        assert result.exit_code != 0
        assert "Unknown task 'deploy'" in result.output


class TestRunCommand:
    """Tests for `helmsman run`."""

    def test_exec_success(self, config_file, tmp_path):
        """Test a successful run prints the report and exits 0."""
        transport = FakeTransport()
        result = invoke(
            ["run", "exec", "-c", str(config_file), "-r", "web", "-n", "console:stdout",
             "--", "uptime"],
            transport=transport,
        )
        assert result.exit_code == 0, result.output
        assert "Successful: 3" in result.output
        assert [cmd for _, cmd in transport.commands] == ["uptime"] * 3

    def test_parallel_with_failure(self, config_file):
        """Test a host failure makes the run exit 1 and names the host."""
        transport = FakeTransport()
        transport.failures["web2.example.com"] = ConnectFailed("web2.example.com", "no route to host")
        result = invoke(
            ["run", "exec", "-c", str(config_file), "-p", "--max-parallel", "2", "--", "uptime"],
            transport=transport,
        )
        assert result.exit_code == 1
        assert "web2.example.com: [connection]" in result.output
        assert "1 host(s) failed" in result.output

    def test_json_report(self, config_file, tmp_path):
        """Test the JSON report and exit status on failure."""
        transport = FakeTransport()
        transport.failures["db1.example.com"] = ConnectFailed("db1.example.com", "refused")
        result = invoke(
            ["run", "exec", "-c", str(config_file), "-s", "db1", "--format", "json",
             "-n", f"file:{tmp_path}/run.log", "--", "uptime"],
            transport=transport,
        )
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["results"]["db1.example.com"]["status"] == "failure"

    def test_validation_error(self, config_file):
        """Test a validation failure stops before any host is contacted."""
        transport = FakeTransport()
        result = invoke(["run", "put", "-c", str(config_file), "-o", "local=x"], transport=transport)
        assert result.exit_code != 0
        assert "requires option(s): remote=..." in result.output
        assert transport.opened == []

    def test_unknown_task(self, config_file):
        """Test an unknown task name fails cleanly."""
        result = invoke(["run", "deploy", "-c", str(config_file)])
        assert result.exit_code != 0
        assert "Unknown task 'deploy'" in result.output

    def test_bad_channel(self, config_file):
        """Test an unknown channel scheme fails cleanly."""
        result = invoke(["run", "exec", "-c", str(config_file), "-n", "irc:#ops", "--", "true"],
                        transport=FakeTransport())
        assert result.exit_code != 0
        assert "Bad notify channel 'irc:#ops'" in result.output

    def test_bad_max_parallel(self, config_file):
        """Test an invalid bound is rejected."""
        result = invoke(["run", "exec", "-c", str(config_file), "--max-parallel", "0", "--", "true"])
        assert result.exit_code != 0
        assert "max_parallel" in result.output

    def test_file_channel(self, config_file, tmp_path):
        """Test events reach a file channel given on the command line."""
        log_path = tmp_path / "run.log"
        result = invoke(
            ["run", "exec", "-c", str(config_file), "-s", "db1", "-n", f"file:{log_path}", "--", "true"],
            transport=FakeTransport(),
        )
        assert result.exit_code == 0, result.output
        text = log_path.read_text()
        assert "BEGIN task=exec" in text
        assert "START db1.example.com" in text

    def test_log_level_by_name(self, config_file, tmp_path):
        """Test --log-level sets the diagnostic level and reaches the log file."""
        log_path = tmp_path / "helmsman.log"
        result = invoke(
            ["run", "exec", "-c", str(config_file), "-s", "db1", "-n", f"file:{tmp_path}/run.log",
             "--log-level", "TRACE", "--log-file", str(log_path), "-o", "mode=fast", "--", "true"],
            transport=FakeTransport(),
        )
        assert result.exit_code == 0, result.output
        assert "Task options: {'mode': 'fast'}" in log_path.read_text()

    def test_bad_log_level(self, config_file):
        """Test an unknown level name is rejected by the option parser."""
        result = invoke(["run", "exec", "-c", str(config_file), "--log-level", "loud", "--", "true"])
        assert result.exit_code == 2
        assert "loud" in result.output
