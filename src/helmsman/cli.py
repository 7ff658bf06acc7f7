"""Command-line interface for helmsman."""

import asyncio
import json
import logging
import shlex
import time
from datetime import datetime, timezone
from typing import Any, Callable

import click

from helmsman import __version__
from helmsman.events import EventBroadcaster
from helmsman.exceptions import HelmsmanError
from helmsman.host_filter import format_filter_summary, resolve_targets, split_tokens
from helmsman.inventory import Directory
from helmsman.logging import (
    LEVEL_NAMES,
    configure_logging,
    get_level_from_name,
    get_level_from_verbosity,
    get_logger,
)
from helmsman.registry import PluginRegistry, create_default_registry
from helmsman.ssh import SSHTransport
from helmsman.task import RunContext
from helmsman.executor import TaskExecutor
from helmsman.types import DEFAULT_MAX_PARALLEL, NotifyLevel, RunConfig, RunOutcome, Server

logger = get_logger("helmsman.cli")


def parse_options(values: tuple[str, ...] | list[str] | None) -> dict[str, str]:
    """Parse repeated ``-o key=value`` values into a dictionary.

    Each value may hold several space-separated pairs, and quoted values
    may contain spaces. Later keys override earlier ones.

    Raises:
        ValueError: If a pair has no ``=`` or an empty key

    Example:
        >>> parse_options(["local=app.conf remote=/etc/app.conf"])
        {'local': 'app.conf', 'remote': '/etc/app.conf'}
        >>> parse_options(["msg='hello world'", "strip=1"])
        {'msg': 'hello world', 'strip': '1'}
    """
    result: dict[str, str] = {}
    for value in values or ():
        try:
            pairs = shlex.split(value)
        except ValueError as e:
            raise ValueError(f"Failed to parse option '{value}': {e}") from e
        for pair in pairs:
            key, sep, option = pair.partition("=")
            if not sep or not key:
                raise ValueError(f"Invalid option format: '{pair}'. Expected key=value format.")
            result[key] = option
    return result


def format_results_text(outcome: RunOutcome, task: str = "") -> str:
    """Format a run outcome as a human-readable report.

    Failed hosts are listed one per line with the failure reason.
    """
    title = f"Results for task '{task}':" if task else "Results:"
    lines = [
        "",
        title,
        f"Total hosts: {len(outcome.hosts)}",
        f"Successful: {len(outcome.successes)}",
        f"Failed: {len(outcome.failures)}",
    ]
    if outcome.skipped:
        lines.append(f"Skipped: {len(outcome.skipped)}")
    lines.append("")

    if outcome.failures:
        lines.append("Failures:")
        for host in outcome.failures:
            lines.append(f"  {host.server.name}: [{host.reason.value}] {host.message}")
        lines.append("")

    if outcome.aborted:
        reason = outcome.skipped[0].message if outcome.skipped else "aborted"
        lines.append(f"Run aborted: {reason}")
        lines.append("")

    return "\n".join(lines)


def format_results_json(outcome: RunOutcome, task: str, duration: float) -> str:
    """Format a run outcome as JSON.

    Args:
        outcome: Outcome of the run
        task: Name of the task that was run
        duration: Run duration in seconds
    """
    output: dict[str, Any] = {
        "task": task,
        "success": outcome.is_success,
        "aborted": outcome.aborted,
        "total_hosts": len(outcome.hosts),
        "successful": len(outcome.successes),
        "failed": len(outcome.failures),
        "skipped": len(outcome.skipped),
        "results": {host.server.name: host.to_dict() for host in outcome.hosts},
        "duration": round(duration, 3),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return json.dumps(output, indent=2)


def selection_options(command: Callable) -> Callable:
    """Add the configuration and target-selection options to a command."""
    options = [
        click.option("--config", "-c", "config_uri", envvar="HELMSMAN_CONFIG",
                     help="Server configuration URI or path (env: HELMSMAN_CONFIG)"),
        click.option("--server", "-s", "servers", multiple=True,
                     help="Server name, abbreviation or range; repeatable, comma lists allowed"),
        click.option("--role", "-r", "roles", multiple=True,
                     help="Role to include; repeatable, comma lists allowed"),
        click.option("--exclude-server", "exclude_servers", multiple=True,
                     help="Server to leave out"),
        click.option("--exclude-role", "exclude_roles", multiple=True,
                     help="Role to leave out"),
    ]
    for option in reversed(options):
        command = option(command)
    return command


def _registry(ctx: click.Context) -> PluginRegistry:
    return ctx.obj["registry"]


def _load_directory(registry: PluginRegistry, config_uri: str | None) -> Directory:
    if not config_uri:
        raise click.ClickException("No server configuration given (use --config or HELMSMAN_CONFIG)")
    try:
        return registry.load_directory(config_uri)
    except HelmsmanError as e:
        raise click.ClickException(e.msg) from e


def _resolve(
    directory: Directory,
    servers: tuple[str, ...],
    roles: tuple[str, ...],
    exclude_servers: tuple[str, ...],
    exclude_roles: tuple[str, ...],
) -> list[Server]:
    try:
        return resolve_targets(
            directory,
            servers=split_tokens(servers),
            roles=split_tokens(roles),
            exclude_servers=split_tokens(exclude_servers),
            exclude_roles=split_tokens(exclude_roles),
        )
    except HelmsmanError as e:
        raise click.ClickException(e.msg) from e


def _build_notify(registry: PluginRegistry, uris: tuple[str, ...], level: NotifyLevel | str) -> EventBroadcaster:
    notify = EventBroadcaster(level=level)
    for uri in split_tokens(uris) or ["console:"]:
        try:
            notify.add_channel(registry.create_channel(uri))
        except (HelmsmanError, ValueError) as e:
            raise click.ClickException(f"Bad notify channel '{uri}': {e}") from e
    return notify


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """helmsman - run tasks across a fleet of servers over SSH."""
    if version:
        click.echo(f"helmsman {__version__}")
        ctx.exit(0)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("registry", create_default_registry())
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("run")
@click.argument("task_name")
@click.argument("args", nargs=-1)
@selection_options
@click.option("--parallel", "-p", is_flag=True, help="Run hosts concurrently instead of one at a time")
@click.option("--max-parallel", type=int, default=DEFAULT_MAX_PARALLEL,
              help=f"Most hosts active at once in parallel mode (default: {DEFAULT_MAX_PARALLEL})")
@click.option("--timeout", "-t", type=float, default=None, help="Per-host timeout in seconds")
@click.option("--lock", "lock_scope", type=click.Choice(["none", "local", "remote", "both"]),
              default="none", help="Lock scope for the run (default: none)")
@click.option("--lock-contention", type=click.Choice(["continue", "abort"]), default="continue",
              help="On a held remote lock: fail that host and continue, or abort the run")
@click.option("--notify", "-n", "notify_uris", multiple=True, envvar="HELMSMAN_NOTIFY",
              help="Channel URI (console:, file:PATH, mailto:ADDR); repeatable (env: HELMSMAN_NOTIFY)")
@click.option("--notify-level", type=click.Choice(["debug", "info", "warn", "error"]),
              default="info", help="Lowest level sent to channels (default: info)")
@click.option("--sudo", default=None, help="Run remote commands as this user")
@click.option("--option", "-o", "options", multiple=True, help="Task option as key=value; repeatable")
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Report format (default: text)")
@click.option("-v", "--verbose", count=True, help="Increase verbosity: -v=info, -vv=debug, -vvv=trace")
@click.option("--log-level", type=click.Choice(list(LEVEL_NAMES), case_sensitive=False), default=None,
              help="Diagnostic log level by name (overrides -v)")
@click.option("--log-file", type=click.Path(), default=None,
              help="Write diagnostic logs to file (in addition to console)")
@click.pass_context
def run_task(
    ctx: click.Context,
    task_name: str,
    args: tuple[str, ...],
    config_uri: str | None,
    servers: tuple[str, ...],
    roles: tuple[str, ...],
    exclude_servers: tuple[str, ...],
    exclude_roles: tuple[str, ...],
    parallel: bool,
    max_parallel: int,
    timeout: float | None,
    lock_scope: str,
    lock_contention: str,
    notify_uris: tuple[str, ...],
    notify_level: str,
    sudo: str | None,
    options: tuple[str, ...],
    output_format: str,
    verbose: int,
    log_level: str | None,
    log_file: str | None,
) -> None:
    """Run TASK on the selected servers.

    With no --server or --role, every configured server is selected.
    Arguments after the task name are passed to the task; put them after
    "--" when they look like options.

    Examples:
        helmsman run exec -c servers.yml -r web -- uptime

        helmsman run put -c servers.yml -s web[1-3] -o local=app.conf -o remote=/etc/app.conf --sudo root

        helmsman run patch -c servers.yml -r db --exclude-server db2 -o file=fix.patch -o target=/opt/app -o strip=1

        helmsman run exec -c servers.yml -p --max-parallel 20 --lock both -n mailto:ops@example.com -- apt-get update
    """
    level = get_level_from_name(log_level) if log_level else get_level_from_verbosity(verbose)
    configure_logging(
        level=logging.CRITICAL if output_format == "json" else level,
        log_file=log_file,
        file_level=level if log_file else None,
        debug=(level <= logging.DEBUG),
    )

    registry = _registry(ctx)
    try:
        task_class = registry.task_class(task_name)
        task_options = parse_options(options)
        config = RunConfig(
            mode="parallel" if parallel else "serial",
            max_parallel=max_parallel,
            timeout=timeout,
            lock_scope=lock_scope,
            lock_contention=lock_contention,
            notify_level=notify_level,
            sudo=sudo,
        )
    except (HelmsmanError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    directory = _load_directory(registry, config_uri)
    targets = _resolve(directory, servers, roles, exclude_servers, exclude_roles)
    log = logger.bind(task=task_name)
    log.info(format_filter_summary(len(directory), len(targets)))
    log.trace(f"Task options: {task_options}", args=len(args))

    notify = _build_notify(registry, notify_uris, config.notify_level)
    context = RunContext(
        task_name=task_name,
        options=task_options,
        args=list(args),
        sudo=sudo,
        timeout=timeout,
        notify=notify,
    )
    executor = TaskExecutor(
        transport=ctx.obj.get("transport") or SSHTransport(),
        config=config,
        notify=notify,
    )

    start = time.perf_counter()
    try:
        with log.performance("Run", hosts=len(targets)):
            outcome = asyncio.run(executor.run(task_class(context), targets))
    except HelmsmanError as e:
        raise click.ClickException(e.msg) from e
    duration = time.perf_counter() - start

    if output_format == "json":
        click.echo(format_results_json(outcome, task_name, duration))
    else:
        click.echo(format_results_text(outcome, task_name))

    if not outcome.is_success:
        if output_format == "json":
            raise SystemExit(1)
        raise click.ClickException(f"{len(outcome.failures)} host(s) failed")


@cli.command("servers")
@selection_options
@click.option("--format", "-f", "output_format", type=click.Choice(["text", "json"]),
              default="text", help="Output format (default: text)")
@click.pass_context
def list_servers(
    ctx: click.Context,
    config_uri: str | None,
    servers: tuple[str, ...],
    roles: tuple[str, ...],
    exclude_servers: tuple[str, ...],
    exclude_roles: tuple[str, ...],
    output_format: str,
) -> None:
    """Show the servers a selection resolves to, without running anything.

    Examples:
        helmsman servers -c servers.yml

        helmsman servers -c servers.yml -r web --exclude-server web2 --format json
    """
    directory = _load_directory(_registry(ctx), config_uri)
    targets = _resolve(directory, servers, roles, exclude_servers, exclude_roles)

    if output_format == "json":
        data = [
            {
                "name": s.name,
                "roles": sorted(s.roles),
                "port": s.port,
                "timeout": s.timeout,
                "user": s.user,
            }
            for s in targets
        ]
        click.echo(json.dumps(data, indent=2))
        return

    for server in targets:
        roles_text = ", ".join(sorted(server.roles)) or "-"
        click.echo(f"{server.name}  ({roles_text})")
    click.echo("")
    click.echo(format_filter_summary(len(directory), len(targets)))


@cli.command("tasks")
@click.pass_context
def list_tasks(ctx: click.Context) -> None:
    """List the registered tasks."""
    registry = _registry(ctx)
    for name in registry.keys("task"):
        summary = registry.task_class(name).help(name).splitlines()[0]
        click.echo(f"{name:<12} {summary}")


@cli.command("help")
@click.argument("task_name")
@click.pass_context
def task_help(ctx: click.Context, task_name: str) -> None:
    """Show the help text of TASK."""
    try:
        task_class = _registry(ctx).task_class(task_name)
    except HelmsmanError as e:
        raise click.ClickException(e.msg) from e
    click.echo(task_class.help(task_name))


def main() -> None:
    """Package entry point for the helmsman command-line interface."""
    cli()


if __name__ == "__main__":
    main()
