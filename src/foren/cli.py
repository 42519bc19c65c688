from __future__ import annotations

import asyncio
import shlex
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, TypeVar

import typer
import yaml
from rich.console import Console
from rich.table import Table

from foren.cluster.client import OfflineCluster
from foren.commands import (
    MONITOR_COMMAND,
    NETWORK_COMMAND,
    PROCESS_COMMAND,
    collect_network_interfaces,
    collect_process_list,
    exec_capture_task,
    exec_interactive_task,
    open_process_monitor,
    session_tasks,
)
from foren.config.loader import load_settings, parse_settings
from foren.config.schema import DebugSettings
from foren.exec.runner import Task, describe_tasks, runnable_tasks
from foren.state.context import ExecutionContext, build_context
from foren.util.errors import ConfigError, ForenError, SessionInterrupted
from foren.util.log import new_logger
from foren.workload.lifecycle import build_descriptor

app = typer.Typer(help="A kubectl plugin for forensic operations on cluster nodes")
console = Console()
T = TypeVar("T")

EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


class LogFormat(str, Enum):
    text = "text"
    json = "json"


@dataclass(slots=True)
class GlobalOptions:
    verbose: bool = False
    debug: bool = False
    log_format: LogFormat = LogFormat.text
    config: Path | None = None
    namespace: str | None = None
    kubeconfig: str | None = None
    context: str | None = None
    image: str | None = None


def _interrupted(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, SessionInterrupted):
            return True
        current = current.__cause__
    return False


def _settings_or_exit(opts: GlobalOptions) -> DebugSettings:
    overrides = {
        "namespace": opts.namespace,
        "kubeconfig": opts.kubeconfig,
        "context": opts.context,
        "image": opts.image,
    }
    try:
        settings = load_settings(opts.config)
        return parse_settings(
            {key: value for key, value in overrides.items() if value is not None}, settings
        )
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc


def _context_or_exit(opts: GlobalOptions, node: str, *, dry_run: bool) -> ExecutionContext:
    settings = _settings_or_exit(opts)
    logger = new_logger(opts.verbose, opts.log_format.value, debug=opts.debug)
    try:
        return build_context(
            node,
            settings=settings,
            logger=logger,
            cluster=OfflineCluster() if dry_run else None,
            verbose=opts.verbose,
        )
    except (ConfigError, ValueError) as exc:
        console.print(f"[red]Failed to initialize session:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc


def _print_dry_run(ctx: ExecutionContext, tasks: Sequence[Task]) -> None:
    table = Table(title=f"Dry Run - Steps on {ctx.node}")
    table.add_column("#")
    table.add_column("step")
    table.add_column("attempts", justify="right")
    table.add_column("timeout_sec", justify="right")
    runnable = runnable_tasks(tasks, ctx)
    for idx, (task, label) in enumerate(zip(runnable, describe_tasks(runnable, ctx)), start=1):
        timeout = "-" if task.timeout_sec <= 0 else f"{task.timeout_sec:g}"
        table.add_row(str(idx), label, str(task.resolved_attempts(ctx)), timeout)
    console.print(table)
    manifest = build_descriptor(
        ctx.settings, ctx.workload, node=ctx.node, place_on_node=ctx.place_on_node
    )
    typer.echo(yaml.safe_dump(manifest, sort_keys=False, allow_unicode=True), nl=False)


def _run_or_exit(opts: GlobalOptions, session: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(session)
    except ForenError as exc:
        if _interrupted(exc):
            console.print("[yellow]Session interrupted[/yellow]")
            raise typer.Exit(EXIT_INTERRUPTED) from exc
        if opts.debug:
            console.print_exception()
        console.print(f"[red]Debug session failed:[/red] {exc}")
        raise typer.Exit(EXIT_FAILED) from exc


def _echo_output(data: bytes) -> None:
    if data:
        typer.echo(data.decode("utf-8", "replace"), nl=not data.endswith(b"\n"))


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="verbose output")] = False,
    debug: Annotated[
        bool, typer.Option("--debug", "-d", help="debug output with stacktrace")
    ] = False,
    log_format: Annotated[
        LogFormat, typer.Option("--log-format", "-l", help="format for logging")
    ] = LogFormat.text,
    config: Annotated[
        Path | None,
        typer.Option("--config", "-c", envvar="KUBECTL_FOREN_CONFIG", dir_okay=False),
    ] = None,
    namespace: Annotated[str | None, typer.Option("--namespace", "-n")] = None,
    kubeconfig: Annotated[str | None, typer.Option("--kubeconfig")] = None,
    context: Annotated[str | None, typer.Option("--context")] = None,
    image: Annotated[str | None, typer.Option("--image")] = None,
) -> None:
    ctx.obj = GlobalOptions(
        verbose=verbose,
        debug=debug,
        log_format=log_format,
        config=config,
        namespace=namespace,
        kubeconfig=kubeconfig,
        context=context,
        image=image,
    )


@app.command("node-net")
def node_net(
    ctx: typer.Context,
    node: Annotated[str, typer.Argument(help="target node name")],
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
) -> None:
    """List network interfaces on a node."""
    opts: GlobalOptions = ctx.obj
    session = _context_or_exit(opts, node, dry_run=dry_run)
    if dry_run:
        step = exec_capture_task(session, NETWORK_COMMAND)
        _print_dry_run(session, session_tasks(session, step))
        raise typer.Exit(0)
    output = _run_or_exit(opts, collect_network_interfaces(session))
    _echo_output(output.stdout)


@app.command("node-ps")
def node_ps(
    ctx: typer.Context,
    node: Annotated[str, typer.Argument(help="target node name")],
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
) -> None:
    """List running processes on a node."""
    opts: GlobalOptions = ctx.obj
    session = _context_or_exit(opts, node, dry_run=dry_run)
    if dry_run:
        step = exec_capture_task(session, PROCESS_COMMAND)
        _print_dry_run(session, session_tasks(session, step))
        raise typer.Exit(0)
    output = _run_or_exit(opts, collect_process_list(session))
    _echo_output(output.stdout)


@app.command("node-top")
def node_top(
    ctx: typer.Context,
    node: Annotated[str, typer.Argument(help="target node name")],
    command: Annotated[
        str, typer.Option("--command", help="interactive command to run")
    ] = " ".join(MONITOR_COMMAND),
    dry_run: Annotated[bool, typer.Option("--dry-run")] = False,
) -> None:
    """Open an interactive process monitor on a node."""
    opts: GlobalOptions = ctx.obj
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        console.print(f"[red]Invalid command:[/red] {exc}")
        raise typer.Exit(EXIT_USAGE) from exc
    if not argv:
        console.print("[red]Invalid command:[/red] command must not be empty")
        raise typer.Exit(EXIT_USAGE)
    session = _context_or_exit(opts, node, dry_run=dry_run)
    if dry_run:
        _print_dry_run(session, session_tasks(session, exec_interactive_task(session, argv)))
        raise typer.Exit(0)
    _run_or_exit(opts, open_process_monitor(session, argv))


if __name__ == "__main__":
    app()
