"""Main Typer application: entry point for the ``shepherd`` CLI."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from shepherd import __version__
from shepherd._internal.daemon import daemonize
from shepherd._internal.errors import (
    EXIT_NO_ARGS,
    ConfigError,
    ControlError,
    DaemonizeError,
    ShepherdError,
)
from shepherd._internal.logging import apply_log_settings, get_logger, setup_logging
from shepherd._internal.pidfile import remove_pidfile, write_pidfile
from shepherd.engine.context import DEFAULT_PROGRAM, ServiceContext
from shepherd.engine.control import ControlChannel
from shepherd.engine.orchestrator import MasterOrchestrator
from shepherd.engine.protocol import ControlCommand, StatusReport
from shepherd.payload import DEFAULT_ARGUMENT, heartbeat

logger = get_logger("cli")
console = Console()

app = typer.Typer(
    name=DEFAULT_PROGRAM,
    help="Run and control a supervised pool of worker processes.",
    add_completion=False,
    rich_markup_mode="rich",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"{DEFAULT_PROGRAM} version {__version__}")
        raise typer.Exit


def _print_status(report: StatusReport) -> None:
    """Render a status report as a Rich table.

    Args:
        report: Report published by the running master.
    """
    table = Table(
        title=f"{report.program} master pid={report.master_pid}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Worker", justify="right")
    table.add_column("PID", justify="right")
    table.add_column("Status")
    table.add_column("Threads", justify="right")

    for worker in report.workers:
        table.add_row(
            str(worker.index),
            str(worker.pid) if worker.pid is not None else "-",
            worker.status.value,
            str(worker.threads),
        )

    console.print(table)
    mode = "inline" if report.inline else f"{report.worker_process_count} processes"
    console.print(
        f"port={report.port} mode={mode} threads={report.worker_thread_count} "
        f"config=v{report.config_version}"
    )


@app.command()
def serve(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Print version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    confile: Path | None = typer.Option(
        None,
        "--confile",
        "-c",
        help="Configuration file (default: etc/shepherd.conf under the run directory).",
    ),
    test: bool = typer.Option(
        False,
        "--test",
        "-t",
        help="Test the configuration file and exit.",
    ),
    signal_name: ControlCommand | None = typer.Option(
        None,
        "--signal",
        "-s",
        help="Send a control command to the running master.",
        case_sensitive=False,
    ),
    daemon: bool = typer.Option(
        False,
        "--daemon",
        "-d",
        help="Detach from the terminal and run in the background.",
    ),
    port: int = typer.Option(
        0,
        "--port",
        "-p",
        help="Listen port, overriding the configuration file.",
        min=0,
    ),
) -> None:
    """Start the master process, or control one that is already running."""
    if not (confile or test or signal_name or daemon or port):
        typer.echo(ctx.get_help())
        raise typer.Exit(EXIT_NO_ARGS)

    setup_logging()
    context = ServiceContext.create(confile=confile, port_override=port)

    try:
        snapshot = context.load_snapshot()
    except ConfigError as exc:
        typer.echo(str(exc))
        raise typer.Exit(exc.exit_code) from exc

    apply_log_settings(snapshot.log)
    logger.info("%s version: %s", context.program_name, __version__)
    logger.info("parse_confile('%s') OK", context.confile)

    if test:
        typer.echo(f"Test confile [{context.confile}] OK!")
        raise typer.Exit

    channel = ControlChannel.for_context(context)
    try:
        result = channel.send(signal_name or ControlCommand.START)
    except ControlError as exc:
        typer.echo(str(exc))
        raise typer.Exit(exc.exit_code) from exc

    typer.echo(result.message)
    if result.report is not None:
        _print_status(result.report)
    if not result.launch:
        raise typer.Exit

    if daemon:
        try:
            context.pid = daemonize()
        except DaemonizeError as exc:
            typer.echo(str(exc))
            raise typer.Exit(exc.exit_code) from exc

    write_pidfile(context.pidfile, context.pid)
    try:
        code = MasterOrchestrator(context).start(heartbeat, DEFAULT_ARGUMENT)
    except ShepherdError as exc:
        logger.error("Master failed: %s", exc)
        code = exc.exit_code
    finally:
        remove_pidfile(context.pidfile, context.pid)
        context.status_file.unlink(missing_ok=True)

    raise typer.Exit(code)


def main() -> None:
    """Console-script entry point."""
    app(prog_name=DEFAULT_PROGRAM)
