"""Main Typer application: entry point for the ``poolforge`` CLI."""

from __future__ import annotations

import typer

from poolforge import __version__
from poolforge.cli.control import restart_cmd, scale_cmd, start_cmd, status_cmd, stop_cmd
from poolforge.cli.serve import serve_cmd

app = typer.Typer(
    name="poolforge",
    help="Supervise a pool of worker processes behind one endpoint.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command("serve", help="Run the supervisor, front end and control endpoint.")(serve_cmd)
app.command("status", help="Show the state of a running pool.")(status_cmd)
app.command("start", help="Start a stopped pool.")(start_cmd)
app.command("stop", help="Drain and stop every worker.")(stop_cmd)
app.command("restart", help="Rolling restart of every worker.")(restart_cmd)
app.command("scale", help="Change the desired number of workers.")(scale_cmd)


def _version_callback(value: bool) -> None:
    """Print version and exit.

    Args:
        value: True if --version was passed.
    """
    if value:
        typer.echo(f"poolforge {__version__}")
        raise typer.Exit


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """PoolForge: supervise a pool of worker processes behind one endpoint."""
