"""Operator commands sent to a running supervisor's control endpoint."""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING, Any

import typer
from rich.console import Console
from rich.table import Table

from poolforge._internal.errors import ControlError
from poolforge.server.control import ControlClient

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

console = Console(stderr=True)
out = Console()

_DEFAULT_URL = "http://127.0.0.1:9101"

_STATE_STYLES = {
    "ready": "green",
    "starting": "cyan",
    "draining": "yellow",
    "dead": "red",
}


def _control_url(url: str | None) -> str:
    return url or os.environ.get("POOLFORGE_CONTROL_URL") or _DEFAULT_URL


_URL_OPTION = typer.Option(
    None,
    "--url",
    "-u",
    help=f"Control endpoint URL (default: $POOLFORGE_CONTROL_URL or {_DEFAULT_URL}).",
)


def _call(
    url: str | None,
    action: Callable[[ControlClient], Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    """Run one control request, exiting with code 1 on ``ControlError``."""

    async def _run() -> dict[str, Any]:
        async with ControlClient(_control_url(url)) as client:
            return await action(client)

    try:
        return asyncio.run(_run())
    except ControlError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _report(reply: dict[str, Any]) -> None:
    message = reply.get("message") or "ok"
    if reply.get("deferred"):
        console.print(f"[yellow]Deferred:[/yellow] {message}")
    else:
        console.print(f"[green]OK:[/green] {message}")
    for error in reply.get("errors") or []:
        console.print(f"[red]  {error}[/red]")


# ---------------------------------------------------------------------------
# Status rendering
# ---------------------------------------------------------------------------


def _format_uptime(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def _workers_table(status: dict[str, Any]) -> Table:
    table = Table(
        title=(
            f"Pool {status['phase']}: {status['ready_workers']}/"
            f"{status['desired_workers']} ready (generation {status['generation']})"
        ),
        show_header=True,
        header_style="bold cyan",
        expand=True,
    )
    table.add_column("ID", justify="right")
    table.add_column("Slot", justify="right")
    table.add_column("PID", justify="right")
    table.add_column("State")
    table.add_column("Health")
    table.add_column("Uptime", justify="right")
    table.add_column("Restarts", justify="right")
    table.add_column("Last Exit")

    for worker in status["workers"]:
        state = worker["state"]
        style = _STATE_STYLES.get(state, "")
        last_exit = "-"
        if worker.get("last_exit_reason"):
            last_exit = f"{worker['last_exit_reason']} ({worker.get('last_exit_code')})"
        if worker.get("respawn_in") is not None:
            last_exit += f", respawn in {worker['respawn_in']:.1f}s"
        table.add_row(
            str(worker["id"]),
            str(worker["slot"]),
            str(worker.get("pid") or "-"),
            f"[{style}]{state}[/{style}]" if style else state,
            worker.get("health") or "-",
            _format_uptime(worker.get("uptime")),
            str(worker.get("restarts", 0)),
            last_exit,
        )
    return table


def _summary_table(status: dict[str, Any]) -> Table:
    table = Table(show_header=True, header_style="bold cyan", expand=True)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Pending Respawns", str(status["pending_respawns"]))
    table.add_row("Forced Kills", str(status["forced_kills"]))
    table.add_row("Deferred Commands", str(status["deferred_commands"]))

    dispatch = status.get("dispatch") or {}
    if dispatch:
        table.add_row("Dispatched", str(dispatch["dispatched"]))
        table.add_row("Completed", str(dispatch["completed"]))
        table.add_row("Failed", str(dispatch["failed"]))
        table.add_row("Rejected", str(dispatch["rejected"]))
        table.add_row("Timed Out", str(dispatch["timed_out"]))
        table.add_row("Backlog", str(dispatch["backlog"]))
        table.add_row("In Flight", str(dispatch["inflight"]))
        table.add_row("p50 Latency", f"{dispatch['latency_p50_ms']:.1f}ms")
        table.add_row("p95 Latency", f"{dispatch['latency_p95_ms']:.1f}ms")
        table.add_row("p99 Latency", f"{dispatch['latency_p99_ms']:.1f}ms")
    return table


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def status_cmd(
    url: str | None = _URL_OPTION,
    as_json: bool = typer.Option(False, "--json", help="Print the raw status JSON."),
) -> None:
    """Show workers, degraded slots and dispatch counters."""
    status = _call(url, lambda client: client.status())

    if as_json:
        out.print_json(data=status)
        return

    out.print(_workers_table(status))
    out.print(_summary_table(status))
    for slot in status.get("degraded") or []:
        console.print(
            f"[red]Degraded:[/red] slot {slot['slot']} halted after "
            f"{slot['crashes']} crashes (last exit code {slot['last_exit_code']})"
        )


def start_cmd(url: str | None = _URL_OPTION) -> None:
    """Start the pool if it is stopped."""
    _report(_call(url, lambda client: client.start()))


def stop_cmd(url: str | None = _URL_OPTION) -> None:
    """Drain and stop every worker; exit 1 if any had to be force-killed."""
    reply = _call(url, lambda client: client.stop())
    exit_code = int(reply.get("exit_code", 0))
    if exit_code:
        console.print("[yellow]Stopped; some workers had to be force-killed.[/yellow]")
    else:
        console.print("[green]Stopped cleanly.[/green]")
    raise typer.Exit(code=exit_code)


def restart_cmd(url: str | None = _URL_OPTION) -> None:
    """Replace every worker one at a time without dropping capacity."""
    _report(_call(url, lambda client: client.restart()))


def scale_cmd(
    workers: int = typer.Argument(..., help="New desired worker count.", min=0),
    url: str | None = _URL_OPTION,
) -> None:
    """Change the desired number of workers."""
    _report(_call(url, lambda client: client.scale(workers)))
