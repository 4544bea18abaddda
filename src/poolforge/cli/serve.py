"""``poolforge serve``: run the supervisor, front end and control endpoint."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import typer
from rich.console import Console
from rich.panel import Panel

from poolforge._internal.config import load_config
from poolforge._internal.errors import PoolForgeError
from poolforge._internal.logging import get_logger, setup_logging
from poolforge.engine.supervisor import Supervisor
from poolforge.handler.loader import load_handler
from poolforge.server.control import ControlServer
from poolforge.server.frontend import FrontendServer

if TYPE_CHECKING:
    from poolforge._internal.config import PoolForgeConfig

console = Console(stderr=True)
logger = get_logger("cli.serve")


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, supervisor: Supervisor) -> None:
    """Map process signals onto operator commands (POSIX only)."""
    if sys.platform == "win32":
        return
    loop.add_signal_handler(signal.SIGTERM, supervisor.request_stop)
    loop.add_signal_handler(signal.SIGINT, supervisor.request_stop)
    loop.add_signal_handler(signal.SIGHUP, supervisor.request_reload)
    loop.add_signal_handler(signal.SIGTTIN, supervisor.request_scale, 1)
    loop.add_signal_handler(signal.SIGTTOU, supervisor.request_scale, -1)


async def _serve(config: PoolForgeConfig, log_level: int, json_logs: bool) -> int:
    """Run until the pool is stopped; return the stop exit code."""
    supervisor = Supervisor(config, log_level=log_level, json_logs=json_logs)
    frontend = FrontendServer(supervisor, config.server.host, config.server.port)
    control = ControlServer(supervisor, config.server.control_host, config.server.control_port)

    try:
        # Bind before spawning workers so a taken port fails fast.
        await frontend.start()
        await control.start()
        await supervisor.start()
        _install_signal_handlers(asyncio.get_running_loop(), supervisor)
        return await supervisor.run_until_stopped()
    finally:
        await control.close()
        await frontend.close()
        await supervisor.close()


def serve_cmd(
    handler: str | None = typer.Argument(
        None,
        help="Handler to run in each worker: 'module:function' or 'file.py:function'.",
    ),
    workers: int | None = typer.Option(
        None,
        "--workers",
        "-w",
        help="Number of worker processes (default: CPU count).",
        min=0,
    ),
    host: str | None = typer.Option(None, "--host", help="Front end bind address."),
    port: int | None = typer.Option(None, "--port", "-p", help="Front end port."),
    control_port: int | None = typer.Option(
        None,
        "--control-port",
        help="Control endpoint port.",
    ),
    config_file: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="TOML config file with [pool] and [server] tables.",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose (DEBUG) logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit JSON log lines.",
    ),
) -> None:
    """Run a supervised worker pool behind one listening endpoint."""
    log_level = logging.DEBUG if verbose else logging.INFO
    setup_logging(level=log_level, json_format=json_logs)

    try:
        config = load_config(
            config_file,
            overrides={
                "handler": handler,
                "desired_worker_count": workers,
                "host": host,
                "port": port,
                "control_port": control_port,
            },
        )
        if not config.server.handler:
            console.print("[red]Error:[/red] no handler given (argument or POOLFORGE_HANDLER)")
            raise typer.Exit(code=2)
        # Fail here rather than in every worker.
        load_handler(config.server.handler)
    except PoolForgeError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    pool = config.pool
    server = config.server
    console.print(
        Panel(
            f"[bold]Handler:[/bold]   {server.handler}\n"
            f"[bold]Workers:[/bold]   {pool.desired_worker_count}\n"
            f"[bold]Listen:[/bold]    http://{server.host}:{server.port}\n"
            f"[bold]Control:[/bold]   http://{server.control_host}:{server.control_port}\n"
            f"[bold]Heartbeat:[/bold] every {pool.heartbeat_interval}s, "
            f"timeout {pool.heartbeat_timeout}s",
            title="PoolForge",
            border_style="cyan",
        )
    )

    try:
        exit_code = asyncio.run(_serve(config, log_level, json_logs))
    except PoolForgeError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    if exit_code:
        console.print("[yellow]Stopped; some workers had to be force-killed.[/yellow]")
    else:
        console.print("[green]Stopped cleanly.[/green]")
    raise typer.Exit(code=exit_code)
