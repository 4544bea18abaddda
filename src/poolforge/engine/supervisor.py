"""Supervisor: the single control loop around pool, dispatcher and monitor."""

from __future__ import annotations

import asyncio
import contextlib
import queue
import threading
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Protocol

from poolforge._internal.logging import get_logger
from poolforge.engine.commands import (
    CommandResult,
    Heartbeat,
    Reload,
    ScaleBy,
    Start,
    Stop,
    Tick,
    WorkerExited,
    WorkerReady,
)
from poolforge.engine.dispatcher import Dispatcher
from poolforge.engine.health import HealthMonitor
from poolforge.engine.launcher import ProcessLauncher
from poolforge.engine.pool import PoolManager
from poolforge.engine.records import PoolPhase

if TYPE_CHECKING:
    from types import TracebackType

    from poolforge._internal.config import PoolForgeConfig
    from poolforge._internal.types import Clock
    from poolforge.engine.commands import ControlCommand
    from poolforge.engine.protocol import WorkerMessage, WorkRequest
    from poolforge.engine.records import PoolStatus

logger = get_logger("engine.supervisor")

# Seconds the outbox pump blocks per read; bounds shutdown latency.
_PUMP_POLL = 0.2


class Launcher(Protocol):
    """Everything the supervisor needs from a process launcher."""

    @property
    def outbox(self) -> Any: ...

    def spawn(self, worker_id: int) -> Any: ...

    def send(self, worker_id: int, request: WorkRequest) -> None: ...

    def request_stop(self, handle: Any) -> None: ...

    def kill(self, handle: Any) -> None: ...

    def poll_exits(self) -> list[tuple[int, int | None]]: ...

    def close(self, timeout: float = 2.0) -> None: ...


class Supervisor:
    """Runs the Pool Manager, Dispatcher and Health Monitor on one event loop.

    All pool mutations go through a single ``asyncio.Queue`` consumed by
    one control task, so operator commands, worker events and timer ticks
    are applied one at a time in arrival order:

    - operator commands arrive through ``submit()``;
    - a daemon thread drains the workers' shared outbox and hands each
      message to the loop with ``call_soon_threadsafe``;
    - a ticker task polls process exits, asks the Health Monitor for
      silent workers and posts a ``Tick`` for timers.

    Dispatching a request never waits on the control queue.

    Usage::

        async with Supervisor(config) as supervisor:
            body = await supervisor.dispatch(b"payload")
    """

    def __init__(
        self,
        config: PoolForgeConfig,
        *,
        launcher: Launcher | None = None,
        clock: Clock = time.monotonic,
        tick_interval: float | None = None,
        log_level: int = 20,
        json_logs: bool = False,
    ) -> None:
        """Initialize the supervisor. Nothing runs until ``start()``.

        Args:
            config: Pool and server configuration.
            launcher: Process launcher. Defaults to a ``ProcessLauncher``
                for ``config.server.handler``.
            clock: Monotonic clock shared by all components.
            tick_interval: Seconds between timer ticks. Defaults to half
                the heartbeat interval, capped at 0.25s.
            log_level: Logging level for worker processes.
            json_logs: Whether worker processes log JSON lines.
        """
        self.config = config
        pool_config = config.pool
        server = config.server

        self._launcher: Launcher = launcher or ProcessLauncher(
            server.handler,
            heartbeat_interval=pool_config.heartbeat_interval,
            concurrency=server.max_inflight_per_worker,
            log_level=log_level,
            json_logs=json_logs,
        )
        self.dispatcher = Dispatcher(
            self._launcher.send,
            backlog_limit=server.backlog_limit,
            max_inflight_per_worker=server.max_inflight_per_worker,
            clock=clock,
        )
        self.pool = PoolManager(
            pool_config, self._launcher, routes=self.dispatcher, clock=clock
        )
        self.monitor = HealthMonitor(
            pool_config.heartbeat_interval,
            pool_config.heartbeat_timeout,
            clock=clock,
        )
        self._tick_interval = tick_interval or min(pool_config.heartbeat_interval / 2, 0.25)

        self._loop: asyncio.AbstractEventLoop | None = None
        self._commands: asyncio.Queue[
            tuple[ControlCommand, asyncio.Future[CommandResult] | None]
        ] | None = None
        self._stopped: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []
        self._pump: threading.Thread | None = None
        self._pump_stop = threading.Event()

    async def __aenter__(self) -> Supervisor:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            if self.pool.phase is not PoolPhase.STOPPED:
                await asyncio.wait_for(self.stop(), timeout=self._stop_budget())
        finally:
            await self.close()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> CommandResult:
        """Start the control loop and bring the pool to its desired size."""
        if not self.running:
            self._loop = asyncio.get_running_loop()
            self._commands = asyncio.Queue()
            self._stopped = asyncio.Event()
            self._pump_stop.clear()
            self._tasks = [
                asyncio.create_task(self._control_loop(), name="poolforge-control"),
                asyncio.create_task(self._ticker(), name="poolforge-ticker"),
            ]
            self._pump = threading.Thread(
                target=self._pump_outbox,
                name="poolforge-outbox",
                daemon=True,
            )
            self._pump.start()
            logger.info(
                "Supervisor started: workers=%d, heartbeat=%.1fs/%.1fs",
                self.config.pool.desired_worker_count,
                self.config.pool.heartbeat_interval,
                self.config.pool.heartbeat_timeout,
            )
        return await self.submit(Start())

    async def stop(self) -> int:
        """Drain and stop every worker.

        Returns:
            0 if every worker exited gracefully, 1 if any was force-killed.
        """
        await self.submit(Stop())
        await self.run_until_stopped()
        return self.pool.stop_exit_code

    async def run_until_stopped(self) -> int:
        """Block until the pool reaches STOPPED after a Stop.

        Returns:
            The stop exit code (see ``stop()``).
        """
        assert self._stopped is not None, "supervisor not started"
        await self._stopped.wait()
        return self.pool.stop_exit_code

    async def close(self) -> None:
        """Cancel the control tasks and release every worker process."""
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []

        self._pump_stop.set()
        if self._pump is not None:
            await asyncio.to_thread(self._pump.join, _PUMP_POLL * 5)
            self._pump = None

        self.dispatcher.reject_backlog("supervisor closed")
        self._launcher.close()
        logger.info("Supervisor closed")

    # ------------------------------------------------------------------
    # Commands and queries
    # ------------------------------------------------------------------

    async def submit(self, command: ControlCommand) -> CommandResult:
        """Queue a command and wait for the control loop to apply it."""
        assert self._commands is not None, "supervisor not started"
        future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((command, future))
        return await future

    def post(self, command: ControlCommand) -> None:
        """Queue a command without waiting. Event loop thread only."""
        if self._commands is not None:
            self._commands.put_nowait((command, None))

    def request_stop(self) -> None:
        logger.info("Stop requested")
        self.post(Stop())

    def request_reload(self) -> None:
        logger.info("Reload requested")
        self.post(Reload())

    def request_scale(self, delta: int) -> None:
        logger.info("Scale by %+d requested", delta)
        self.post(ScaleBy(delta))

    async def dispatch(self, payload: bytes, timeout: float | None = None) -> bytes:
        """Send a request to a Ready worker and return its response.

        Raises:
            NoCapacity: No worker is available and the backlog is full.
            WorkerCrash: The worker serving the request died.
            RequestFailed: The handler raised.
            TimeoutError: No response within ``timeout`` (default:
                ``server.request_timeout``).
        """
        if timeout is None:
            timeout = self.config.server.request_timeout
        return await self.dispatcher.dispatch(payload, timeout)

    def status(self) -> PoolStatus:
        """Return the current pool status with liveness and dispatch stats."""
        status = self.pool.status()
        return replace(
            status,
            liveness=self.monitor.liveness(status.workers),
            dispatch=self.dispatcher.stats.to_dict(
                backlog=self.dispatcher.backlog_size,
                inflight=self.dispatcher.inflight_count,
            ),
        )

    async def wait_settled(self, timeout: float = 10.0) -> PoolStatus:
        """Wait until the pool has no pending transitions.

        Raises:
            TimeoutError: If the pool does not settle in time.
        """
        async with asyncio.timeout(timeout):
            while not self.pool.is_settled():
                await asyncio.sleep(self._tick_interval)
        return self.status()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def _control_loop(self) -> None:
        assert self._commands is not None
        assert self._stopped is not None
        while True:
            command, future = await self._commands.get()
            try:
                result = self.pool.apply(command)
            except Exception as exc:
                logger.exception("Failed to apply %r", command)
                result = CommandResult(ok=False, message=f"internal error: {exc}")

            if future is not None and not future.done():
                future.set_result(result)

            if self.pool.phase is PoolPhase.STOPPED:
                if not self._stopped.is_set():
                    self._stopped.set()
                    self.dispatcher.reject_backlog("pool stopped")
            else:
                self._stopped.clear()

    async def _ticker(self) -> None:
        # Exits are reported one tick late so that replies a worker wrote
        # just before exiting reach the Dispatcher first.
        exited: list[tuple[int, int | None]] = []
        while True:
            await asyncio.sleep(self._tick_interval)
            try:
                reported, exited = exited, []
                for worker_id, code in reported:
                    self.post(WorkerExited(worker_id, code))
                exited = self._launcher.poll_exits()
                for missed in self.monitor.check(self.pool.snapshot()):
                    self.post(missed)
            except Exception:
                logger.exception("Health check failed")
            self.post(Tick())

    def _pump_outbox(self) -> None:
        """Forward worker messages to the event loop (runs in a thread)."""
        outbox = self._launcher.outbox
        loop = self._loop
        assert loop is not None
        while not self._pump_stop.is_set():
            try:
                message = outbox.get(timeout=_PUMP_POLL)
            except queue.Empty:
                continue
            except (EOFError, OSError, ValueError):
                logger.debug("Worker outbox closed")
                return
            try:
                loop.call_soon_threadsafe(self._on_worker_message, message)
            except RuntimeError:
                return

    def _on_worker_message(self, message: WorkerMessage) -> None:
        worker_id = message.worker_id
        if message.kind == "ready":
            self.post(WorkerReady(worker_id, message.pid or None))
        elif message.kind == "heartbeat":
            self.post(Heartbeat(worker_id))
        elif message.kind == "response":
            self.dispatcher.complete(worker_id, message.request_id, message.payload)
            self.post(Heartbeat(worker_id))
        elif message.kind == "failure":
            self.dispatcher.fail(worker_id, message.request_id, message.error or "handler failed")
            self.post(Heartbeat(worker_id))
        else:
            logger.warning("Unknown worker message kind: %r", message.kind)

    def _stop_budget(self) -> float:
        return self.config.pool.graceful_shutdown_timeout + self.config.pool.heartbeat_timeout + 5.0
