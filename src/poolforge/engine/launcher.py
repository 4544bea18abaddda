"""Spawns and tracks worker processes."""

from __future__ import annotations

import multiprocessing
import multiprocessing.process
import queue
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from poolforge._internal.logging import get_logger
from poolforge.engine.protocol import WorkerMessage, WorkerShutdown, WorkRequest
from poolforge.engine.worker import run_worker_process

if TYPE_CHECKING:
    from multiprocessing import Queue as MpQueue

logger = get_logger("engine.launcher")


@dataclass
class WorkerHandle:
    """A running worker process and its private inbox.

    Attributes:
        worker_id: Pool Manager id of the worker.
        process: The multiprocessing process object.
        inbox: Queue of requests and shutdown notices for this worker.
    """

    worker_id: int
    process: multiprocessing.process.BaseProcess
    inbox: MpQueue[WorkRequest | WorkerShutdown] = field(repr=False)

    @property
    def pid(self) -> int | None:
        return self.process.pid


class ProcessLauncher:
    """Creates worker processes with the ``spawn`` start method.

    Every worker gets its own inbox; all workers share one outbox for
    readiness, heartbeats and replies. Exits are discovered by polling
    (``poll_exits``) from the supervisor's control loop.

    Attributes:
        handler_spec: Handler spec loaded by every worker.
    """

    def __init__(
        self,
        handler_spec: str,
        *,
        heartbeat_interval: float,
        concurrency: int = 1,
        log_level: int = 20,
        json_logs: bool = False,
    ) -> None:
        """Initialize the launcher.

        Args:
            handler_spec: Handler spec loaded by every worker.
            heartbeat_interval: Seconds between worker heartbeats.
            concurrency: Requests each worker executes at once.
            log_level: Logging level for workers.
            json_logs: Whether workers emit JSON log lines.
        """
        self.handler_spec = handler_spec
        self._heartbeat_interval = heartbeat_interval
        self._concurrency = concurrency
        self._log_level = log_level
        self._json_logs = json_logs

        self._ctx = multiprocessing.get_context("spawn")
        self._outbox: MpQueue[WorkerMessage] = self._ctx.Queue()
        self._handles: dict[int, WorkerHandle] = {}

    @property
    def outbox(self) -> MpQueue[WorkerMessage]:
        """Return the queue every worker writes to."""
        return self._outbox

    def spawn(self, worker_id: int) -> WorkerHandle:
        """Start a new worker process.

        Raises:
            OSError: If the process cannot be started.
        """
        inbox: MpQueue[WorkRequest | WorkerShutdown] = self._ctx.Queue()
        process = self._ctx.Process(
            target=run_worker_process,
            args=(
                self.handler_spec,
                worker_id,
                inbox,
                self._outbox,
                self._heartbeat_interval,
                self._concurrency,
                self._log_level,
                self._json_logs,
            ),
            name=f"poolforge-worker-{worker_id}",
            daemon=False,
        )
        process.start()
        handle = WorkerHandle(worker_id=worker_id, process=process, inbox=inbox)
        self._handles[worker_id] = handle
        logger.debug("Started worker process: id=%d, pid=%s", worker_id, process.pid)
        return handle

    def send(self, worker_id: int, request: WorkRequest) -> None:
        """Put a request on a worker's inbox without blocking.

        Raises:
            KeyError: If the worker is unknown.
        """
        self._handles[worker_id].inbox.put_nowait(request)

    def request_stop(self, handle: WorkerHandle | None) -> None:
        """Ask a worker to finish in-flight work and exit."""
        if handle is None or not handle.process.is_alive():
            return
        try:
            handle.inbox.put_nowait(WorkerShutdown())
        except (OSError, ValueError, queue.Full):
            logger.warning("Could not send shutdown to worker %d; terminating", handle.worker_id)
            handle.process.terminate()

    def kill(self, handle: WorkerHandle | None) -> None:
        """Forcibly terminate a worker (SIGKILL on POSIX)."""
        if handle is None or not handle.process.is_alive():
            return
        handle.process.kill()
        logger.debug("Killed worker %d (pid=%s)", handle.worker_id, handle.pid)

    def poll_exits(self) -> list[tuple[int, int | None]]:
        """Reap exited workers.

        Returns:
            ``(worker_id, exit_code)`` for each worker that exited since the
            previous call, in worker id order.
        """
        exited: list[tuple[int, int | None]] = []
        for worker_id, handle in sorted(self._handles.items()):
            if handle.process.is_alive():
                continue
            handle.process.join(timeout=0)
            exited.append((worker_id, handle.process.exitcode))
            self._discard(worker_id)
        return exited

    def close(self, timeout: float = 2.0) -> None:
        """Kill any remaining workers and release all queues."""
        for handle in list(self._handles.values()):
            if handle.process.is_alive():
                logger.warning("Worker %d still alive at close; killing", handle.worker_id)
                handle.process.kill()
            handle.process.join(timeout=timeout)
            self._discard(handle.worker_id)
        self._outbox.close()
        self._outbox.cancel_join_thread()

    def _discard(self, worker_id: int) -> None:
        handle = self._handles.pop(worker_id, None)
        if handle is None:
            return
        handle.inbox.close()
        handle.inbox.cancel_join_thread()
