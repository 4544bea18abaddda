"""Worker process entry point: runs the handler behind a uvloop event loop."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import os
import queue
import signal
import sys
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from poolforge._internal.errors import HandlerError
from poolforge._internal.logging import get_logger, setup_logging
from poolforge.engine.protocol import (
    WORKER_BOOT_ERROR,
    WorkerMessage,
    WorkerShutdown,
    WorkRequest,
)
from poolforge.handler.loader import load_handler

if TYPE_CHECKING:
    from multiprocessing import Queue as MpQueue

    from poolforge._internal.types import Handler

logger = get_logger("engine.worker")

# Seconds between inbox polls; bounds how quickly shutdown is noticed.
_INBOX_POLL = 0.1


def _install_uvloop() -> None:
    """Install uvloop as the default event loop policy if available.

    Falls back silently to the default asyncio event loop on Windows
    or if uvloop is not installed.
    """
    if sys.platform == "win32":
        return

    try:
        import uvloop

        uvloop.install()
        logger.debug("uvloop installed as event loop policy")
    except ImportError:
        logger.debug("uvloop not available, using default asyncio event loop")


def run_worker_process(
    handler_spec: str,
    worker_id: int,
    inbox: MpQueue[WorkRequest | WorkerShutdown],
    outbox: MpQueue[WorkerMessage],
    heartbeat_interval: float,
    concurrency: int = 1,
    log_level: int = 20,
    json_logs: bool = False,
) -> None:
    """Entry point for a worker subprocess.

    Loads the handler, reports ``ready``, then serves requests from the
    inbox until a ``WorkerShutdown`` arrives or the supervisor dies.
    Heartbeats are sent every ``heartbeat_interval`` regardless of load.

    Args:
        handler_spec: Handler spec understood by ``load_handler``.
        worker_id: Identifier assigned by the Pool Manager.
        inbox: Private queue of requests and shutdown notices.
        outbox: Queue shared by all workers for replies and heartbeats.
        heartbeat_interval: Seconds between heartbeats.
        concurrency: Maximum requests executed at once.
        log_level: Logging level.
        json_logs: Emit JSON log lines.
    """
    _install_uvloop()
    setup_logging(level=log_level, json_format=json_logs, worker_id=worker_id)
    # Ctrl-C reaches the whole process group; the supervisor decides.
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    try:
        handler = load_handler(handler_spec)
    except HandlerError:
        logger.exception("Worker %d: cannot load handler %r", worker_id, handler_spec)
        sys.exit(WORKER_BOOT_ERROR)

    asyncio.run(
        _serve(
            handler=handler,
            worker_id=worker_id,
            inbox=inbox,
            outbox=outbox,
            heartbeat_interval=heartbeat_interval,
            concurrency=concurrency,
        )
    )
    logger.debug("Worker %d exiting", worker_id)


async def _serve(
    handler: Handler,
    worker_id: int,
    inbox: MpQueue[WorkRequest | WorkerShutdown],
    outbox: MpQueue[WorkerMessage],
    heartbeat_interval: float,
    concurrency: int,
) -> None:
    """Serve requests until shutdown, then wait for in-flight ones."""
    pid = os.getpid()
    parent = os.getppid()
    stop_event = asyncio.Event()
    slots = asyncio.Semaphore(concurrency)
    executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="handler")
    tasks: set[asyncio.Task[None]] = set()

    outbox.put(WorkerMessage(kind="ready", worker_id=worker_id, pid=pid))
    logger.info("Worker %d ready (pid=%d)", worker_id, pid)

    heartbeat = asyncio.create_task(
        _heartbeat_loop(worker_id, pid, parent, outbox, heartbeat_interval, stop_event),
        name=f"worker-{worker_id}-heartbeat",
    )

    try:
        while not stop_event.is_set():
            message = await asyncio.to_thread(_poll_inbox, inbox)
            if message is None:
                continue
            if isinstance(message, WorkerShutdown):
                logger.info("Worker %d draining %d request(s)", worker_id, len(tasks))
                break

            await slots.acquire()
            task = asyncio.create_task(
                _handle_request(handler, message, worker_id, pid, outbox, executor),
                name=f"worker-{worker_id}-request-{message.request_id}",
            )
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(lambda _t: slots.release())

        if tasks:
            await asyncio.wait(tasks)
    finally:
        stop_event.set()
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        executor.shutdown(wait=False, cancel_futures=True)


def _poll_inbox(
    inbox: MpQueue[WorkRequest | WorkerShutdown],
) -> WorkRequest | WorkerShutdown | None:
    try:
        return inbox.get(timeout=_INBOX_POLL)
    except queue.Empty:
        return None
    except (EOFError, OSError):
        # Supervisor side of the pipe is gone.
        return WorkerShutdown()


async def _heartbeat_loop(
    worker_id: int,
    pid: int,
    parent: int,
    outbox: MpQueue[WorkerMessage],
    interval: float,
    stop_event: asyncio.Event,
) -> None:
    while not stop_event.is_set():
        await asyncio.sleep(interval)
        if os.getppid() != parent:
            logger.warning("Worker %d: supervisor is gone, exiting", worker_id)
            os._exit(1)
        outbox.put(WorkerMessage(kind="heartbeat", worker_id=worker_id, pid=pid))


async def _handle_request(
    handler: Handler,
    request: WorkRequest,
    worker_id: int,
    pid: int,
    outbox: MpQueue[WorkerMessage],
    executor: ThreadPoolExecutor,
) -> None:
    """Run the handler for one request and post the reply."""
    try:
        if inspect.iscoroutinefunction(handler):
            result = await handler(request.payload)
        else:
            loop = asyncio.get_running_loop()
            result = await loop.run_in_executor(executor, handler, request.payload)
            if inspect.isawaitable(result):
                result = await result
    except Exception as exc:
        logger.debug("Handler failed for request %d", request.request_id, exc_info=True)
        outbox.put(
            WorkerMessage(
                kind="failure",
                worker_id=worker_id,
                request_id=request.request_id,
                error=f"{type(exc).__name__}: {exc}",
                pid=pid,
            )
        )
        return

    outbox.put(
        WorkerMessage(
            kind="response",
            worker_id=worker_id,
            request_id=request.request_id,
            payload=_to_bytes(result),
            pid=pid,
        )
    )


def _to_bytes(result: object) -> bytes:
    if isinstance(result, bytes):
        return result
    if isinstance(result, (bytearray, memoryview)):
        return bytes(result)
    if isinstance(result, str):
        return result.encode("utf-8")
    if result is None:
        return b""
    return str(result).encode("utf-8")
