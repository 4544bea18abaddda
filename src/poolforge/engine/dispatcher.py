"""Round-robin request dispatcher with bounded backlog."""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from poolforge._internal.errors import NoCapacity, RequestFailed, WorkerCrash
from poolforge._internal.logging import get_logger
from poolforge.engine.protocol import WorkRequest
from poolforge.metrics.stats import DispatchStats

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from poolforge._internal.types import Clock

logger = get_logger("engine.dispatcher")


@dataclass(frozen=True)
class ConnectionEvent:
    """An incoming unit of work, alive only while in transit.

    Attributes:
        payload: Opaque request body.
        arrived_at: Monotonic arrival time.
    """

    payload: bytes
    arrived_at: float


@dataclass
class _Pending:
    request_id: int
    event: ConnectionEvent
    future: asyncio.Future[bytes] = field(repr=False)
    worker_id: int | None = None
    dispatched_at: float = 0.0


class Dispatcher:
    """Routes each ``ConnectionEvent`` to exactly one READY worker.

    Workers are chosen in strict rotation: the least recently chosen
    worker goes first, new workers join at the tail and removed workers
    are excised without disturbing the order of the rest. A worker with
    ``max_inflight_per_worker`` outstanding requests is skipped. When no
    worker can take a request it waits in a bounded backlog; once the
    backlog is full, ``NoCapacity`` is raised.

    Must be used from the supervisor's event loop thread. ``submit()``
    never blocks.
    """

    def __init__(
        self,
        send: Callable[[int, WorkRequest], None],
        *,
        backlog_limit: int = 128,
        max_inflight_per_worker: int = 32,
        clock: Clock = time.monotonic,
        stats: DispatchStats | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            send: Delivers a request to a worker's inbox without blocking.
            backlog_limit: Requests held while no worker can take them.
            max_inflight_per_worker: Outstanding requests per worker before
                it is skipped as saturated.
            clock: Monotonic clock.
            stats: Counters to update; a fresh instance by default.
        """
        self._send = send
        self.backlog_limit = backlog_limit
        self.max_inflight_per_worker = max_inflight_per_worker
        self._clock = clock
        self.stats = stats or DispatchStats()

        self._rotation: deque[int] = deque()
        self._inflight: dict[int, dict[int, _Pending]] = {}
        self._backlog: deque[_Pending] = deque()
        self._ids = itertools.count(1)

    @property
    def rotation(self) -> tuple[int, ...]:
        """Ready worker ids, next to be chosen first."""
        return tuple(self._rotation)

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    @property
    def inflight_count(self) -> int:
        return sum(len(v) for v in self._inflight.values())

    # ------------------------------------------------------------------
    # Routing table (called by the Pool Manager)
    # ------------------------------------------------------------------

    def set_ready(self, worker_ids: Sequence[int]) -> None:
        """Replace the set of READY workers, keeping rotation order.

        Args:
            worker_ids: Ids of every READY worker, in spawn order.
        """
        ready = set(worker_ids)
        known = set(self._rotation)
        if ready == known:
            return
        self._rotation = deque(w for w in self._rotation if w in ready)
        for worker_id in worker_ids:
            if worker_id not in known:
                self._rotation.append(worker_id)
                self._inflight.setdefault(worker_id, {})
        self._drain_backlog()

    def worker_lost(self, worker_id: int, error: WorkerCrash) -> None:
        """Forget a dead worker and fail its in-flight requests."""
        if worker_id in self._rotation:
            self._rotation.remove(worker_id)
        lost = self._inflight.pop(worker_id, {})
        self.stats.forget_worker(worker_id)
        for pending in lost.values():
            self.stats.failed += 1
            if not pending.future.done():
                pending.future.set_exception(error)
        if lost:
            logger.warning(
                "Worker %d lost with %d in-flight request(s)", worker_id, len(lost)
            )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def submit(self, payload: bytes) -> asyncio.Future[bytes]:
        """Route a request and return a future for its response.

        Args:
            payload: Opaque request body.

        Returns:
            Future resolved with the worker's response, or failed with
            ``WorkerCrash`` or ``RequestFailed``.

        Raises:
            NoCapacity: No worker can take the request and the backlog is full.
        """
        loop = asyncio.get_running_loop()
        pending = _Pending(
            request_id=next(self._ids),
            event=ConnectionEvent(payload=payload, arrived_at=self._clock()),
            future=loop.create_future(),
        )

        worker_id = self._choose()
        if worker_id is not None:
            self._assign(worker_id, pending)
            return pending.future

        if len(self._backlog) >= self.backlog_limit:
            self._backlog = deque(p for p in self._backlog if not p.future.done())
        if len(self._backlog) >= self.backlog_limit:
            self.stats.rejected += 1
            msg = (
                f"no worker available ({len(self._rotation)} ready, "
                f"backlog {len(self._backlog)}/{self.backlog_limit})"
            )
            raise NoCapacity(msg)

        self._backlog.append(pending)
        logger.debug("Request %d queued (backlog=%d)", pending.request_id, len(self._backlog))
        return pending.future

    async def dispatch(self, payload: bytes, timeout: float | None = None) -> bytes:
        """Route a request and wait for its response.

        Raises:
            NoCapacity: If rejected by backpressure.
            WorkerCrash: If the serving worker died.
            RequestFailed: If the handler raised.
            TimeoutError: If no response arrived within ``timeout``.
        """
        future = self.submit(payload)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except TimeoutError:
            self.stats.timed_out += 1
            self._abandon(future)
            raise
        except asyncio.CancelledError:
            self._abandon(future)
            raise

    def complete(self, worker_id: int, request_id: int, payload: bytes) -> None:
        """Resolve a request with the worker's response."""
        pending = self._inflight.get(worker_id, {}).pop(request_id, None)
        if pending is None:
            return
        self.stats.record_completion((self._clock() - pending.dispatched_at) * 1000.0)
        if not pending.future.done():
            pending.future.set_result(payload)
        self._drain_backlog()

    def fail(self, worker_id: int, request_id: int, error: str) -> None:
        """Fail a request whose handler raised."""
        pending = self._inflight.get(worker_id, {}).pop(request_id, None)
        if pending is None:
            return
        self.stats.failed += 1
        if not pending.future.done():
            pending.future.set_exception(RequestFailed(error, worker_id))
        self._drain_backlog()

    def reject_backlog(self, reason: str) -> None:
        """Fail every queued request, e.g. when the pool stops."""
        while self._backlog:
            pending = self._backlog.popleft()
            if not pending.future.done():
                self.stats.rejected += 1
                pending.future.set_exception(NoCapacity(reason))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _choose(self) -> int | None:
        for index, worker_id in enumerate(self._rotation):
            if len(self._inflight.get(worker_id, {})) < self.max_inflight_per_worker:
                del self._rotation[index]
                self._rotation.append(worker_id)
                return worker_id
        return None

    def _assign(self, worker_id: int, pending: _Pending) -> None:
        pending.worker_id = worker_id
        pending.dispatched_at = self._clock()
        self._inflight.setdefault(worker_id, {})[pending.request_id] = pending
        self.stats.record_dispatch(worker_id)
        try:
            self._send(worker_id, WorkRequest(pending.request_id, pending.event.payload))
        except (KeyError, OSError, ValueError) as exc:
            self._inflight[worker_id].pop(pending.request_id, None)
            self.stats.failed += 1
            pending.future.set_exception(
                WorkerCrash(f"could not deliver to worker {worker_id}: {exc}", worker_id)
            )
            return
        logger.debug("Request %d -> worker %d", pending.request_id, worker_id)

    def _drain_backlog(self) -> None:
        while self._backlog:
            if self._backlog[0].future.done():
                self._backlog.popleft()
                continue
            worker_id = self._choose()
            if worker_id is None:
                return
            self._assign(worker_id, self._backlog.popleft())

    def _abandon(self, future: asyncio.Future[bytes]) -> None:
        # A request already sent stays in-flight until the worker answers;
        # the reply is dropped. A queued one gives its backlog place back.
        future.cancel()
        self._backlog = deque(p for p in self._backlog if p.future is not future)
