"""Health Monitor: turns silence into ``HeartbeatMissed`` events."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from poolforge._internal.logging import get_logger
from poolforge.engine.commands import HeartbeatMissed
from poolforge.engine.records import Liveness, WorkerState

if TYPE_CHECKING:
    from collections.abc import Sequence

    from poolforge._internal.types import Clock
    from poolforge.engine.records import WorkerRecord

logger = get_logger("engine.health")


class HealthMonitor:
    """Classifies workers as healthy, stalled or dead from their last signal.

    A worker's last signal is its spawn time while STARTING, and its last
    heartbeat or completed request once READY. A worker silent for longer
    than ``heartbeat_timeout`` is dead, and ``check()`` emits one
    ``HeartbeatMissed`` for it. A worker that has missed at least one
    heartbeat but is still inside the timeout is stalled. DRAINING workers
    are governed by the drain deadline instead.

    Process exits never go through here; they reach the pool directly as
    ``WorkerExited``.
    """

    def __init__(
        self,
        heartbeat_interval: float,
        heartbeat_timeout: float,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self._clock = clock
        self._reported: set[int] = set()

    def classify(self, record: WorkerRecord, now: float | None = None) -> Liveness:
        """Return the liveness of one worker."""
        if record.state is WorkerState.DEAD:
            return Liveness.DEAD
        if record.state is WorkerState.DRAINING:
            return Liveness.HEALTHY
        now = self._clock() if now is None else now
        silence = now - self._last_signal(record)
        if silence > self.heartbeat_timeout:
            return Liveness.DEAD
        if record.state is WorkerState.READY and silence > self.heartbeat_interval * 2:
            return Liveness.STALLED
        return Liveness.HEALTHY

    def check(self, workers: Sequence[WorkerRecord]) -> list[HeartbeatMissed]:
        """Return a ``HeartbeatMissed`` for each newly dead worker.

        A worker is reported once per silence. It is reported again only
        after it has signalled in between, or if its record reappears
        after being dropped.

        Args:
            workers: Current pool snapshot.
        """
        now = self._clock()
        present = {w.id for w in workers if w.is_active}
        self._reported &= present

        missed: list[HeartbeatMissed] = []
        for record in workers:
            if not record.is_active:
                continue
            if self.classify(record, now) is not Liveness.DEAD:
                self._reported.discard(record.id)
                continue
            if record.id in self._reported:
                continue
            self._reported.add(record.id)
            logger.debug(
                "Worker %d silent for %.2fs",
                record.id,
                now - self._last_signal(record),
            )
            missed.append(HeartbeatMissed(record.id))
        return missed

    def liveness(self, workers: Sequence[WorkerRecord]) -> dict[int, Liveness]:
        now = self._clock()
        return {w.id: self.classify(w, now) for w in workers}

    @staticmethod
    def _last_signal(record: WorkerRecord) -> float:
        if record.last_heartbeat_at is not None:
            return record.last_heartbeat_at
        return record.started_at
