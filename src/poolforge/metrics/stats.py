"""Dispatch counters reported by ``status``."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from poolforge.metrics.histogram import LatencyHistogram

_PERCENTILES = (50.0, 95.0, 99.0)


@dataclass
class DispatchStats:
    """Counters for requests flowing through the Dispatcher.

    Only touched from the supervisor's event loop thread.

    Attributes:
        dispatched: Requests handed to a worker.
        completed: Requests answered by a worker.
        failed: Requests that ended in a handler failure or lost worker.
        rejected: Requests refused with ``NoCapacity``.
        timed_out: Requests abandoned by the caller's timeout.
        per_worker: Requests dispatched per live worker id.
    """

    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    rejected: int = 0
    timed_out: int = 0
    per_worker: dict[int, int] = field(default_factory=lambda: defaultdict(int))
    latency: LatencyHistogram = field(default_factory=LatencyHistogram)

    def record_dispatch(self, worker_id: int) -> None:
        self.dispatched += 1
        self.per_worker[worker_id] += 1

    def forget_worker(self, worker_id: int) -> None:
        self.per_worker.pop(worker_id, None)

    def record_completion(self, latency_ms: float) -> None:
        self.completed += 1
        self.latency.record_ms(latency_ms)

    def to_dict(self, backlog: int = 0, inflight: int = 0) -> dict[str, object]:
        data: dict[str, object] = {
            "dispatched": self.dispatched,
            "completed": self.completed,
            "failed": self.failed,
            "rejected": self.rejected,
            "timed_out": self.timed_out,
            "backlog": backlog,
            "inflight": inflight,
        }
        for p in _PERCENTILES:
            data[f"latency_p{p:g}_ms"] = round(self.latency.percentile(p), 3)
        return data
