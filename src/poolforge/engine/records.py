"""Worker records and pool status types.

``WorkerRecord`` is frozen: the ``PoolManager`` replaces records rather than
mutating them, so any snapshot handed out stays consistent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkerState(Enum):
    """Lifecycle of a single worker: STARTING -> READY -> DRAINING -> DEAD."""

    STARTING = "starting"
    READY = "ready"
    DRAINING = "draining"
    DEAD = "dead"


class PoolPhase(Enum):
    """Pool-wide operation currently in effect."""

    STOPPED = "stopped"
    RUNNING = "running"
    RELOADING = "reloading"
    STOPPING = "stopping"


class Liveness(Enum):
    """Health Monitor classification of a worker."""

    HEALTHY = "healthy"
    STALLED = "stalled"
    DEAD = "dead"


@dataclass(frozen=True)
class ExitRecord:
    """One observed worker exit.

    Attributes:
        code: Process exit code, or None when unknown (hung or never started).
        at: Monotonic time the exit was recorded.
        reason: ``"crash"``, ``"heartbeat-timeout"``, ``"start-timeout"``,
            ``"spawn-failed"``, ``"drained"`` or ``"forced-kill"``.
    """

    code: int | None
    at: float
    reason: str

    @property
    def is_crash(self) -> bool:
        return self.reason not in ("drained", "forced-kill")


@dataclass(frozen=True)
class WorkerRecord:
    """Pool Manager bookkeeping for one worker process.

    A respawned worker gets a new ``id`` but keeps the ``slot`` of the worker
    it replaces, together with its crash accounting and exit history.

    Attributes:
        id: Worker id, unique within the pool.
        state: Current lifecycle state.
        started_at: Monotonic spawn time.
        slot: Restart lineage this worker belongs to.
        generation: Pool generation (incremented by each reload).
        handle: Opaque process handle. Always None in snapshots.
        pid: OS process id, if known.
        last_heartbeat_at: Last heartbeat or completed request.
        ready_at: Time the worker became READY.
        consecutive_crashes: Crashes since the slot last stayed READY for a
            full restart window.
        crash_times: Crash timestamps inside the current restart window.
        exit_history: Most recent exits of this slot, oldest first.
        drain_deadline: Force-kill deadline while DRAINING.
        respawn_at: Scheduled respawn time while DEAD.
        forced_kill: True once a DRAINING worker has been force-killed.
    """

    id: int
    state: WorkerState
    started_at: float
    slot: int
    generation: int = 1
    handle: Any = field(default=None, repr=False, compare=False)
    pid: int | None = None
    last_heartbeat_at: float | None = None
    ready_at: float | None = None
    consecutive_crashes: int = 0
    crash_times: tuple[float, ...] = ()
    exit_history: tuple[ExitRecord, ...] = ()
    drain_deadline: float | None = None
    respawn_at: float | None = None
    forced_kill: bool = False

    @property
    def is_active(self) -> bool:
        """Return True for STARTING and READY workers."""
        return self.state in (WorkerState.STARTING, WorkerState.READY)

    @property
    def respawn_pending(self) -> bool:
        return self.state is WorkerState.DEAD and self.respawn_at is not None

    @property
    def restart_count(self) -> int:
        """Number of crashes remembered for this slot."""
        return sum(1 for e in self.exit_history if e.is_crash)

    def uptime(self, now: float) -> float:
        if self.state is WorkerState.DEAD:
            return 0.0
        return max(0.0, now - self.started_at)

    def to_dict(self, now: float) -> dict[str, Any]:
        last_exit = self.exit_history[-1] if self.exit_history else None
        return {
            "id": self.id,
            "slot": self.slot,
            "generation": self.generation,
            "pid": self.pid,
            "state": self.state.value,
            "uptime": round(self.uptime(now), 3),
            "consecutive_crashes": self.consecutive_crashes,
            "restarts": self.restart_count,
            "last_exit_code": last_exit.code if last_exit else None,
            "last_exit_reason": last_exit.reason if last_exit else None,
            "respawn_in": (
                round(max(0.0, self.respawn_at - now), 3)
                if self.respawn_at is not None
                else None
            ),
            "forced_kill": self.forced_kill,
        }


@dataclass(frozen=True)
class DegradedSlot:
    """A slot halted by the crash-loop breaker.

    Attributes:
        slot: The halted restart lineage.
        worker_id: Id of the last worker that ran in the slot.
        crashes: Crashes counted inside the restart window.
        last_exit_code: Exit code of the final crash.
        halted_at: Monotonic time the slot was halted.
        reload_replacement: The slot was an extra worker started by a
            reload; it does not reduce the pool's target size.
    """

    slot: int
    worker_id: int
    crashes: int
    last_exit_code: int | None
    halted_at: float
    reload_replacement: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "worker_id": self.worker_id,
            "crashes": self.crashes,
            "last_exit_code": self.last_exit_code,
            "reload_replacement": self.reload_replacement,
        }


@dataclass(frozen=True)
class PoolStatus:
    """Point-in-time view of the whole pool, as reported by ``status``.

    Attributes:
        phase: Pool-wide phase.
        desired_worker_count: Current target size.
        workers: Snapshot of all worker records, in spawn order.
        degraded: Slots halted by the crash-loop breaker.
        forced_kills: Total force-killed draining workers since start.
        deferred_commands: Operator commands queued behind an operation.
        generation: Current pool generation.
        taken_at: Monotonic time of the snapshot.
        liveness: Health Monitor classification by worker id.
        dispatch: Dispatch counters and latency, when available.
    """

    phase: PoolPhase
    desired_worker_count: int
    workers: tuple[WorkerRecord, ...]
    degraded: tuple[DegradedSlot, ...]
    forced_kills: int
    deferred_commands: int
    generation: int
    taken_at: float
    liveness: dict[int, Liveness] = field(default_factory=dict)
    dispatch: dict[str, Any] | None = None

    def count(self, state: WorkerState) -> int:
        return sum(1 for w in self.workers if w.state is state)

    @property
    def ready_count(self) -> int:
        return self.count(WorkerState.READY)

    @property
    def pending_respawns(self) -> int:
        return sum(1 for w in self.workers if w.respawn_pending)

    @property
    def is_degraded(self) -> bool:
        return bool(self.degraded)

    def to_dict(self) -> dict[str, Any]:
        """Render as JSON-compatible data for the control endpoint."""
        workers = []
        for w in self.workers:
            data = w.to_dict(self.taken_at)
            liveness = self.liveness.get(w.id)
            data["health"] = liveness.value if liveness is not None else None
            workers.append(data)
        return {
            "phase": self.phase.value,
            "desired_workers": self.desired_worker_count,
            "ready_workers": self.ready_count,
            "pending_respawns": self.pending_respawns,
            "generation": self.generation,
            "forced_kills": self.forced_kills,
            "deferred_commands": self.deferred_commands,
            "degraded": [d.to_dict() for d in self.degraded],
            "workers": workers,
            "dispatch": self.dispatch,
        }
