"""Pool Manager: the single owner and mutator of worker pool state."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Protocol

from poolforge._internal.errors import CrashLoopDetected, WorkerCrash, WorkerTimeout
from poolforge._internal.logging import get_logger
from poolforge.engine.backoff import BackoffPolicy, exceeds_budget, register_crash
from poolforge.engine.commands import (
    OPERATOR_COMMANDS,
    CommandResult,
    Heartbeat,
    HeartbeatMissed,
    Reload,
    Restart,
    Scale,
    ScaleBy,
    Start,
    Stop,
    Tick,
    WorkerExited,
    WorkerReady,
)
from poolforge.engine.records import (
    DegradedSlot,
    ExitRecord,
    PoolPhase,
    PoolStatus,
    WorkerRecord,
    WorkerState,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from poolforge._internal.config import PoolConfig
    from poolforge._internal.errors import PoolForgeError
    from poolforge._internal.types import Clock
    from poolforge.engine.commands import ControlCommand

logger = get_logger("engine.pool")


class WorkerLauncher(Protocol):
    """Process operations the Pool Manager needs."""

    def spawn(self, worker_id: int) -> Any: ...

    def request_stop(self, handle: Any) -> None: ...

    def kill(self, handle: Any) -> None: ...


class RoutingTable(Protocol):
    """The Dispatcher's view, updated by the Pool Manager."""

    def set_ready(self, worker_ids: Sequence[int]) -> None: ...

    def worker_lost(self, worker_id: int, error: WorkerCrash) -> None: ...


class _NullRoutes:
    def set_ready(self, worker_ids: Sequence[int]) -> None:
        pass

    def worker_lost(self, worker_id: int, error: WorkerCrash) -> None:
        pass


class PoolManager:
    """Owns the set of ``WorkerRecord`` objects and applies commands to it.

    Every state change goes through ``apply()``, which the supervisor calls
    from a single control loop, one command at a time. Process operations
    are delegated to a ``WorkerLauncher``; the Dispatcher's routing table is
    refreshed after every command.

    Operator commands that arrive while a Reload or Stop is in progress are
    deferred and applied in order once it completes.

    Attributes:
        config: Current pool configuration. ``Scale`` replaces it with a copy
            carrying the new desired worker count.
    """

    def __init__(
        self,
        config: PoolConfig,
        launcher: WorkerLauncher,
        *,
        routes: RoutingTable | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize an empty, stopped pool.

        Args:
            config: Pool configuration.
            launcher: Spawns, stops and kills worker processes.
            routes: Routing table to keep in sync with READY workers.
            clock: Monotonic clock, injectable for tests.
        """
        self.config = config
        self._launcher = launcher
        self._routes: RoutingTable = routes or _NullRoutes()
        self._clock = clock
        self._backoff = BackoffPolicy.from_config(config)

        self._phase = PoolPhase.STOPPED
        self._records: dict[int, WorkerRecord] = {}
        self._degraded: list[DegradedSlot] = []
        self._deferred: deque[ControlCommand] = deque()
        self._next_id = 1
        self._next_slot = 1
        self._generation = 1

        self._reload_pending: list[int] = []
        self._reload_slot: int | None = None

        self._forced_kills = 0
        self._stop_forced_kills = 0

        self._handlers: dict[type, Callable[[Any], CommandResult]] = {
            Start: self._on_start,
            Stop: self._on_stop,
            Restart: self._on_reload,
            Reload: self._on_reload,
            Scale: self._on_scale,
            ScaleBy: self._on_scale_by,
            WorkerExited: self._on_worker_exited,
            HeartbeatMissed: self._on_heartbeat_missed,
            WorkerReady: self._on_worker_ready,
            Heartbeat: self._on_heartbeat,
            Tick: self._on_tick,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def phase(self) -> PoolPhase:
        return self._phase

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    @property
    def stop_exit_code(self) -> int:
        """0 if the last Stop drained every worker cleanly, 1 otherwise."""
        return 1 if self._stop_forced_kills else 0

    def apply(self, command: ControlCommand) -> CommandResult:
        """Apply one command or event to the pool.

        Args:
            command: The command to apply.

        Returns:
            CommandResult describing the outcome. Operator commands that
            arrive during a Reload or Stop return ``deferred=True``.
        """
        if isinstance(command, OPERATOR_COMMANDS) and self._busy():
            self._deferred.append(command)
            logger.info(
                "%s deferred until %s completes",
                type(command).__name__,
                self._phase.value,
            )
            return CommandResult(
                ok=True,
                deferred=True,
                message=f"queued behind {self._phase.value}",
            )

        result = self._apply_now(command)
        self._settle()
        return result

    def snapshot(self) -> tuple[WorkerRecord, ...]:
        """Return a read-only copy of all worker records in spawn order."""
        return tuple(replace(r, handle=None) for r in self._records.values())

    def status(self) -> PoolStatus:
        """Return the pool status without dispatch or liveness details."""
        return PoolStatus(
            phase=self._phase,
            desired_worker_count=self.config.desired_worker_count,
            workers=self.snapshot(),
            degraded=tuple(self._degraded),
            forced_kills=self._forced_kills,
            deferred_commands=len(self._deferred),
            generation=self._generation,
            taken_at=self._clock(),
        )

    def is_settled(self) -> bool:
        """Return True when no operation, transition or timer is pending."""
        if self._deferred:
            return False
        if self._phase is PoolPhase.STOPPED:
            return not self._records
        if self._phase is not PoolPhase.RUNNING:
            return False
        if any(r.state is not WorkerState.READY for r in self._records.values()):
            return False
        return len(self._records) == self._target()

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    def _apply_now(self, command: ControlCommand) -> CommandResult:
        handler = self._handlers.get(type(command))
        if handler is None:
            msg = f"Unknown command: {command!r}"
            return CommandResult(ok=False, message=msg)
        return handler(command)

    def _on_start(self, _command: Start) -> CommandResult:
        if self._phase is not PoolPhase.STOPPED:
            return CommandResult(ok=True, message="already running")
        self._phase = PoolPhase.RUNNING
        self._degraded.clear()
        self._stop_forced_kills = 0
        logger.info(
            "Starting pool: desired_workers=%d, %s",
            self.config.desired_worker_count,
            self._backoff.describe(),
        )
        return CommandResult(
            ok=True,
            message=f"starting {self.config.desired_worker_count} workers",
        )

    def _on_stop(self, _command: Stop) -> CommandResult:
        if self._phase is PoolPhase.STOPPED:
            return CommandResult(ok=True, message="already stopped")

        self._phase = PoolPhase.STOPPING
        self._stop_forced_kills = 0
        self._reload_pending.clear()
        self._reload_slot = None

        for record in list(self._records.values()):
            if record.state is WorkerState.DEAD:
                self._remove(record.id)
            elif record.is_active:
                self._drain(record)

        logger.info("Stopping pool: draining %d workers", len(self._records))
        return CommandResult(ok=True, message=f"draining {len(self._records)} workers")

    def _on_scale(self, command: Scale) -> CommandResult:
        if command.n < 0:
            return CommandResult(ok=False, message=f"worker count must be >= 0, got {command.n}")

        previous = self.config.desired_worker_count
        self.config = replace(self.config, desired_worker_count=command.n)
        del self._degraded[command.n :]
        logger.info("Scaling pool: %d -> %d workers", previous, command.n)
        return CommandResult(ok=True, message=f"scaling {previous} -> {command.n}")

    def _on_scale_by(self, command: ScaleBy) -> CommandResult:
        return self._on_scale(Scale(max(0, self.config.desired_worker_count + command.delta)))

    def _on_reload(self, command: Reload | Restart) -> CommandResult:
        if self._phase is PoolPhase.STOPPED:
            return self._on_start(Start())

        self._generation += 1
        self._degraded.clear()
        active = sorted(
            (r for r in self._records.values() if r.is_active),
            key=lambda r: r.started_at,
        )
        self._reload_pending = [r.id for r in active]
        self._reload_slot = None
        self._phase = PoolPhase.RELOADING
        logger.info(
            "%s: rolling replacement of %d workers (generation %d)",
            type(command).__name__,
            len(active),
            self._generation,
        )
        return CommandResult(ok=True, message=f"replacing {len(active)} workers")

    def _on_worker_ready(self, event: WorkerReady) -> CommandResult:
        record = self._records.get(event.worker_id)
        if record is None or record.state is WorkerState.DEAD:
            return CommandResult(ok=True, message="stale")
        now = self._clock()
        pid = event.pid if event.pid is not None else record.pid
        if record.state is WorkerState.STARTING:
            self._records[record.id] = replace(
                record,
                state=WorkerState.READY,
                ready_at=now,
                last_heartbeat_at=now,
                pid=pid,
            )
            logger.info("Worker %d ready (pid=%s, slot=%d)", record.id, pid, record.slot)
        else:
            self._records[record.id] = replace(record, last_heartbeat_at=now, pid=pid)
        return CommandResult(ok=True)

    def _on_heartbeat(self, event: Heartbeat) -> CommandResult:
        record = self._records.get(event.worker_id)
        if record is None or record.state is WorkerState.DEAD:
            return CommandResult(ok=True, message="stale")
        if record.state is WorkerState.STARTING:
            return self._on_worker_ready(WorkerReady(record.id))
        self._records[record.id] = replace(record, last_heartbeat_at=self._clock())
        return CommandResult(ok=True)

    def _on_worker_exited(self, event: WorkerExited) -> CommandResult:
        record = self._records.get(event.worker_id)
        if record is None or record.state is WorkerState.DEAD:
            logger.debug("Ignoring exit of retired worker %d", event.worker_id)
            return CommandResult(ok=True, message="stale")

        if record.state is WorkerState.DRAINING:
            reason = "forced-kill" if record.forced_kill else "drained"
            self._routes.worker_lost(
                record.id, WorkerCrash(f"worker {record.id} exited ({reason})", record.id)
            )
            self._remove(record.id)
            logger.info(
                "Worker %d exited after draining (code=%s, %s)",
                record.id,
                event.code,
                reason,
            )
            return CommandResult(ok=True, message=reason)

        error = WorkerCrash(f"worker {record.id} exited with code {event.code}", record.id)
        logger.warning(
            "Worker %d crashed (pid=%s, code=%s, state=%s)",
            record.id,
            record.pid,
            event.code,
            record.state.value,
        )
        return self._crash(record, event.code, "crash", error)

    def _on_heartbeat_missed(self, event: HeartbeatMissed) -> CommandResult:
        record = self._records.get(event.worker_id)
        if record is None or not record.is_active:
            return CommandResult(ok=True, message="stale")
        # A heartbeat queued ahead of this event may have refreshed the worker.
        last_seen = record.last_heartbeat_at or record.started_at
        if self._clock() - last_seen <= self.config.heartbeat_timeout:
            return CommandResult(ok=True, message="stale")

        starting = record.state is WorkerState.STARTING
        reason = "start-timeout" if starting else "heartbeat-timeout"
        logger.warning(
            "Worker %d %s after %.1fs; killing (pid=%s)",
            record.id,
            "never became ready" if starting else "missed heartbeats",
            self.config.heartbeat_timeout,
            record.pid,
        )
        self._launcher.kill(record.handle)
        error = WorkerTimeout(f"worker {record.id} {reason}", record.id)
        return self._crash(record, None, reason, error)

    def _on_tick(self, _event: Tick) -> CommandResult:
        now = self._clock()
        window = self.config.restart_window_duration

        for record in list(self._records.values()):
            if record.respawn_pending and record.respawn_at is not None and record.respawn_at <= now:
                self._remove(record.id)
                if self._phase in (PoolPhase.RUNNING, PoolPhase.RELOADING):
                    logger.info(
                        "Respawning slot %d (crash %d)",
                        record.slot,
                        record.consecutive_crashes,
                    )
                    self._spawn(lineage=record)
            elif (
                record.state is WorkerState.DRAINING
                and not record.forced_kill
                and record.drain_deadline is not None
                and record.drain_deadline <= now
            ):
                logger.warning(
                    "Worker %d still running %.1fs after drain; force-killing (pid=%s)",
                    record.id,
                    self.config.graceful_shutdown_timeout,
                    record.pid,
                )
                self._launcher.kill(record.handle)
                self._records[record.id] = replace(record, forced_kill=True)
                self._forced_kills += 1
                if self._phase is PoolPhase.STOPPING:
                    self._stop_forced_kills += 1
            elif (
                record.state is WorkerState.READY
                and (record.consecutive_crashes or record.crash_times)
                and record.ready_at is not None
                and now - record.ready_at >= window
            ):
                logger.info(
                    "Worker %d stable for %.0fs; crash count reset", record.id, window
                )
                self._records[record.id] = replace(
                    record, consecutive_crashes=0, crash_times=()
                )
        return CommandResult(ok=True)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _spawn(self, lineage: WorkerRecord | None = None) -> WorkerRecord:
        """Launch a new worker in STARTING, inheriting a slot's history."""
        now = self._clock()
        worker_id = self._next_id
        self._next_id += 1

        if lineage is None:
            slot = self._next_slot
            self._next_slot += 1
            inherited: dict[str, Any] = {}
        else:
            slot = lineage.slot
            inherited = {
                "consecutive_crashes": lineage.consecutive_crashes,
                "crash_times": lineage.crash_times,
                "exit_history": lineage.exit_history,
            }

        record = WorkerRecord(
            id=worker_id,
            state=WorkerState.STARTING,
            started_at=now,
            slot=slot,
            generation=self._generation,
            **inherited,
        )
        self._records[worker_id] = record

        try:
            handle = self._launcher.spawn(worker_id)
        except OSError as exc:
            logger.exception("Failed to spawn worker %d", worker_id)
            self._crash(record, None, "spawn-failed", WorkerCrash(str(exc), worker_id))
            return self._records.get(worker_id, record)

        record = replace(record, handle=handle, pid=getattr(handle, "pid", None))
        self._records[worker_id] = record
        logger.debug("Spawned worker %d (slot=%d, pid=%s)", worker_id, slot, record.pid)
        return record

    def _drain(self, record: WorkerRecord) -> None:
        deadline = self._clock() + self.config.graceful_shutdown_timeout
        self._records[record.id] = replace(
            record, state=WorkerState.DRAINING, drain_deadline=deadline
        )
        self._launcher.request_stop(record.handle)
        logger.info("Worker %d draining (pid=%s)", record.id, record.pid)

    def _crash(
        self,
        record: WorkerRecord,
        code: int | None,
        reason: str,
        error: WorkerCrash,
    ) -> CommandResult:
        """Move a worker to DEAD and apply the restart policy."""
        now = self._clock()
        history = (*record.exit_history, ExitRecord(code, now, reason))
        history = history[-self.config.exit_history_size :]
        crash_times = register_crash(
            record.crash_times, now, self.config.restart_window_duration
        )
        crashes = record.consecutive_crashes + 1

        self._routes.worker_lost(record.id, error)

        if self._phase in (PoolPhase.STOPPING, PoolPhase.STOPPED):
            self._remove(record.id)
            return CommandResult(ok=True, message="exited while stopping")

        if exceeds_budget(crash_times, self.config.max_restarts_per_window):
            self._remove(record.id)
            self._degraded.append(
                DegradedSlot(
                    slot=record.slot,
                    worker_id=record.id,
                    crashes=len(crash_times),
                    last_exit_code=code,
                    halted_at=now,
                    reload_replacement=(
                        self._phase is PoolPhase.RELOADING and record.slot == self._reload_slot
                    ),
                )
            )
            loop_error = CrashLoopDetected(
                f"slot {record.slot} crashed {len(crash_times)} times in "
                f"{self.config.restart_window_duration:.0f}s; not respawning"
            )
            logger.error("Crash loop detected: %s (pool degraded)", loop_error)
            return CommandResult(
                ok=True,
                message=str(loop_error),
                errors=(error, loop_error),
            )

        delay = self._backoff.delay(crashes)
        self._records[record.id] = replace(
            record,
            state=WorkerState.DEAD,
            consecutive_crashes=crashes,
            crash_times=crash_times,
            exit_history=history,
            respawn_at=now + delay,
            drain_deadline=None,
        )
        logger.info(
            "Worker %d will respawn in %.2fs (slot=%d, consecutive_crashes=%d)",
            record.id,
            delay,
            record.slot,
            crashes,
        )
        return CommandResult(ok=True, message=f"respawn in {delay:.2f}s", errors=(error,))

    def _remove(self, worker_id: int) -> None:
        self._records.pop(worker_id, None)

    # ------------------------------------------------------------------
    # Convergence
    # ------------------------------------------------------------------

    def _busy(self) -> bool:
        return self._phase in (PoolPhase.RELOADING, PoolPhase.STOPPING)

    def _target(self) -> int:
        halted = sum(1 for d in self._degraded if not d.reload_replacement)
        return max(0, self.config.desired_worker_count - halted)

    def _settle(self) -> None:
        """Drive the pool toward its target, then run deferred commands."""
        while True:
            if self._phase is PoolPhase.STOPPING and not self._records:
                self._phase = PoolPhase.STOPPED
                logger.info(
                    "Pool stopped (forced_kills=%d)",
                    self._stop_forced_kills,
                )
            if self._phase is PoolPhase.RELOADING:
                self._advance_reload()
            if self._phase is PoolPhase.RUNNING:
                self._converge()

            self._publish_routes()

            if self._busy() or not self._deferred:
                return
            command = self._deferred.popleft()
            result = self._apply_now(command)
            logger.info(
                "Applied deferred %s: %s",
                type(command).__name__,
                result.message,
            )

    def _converge(self) -> None:
        target = self._target()
        active = [r for r in self._records.values() if r.is_active]
        pending = [r for r in self._records.values() if r.respawn_pending]
        excess = len(active) + len(pending) - target

        if excess > 0:
            for record in reversed(pending):
                if excess == 0:
                    break
                self._remove(record.id)
                excess -= 1
            for record in sorted(active, key=lambda r: r.started_at)[:excess]:
                self._drain(record)
        elif excess < 0:
            for _ in range(-excess):
                self._spawn()

    def _advance_reload(self) -> None:
        while self._phase is PoolPhase.RELOADING:
            self._reload_pending = [
                wid
                for wid in self._reload_pending
                if wid in self._records and self._records[wid].is_active
            ]

            if self._reload_slot is None:
                if not self._reload_pending:
                    self._phase = PoolPhase.RUNNING
                    logger.info("Reload complete (generation %d)", self._generation)
                    return
                replacement = self._spawn()
                self._reload_slot = replacement.slot
                continue

            replacement = self._slot_record(self._reload_slot)
            if replacement is None:
                logger.error(
                    "Reload aborted: replacement slot %d halted; %d old workers kept",
                    self._reload_slot,
                    len(self._reload_pending),
                )
                self._reload_pending.clear()
                self._reload_slot = None
                self._phase = PoolPhase.RUNNING
                return
            if replacement.state is not WorkerState.READY:
                return

            if self._reload_pending:
                old = self._records[self._reload_pending.pop(0)]
                self._drain(old)
            self._reload_slot = None

    def _slot_record(self, slot: int) -> WorkerRecord | None:
        for record in self._records.values():
            if record.slot == slot and record.state is not WorkerState.DRAINING:
                return record
        return None

    def _publish_routes(self) -> None:
        self._routes.set_ready(
            [r.id for r in self._records.values() if r.state is WorkerState.READY]
        )
