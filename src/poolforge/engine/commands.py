"""Commands and events consumed by the pool's single control queue.

Operator commands (``Start``, ``Stop``, ``Restart``, ``Scale``, ``ScaleBy``,
``Reload``) and worker-originated events (``WorkerExited``,
``HeartbeatMissed``, ``WorkerReady``, ``Heartbeat``) share one queue, so
they are applied one at a time in arrival order. ``Tick`` drives timers:
respawn backoff, drain deadlines and crash-count resets.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from poolforge._internal.errors import PoolForgeError


@dataclass(frozen=True)
class Start:
    """Bring the pool to its desired size. Idempotent while running."""


@dataclass(frozen=True)
class Stop:
    """Drain and terminate every worker."""


@dataclass(frozen=True)
class Restart:
    """Operator restart; performed as a rolling ``Reload``."""


@dataclass(frozen=True)
class Reload:
    """Replace every worker one at a time without losing capacity."""


@dataclass(frozen=True)
class Scale:
    """Set the desired worker count.

    Attributes:
        n: New desired worker count.
    """

    n: int


@dataclass(frozen=True)
class ScaleBy:
    """Change the desired worker count relative to its value when applied.

    Attributes:
        delta: Workers to add (positive) or remove (negative).
    """

    delta: int


@dataclass(frozen=True)
class WorkerExited:
    """A worker process exited.

    Attributes:
        worker_id: Id of the exited worker.
        code: Process exit code (negative for a signal), None if unknown.
    """

    worker_id: int
    code: int | None


@dataclass(frozen=True)
class HeartbeatMissed:
    """A worker produced no heartbeat or response within the timeout."""

    worker_id: int


@dataclass(frozen=True)
class WorkerReady:
    """A worker finished booting and can accept requests."""

    worker_id: int
    pid: int | None = None


@dataclass(frozen=True)
class Heartbeat:
    """A worker is alive (heartbeat or completed request)."""

    worker_id: int


@dataclass(frozen=True)
class Tick:
    """Periodic timer event."""


ControlCommand = (
    Start
    | Stop
    | Restart
    | Reload
    | Scale
    | ScaleBy
    | WorkerExited
    | HeartbeatMissed
    | WorkerReady
    | Heartbeat
    | Tick
)

# Commands that wait behind an in-flight Reload or Stop instead of interleaving.
OPERATOR_COMMANDS = (Start, Stop, Restart, Reload, Scale, ScaleBy)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of applying one command.

    Attributes:
        ok: False if the command was rejected.
        message: Human-readable summary.
        deferred: True if the command was queued behind an operation in
            progress and will be applied once it completes.
        errors: Non-fatal errors raised while applying, such as
            ``CrashLoopDetected``.
    """

    ok: bool
    message: str = ""
    deferred: bool = False
    errors: tuple[PoolForgeError, ...] = field(default=())

    def to_dict(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "message": self.message,
            "deferred": self.deferred,
            "errors": [f"{type(e).__name__}: {e}" for e in self.errors],
        }
