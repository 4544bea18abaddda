"""Custom exception hierarchy for PoolForge."""

from __future__ import annotations


class PoolForgeError(Exception):
    """Base exception for all PoolForge errors.

    All custom exceptions in PoolForge inherit from this class, making it
    easy to catch any PoolForge-specific error with a single except clause.
    """


class ConfigError(PoolForgeError):
    """Raised when configuration is invalid or missing.

    Fatal at startup. Examples:
        - An environment variable has an unparsable value.
        - ``heartbeat_timeout`` is not greater than ``heartbeat_interval``.
        - The config file cannot be read or is not valid TOML.
    """


class BindFailure(PoolForgeError):
    """Raised when the shared listening endpoint cannot be acquired.

    Fatal at startup.
    """


class HandlerError(PoolForgeError):
    """Raised when a handler spec cannot be resolved to a callable."""


class WorkerCrash(PoolForgeError):
    """Raised to a dispatch caller whose request was lost.

    The worker serving the request died, was killed, or could not be
    reached.

    Attributes:
        worker_id: Worker that was serving the request, if known.
    """

    def __init__(self, message: str, worker_id: int | None = None) -> None:
        super().__init__(message)
        self.worker_id = worker_id


class WorkerTimeout(WorkerCrash):
    """A worker stopped heartbeating and was treated as crashed."""


class RequestFailed(PoolForgeError):
    """Raised to a dispatch caller when the handler raised for its request.

    The worker itself stays alive.

    Attributes:
        worker_id: Worker whose handler failed.
    """

    def __init__(self, message: str, worker_id: int | None = None) -> None:
        super().__init__(message)
        self.worker_id = worker_id


class CrashLoopDetected(PoolForgeError):
    """A worker slot exceeded its restart budget and will not be respawned.

    Never fatal: the pool keeps serving at reduced capacity.
    """


class NoCapacity(PoolForgeError):
    """Raised by dispatch when no worker is Ready and the backlog is full.

    Retryable.

    Attributes:
        retry_after: Suggested seconds to wait before retrying.
    """

    def __init__(self, message: str, retry_after: float = 1.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ControlError(PoolForgeError):
    """Raised when the control endpoint is unreachable or rejects a command."""
