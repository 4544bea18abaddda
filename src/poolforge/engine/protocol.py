"""Protocol types for inter-process communication between supervisor and workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

# Exit code of a worker whose handler could not be loaded.
WORKER_BOOT_ERROR = 3


@dataclass(frozen=True)
class WorkRequest:
    """Request sent from the supervisor to one worker's inbox.

    Attributes:
        request_id: Supervisor-assigned id, echoed back in the reply.
        payload: Opaque request body.
    """

    request_id: int
    payload: bytes


@dataclass(frozen=True)
class WorkerShutdown:
    """Ask a worker to stop taking requests, finish in-flight ones and exit."""


@dataclass(frozen=True)
class WorkerMessage:
    """Message sent from a worker to the shared supervisor outbox.

    Attributes:
        kind: "ready" once booted, "heartbeat" every heartbeat interval,
            "response" with a handler result, "failure" if the handler raised.
        worker_id: Identifier of the sending worker.
        request_id: Request being answered. Only for response/failure.
        payload: Response body. Only for response.
        error: Error description. Only for failure.
        pid: OS process id of the sender.
    """

    kind: Literal["ready", "heartbeat", "response", "failure"]
    worker_id: int
    request_id: int = 0
    payload: bytes = b""
    error: str | None = None
    pid: int = 0
