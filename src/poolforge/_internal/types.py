"""Shared type aliases for PoolForge."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

# Opaque request/response body carried between dispatcher and worker.
Payload = bytes

# Monotonic clock used by the pool, health monitor and dispatcher.
Clock = Callable[[], float]

# External handler: request payload in, response payload out.
Handler = Callable[[Payload], Payload] | Callable[[Payload], Awaitable[Payload]]
