"""Shared test fixtures for PoolForge test suite."""

from __future__ import annotations

import asyncio
import queue
import socket
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pytest
from aiohttp import web

from poolforge._internal.config import PoolConfig, PoolForgeConfig, ServerConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from poolforge.engine.protocol import WorkRequest


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


# =============================================================================
# Network utilities
# =============================================================================


def _get_free_port() -> int:
    """Find an available port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


@pytest.fixture
def free_port() -> Callable[[], int]:
    return _get_free_port


# =============================================================================
# Fakes for the pool state machine
# =============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@dataclass
class FakeHandle:
    worker_id: int
    pid: int


@dataclass
class FakeLauncher:
    """Records every process operation instead of performing it."""

    fail_spawn: bool = False
    spawned: list[int] = field(default_factory=list)
    stop_requests: list[int] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)
    sent: list[tuple[int, WorkRequest]] = field(default_factory=list)
    exits: list[tuple[int, int | None]] = field(default_factory=list)
    outbox: queue.Queue[Any] = field(default_factory=queue.Queue)
    closed: bool = False

    def spawn(self, worker_id: int) -> FakeHandle:
        if self.fail_spawn:
            msg = "fork failed"
            raise OSError(msg)
        self.spawned.append(worker_id)
        return FakeHandle(worker_id=worker_id, pid=10_000 + worker_id)

    def send(self, worker_id: int, request: WorkRequest) -> None:
        self.sent.append((worker_id, request))

    def request_stop(self, handle: FakeHandle | None) -> None:
        if handle is not None:
            self.stop_requests.append(handle.worker_id)

    def kill(self, handle: FakeHandle | None) -> None:
        if handle is not None:
            self.killed.append(handle.worker_id)

    def poll_exits(self) -> list[tuple[int, int | None]]:
        exited, self.exits = self.exits, []
        return exited

    def close(self, timeout: float = 2.0) -> None:
        self.closed = True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def make_pool_config() -> Callable[..., PoolConfig]:
    """Factory for PoolConfig with small, test-friendly defaults."""

    def _make(**overrides: Any) -> PoolConfig:
        values: dict[str, Any] = {
            "desired_worker_count": 2,
            "heartbeat_interval": 1.0,
            "heartbeat_timeout": 5.0,
            "max_restarts_per_window": 3,
            "restart_window_duration": 60.0,
            "graceful_shutdown_timeout": 10.0,
            "backoff_base": 0.5,
            "backoff_max": 30.0,
        }
        values.update(overrides)
        return PoolConfig(**values)

    return _make


# =============================================================================
# Handlers for real worker processes
# =============================================================================

_HANDLER_CODE = '''\
from __future__ import annotations

import os
import time


def handle(payload: bytes) -> bytes:
    if payload == b"crash":
        os._exit(7)
    if payload == b"fail":
        raise ValueError("handler refused payload")
    if payload.startswith(b"sleep:"):
        time.sleep(float(payload[6:]))
        return b"slept"
    if payload == b"pid":
        return str(os.getpid()).encode()
    return b"echo:" + payload


async def handle_async(payload: bytes) -> str:
    return "async:" + payload.decode()


async def hang(payload: bytes) -> bytes:
    # Blocks the worker's event loop, so heartbeats stop too.
    time.sleep(float(payload))
    return b"woke"


def broken(payload: bytes) -> bytes:
    raise SystemExit(3)


NOT_CALLABLE = 42
'''


@pytest.fixture
def handler_file(tmp_path: Path) -> Path:
    """Handler module used by worker processes in integration tests.

    ``handle`` echoes, ``b"crash"`` kills the worker, ``b"fail"`` raises,
    ``b"sleep:<s>"`` blocks and ``b"pid"`` returns the worker pid.
    """
    path = tmp_path / "test_handlers.py"
    path.write_text(_HANDLER_CODE)
    return path


@pytest.fixture
def make_config(handler_file: Path, make_pool_config: Callable[..., PoolConfig]):
    """Factory for a full PoolForgeConfig pointing at ``handler_file``."""

    def _make(attribute: str = "handle", **pool_overrides: Any) -> PoolForgeConfig:
        pool_values: dict[str, Any] = {
            "heartbeat_interval": 0.2,
            "heartbeat_timeout": 2.0,
            "graceful_shutdown_timeout": 3.0,
            "backoff_base": 0.1,
            "backoff_max": 1.0,
        }
        pool_values.update(pool_overrides)
        return PoolForgeConfig(
            pool=make_pool_config(**pool_values),
            server=ServerConfig(
                handler=f"{handler_file}:{attribute}",
                port=_get_free_port(),
                control_port=_get_free_port(),
                backlog_limit=4,
                max_inflight_per_worker=4,
                request_timeout=10.0,
            ),
        )

    return _make


# =============================================================================
# Sync fake control endpoint for CLI tests
# =============================================================================


_STATUS_REPLY: dict[str, Any] = {
    "phase": "running",
    "desired_workers": 2,
    "ready_workers": 1,
    "pending_respawns": 1,
    "generation": 1,
    "forced_kills": 0,
    "deferred_commands": 0,
    "degraded": [{"slot": 3, "worker_id": 5, "crashes": 4, "last_exit_code": 1}],
    "workers": [
        {
            "id": 1,
            "slot": 1,
            "generation": 1,
            "pid": 4242,
            "state": "ready",
            "uptime": 125.0,
            "consecutive_crashes": 0,
            "restarts": 0,
            "last_exit_code": None,
            "last_exit_reason": None,
            "respawn_in": None,
            "forced_kill": False,
            "health": "healthy",
        },
        {
            "id": 4,
            "slot": 2,
            "generation": 1,
            "pid": None,
            "state": "dead",
            "uptime": 0.0,
            "consecutive_crashes": 1,
            "restarts": 1,
            "last_exit_code": 1,
            "last_exit_reason": "crash",
            "respawn_in": 0.4,
            "forced_kill": False,
            "health": "dead",
        },
    ],
    "dispatch": {
        "dispatched": 10,
        "completed": 9,
        "failed": 1,
        "rejected": 0,
        "timed_out": 0,
        "backlog": 0,
        "inflight": 0,
        "latency_p50_ms": 1.5,
        "latency_p95_ms": 3.0,
        "latency_p99_ms": 4.25,
    },
}


@dataclass
class FakeControl:
    """A control endpoint that records calls and returns canned replies."""

    url: str
    calls: list[tuple[str, Any]] = field(default_factory=list)
    stop_exit_code: int = 0


def _create_control_app(state: FakeControl) -> web.Application:
    async def _status(request: web.Request) -> web.Response:
        state.calls.append(("status", None))
        return web.json_response(_STATUS_REPLY)

    async def _command(request: web.Request) -> web.Response:
        name = request.path.strip("/")
        body = await request.json() if request.can_read_body else None
        state.calls.append((name, body))
        reply: dict[str, Any] = {"ok": True, "message": f"{name} applied", "deferred": False, "errors": []}
        if name == "stop":
            reply["exit_code"] = state.stop_exit_code
        if name == "scale" and body["workers"] > 100:
            reply = {"ok": False, "message": "too many workers", "deferred": False, "errors": []}
            return web.json_response(reply, status=400)
        return web.json_response(reply)

    app = web.Application()
    app.router.add_get("/status", _status)
    for name in ("start", "stop", "restart", "scale"):
        app.router.add_post(f"/{name}", _command)
    return app


@pytest.fixture
def fake_control() -> Iterator[FakeControl]:
    """Control endpoint running in a background thread for CLI tests."""
    port = _get_free_port()
    state = FakeControl(url=f"http://127.0.0.1:{port}")
    started = threading.Event()
    loop_holder: list[asyncio.AbstractEventLoop] = []

    def _thread_target() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        runner = web.AppRunner(_create_control_app(state))
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, "127.0.0.1", port)
        loop.run_until_complete(site.start())
        loop_holder.append(loop)
        started.set()
        loop.run_forever()
        loop.run_until_complete(runner.cleanup())
        loop.close()

    thread = threading.Thread(target=_thread_target, daemon=True)
    thread.start()
    started.wait(timeout=5.0)

    yield state

    if loop_holder:
        loop_holder[0].call_soon_threadsafe(loop_holder[0].stop)
    thread.join(timeout=5.0)
