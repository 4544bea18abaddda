"""PoolForge: supervise a pool of worker processes behind one endpoint."""

from __future__ import annotations

from poolforge._internal.config import PoolConfig, PoolForgeConfig, ServerConfig, load_config
from poolforge._internal.errors import (
    BindFailure,
    ConfigError,
    CrashLoopDetected,
    NoCapacity,
    PoolForgeError,
    RequestFailed,
    WorkerCrash,
)
from poolforge.engine.commands import CommandResult, Reload, Restart, Scale, ScaleBy, Start, Stop
from poolforge.engine.records import PoolPhase, PoolStatus, WorkerState
from poolforge.engine.supervisor import Supervisor

__version__ = "0.1.0"

__all__ = [
    "BindFailure",
    "CommandResult",
    "ConfigError",
    "CrashLoopDetected",
    "NoCapacity",
    "PoolConfig",
    "PoolForgeConfig",
    "PoolForgeError",
    "PoolPhase",
    "PoolStatus",
    "Reload",
    "RequestFailed",
    "Restart",
    "Scale",
    "ScaleBy",
    "ServerConfig",
    "Start",
    "Stop",
    "Supervisor",
    "WorkerCrash",
    "WorkerState",
    "load_config",
]
