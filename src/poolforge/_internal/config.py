"""Configuration loading for PoolForge.

Values are layered: built-in defaults, then an optional TOML config file
(``[pool]`` and ``[server]`` tables), then ``POOLFORGE_*`` environment
variables, then explicit overrides (usually CLI flags).
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from poolforge._internal.errors import ConfigError

BACKOFF_STRATEGIES = ("exponential", "linear")

# field name -> environment variable
_POOL_ENV = {
    "desired_worker_count": "POOLFORGE_WORKERS",
    "heartbeat_interval": "POOLFORGE_HEARTBEAT_INTERVAL",
    "heartbeat_timeout": "POOLFORGE_HEARTBEAT_TIMEOUT",
    "max_restarts_per_window": "POOLFORGE_MAX_RESTARTS",
    "restart_window_duration": "POOLFORGE_RESTART_WINDOW",
    "graceful_shutdown_timeout": "POOLFORGE_GRACEFUL_TIMEOUT",
    "backoff_strategy": "POOLFORGE_BACKOFF_STRATEGY",
    "backoff_base": "POOLFORGE_BACKOFF_BASE",
    "backoff_max": "POOLFORGE_BACKOFF_MAX",
    "exit_history_size": "POOLFORGE_EXIT_HISTORY",
}

_SERVER_ENV = {
    "handler": "POOLFORGE_HANDLER",
    "host": "POOLFORGE_HOST",
    "port": "POOLFORGE_PORT",
    "control_host": "POOLFORGE_CONTROL_HOST",
    "control_port": "POOLFORGE_CONTROL_PORT",
    "backlog_limit": "POOLFORGE_BACKLOG",
    "max_inflight_per_worker": "POOLFORGE_MAX_INFLIGHT",
    "request_timeout": "POOLFORGE_REQUEST_TIMEOUT",
}

CONFIG_FILE_ENV = "POOLFORGE_CONFIG"


def _default_worker_count() -> int:
    return os.cpu_count() or 1


@dataclass(frozen=True)
class PoolConfig:
    """Pool sizing, liveness and restart policy. Immutable per pool generation.

    Attributes:
        desired_worker_count: Target number of Ready+Starting workers.
        heartbeat_interval: Seconds between worker heartbeats.
        heartbeat_timeout: Seconds without a heartbeat before a worker is
            considered hung. Must exceed ``heartbeat_interval``.
        max_restarts_per_window: Crashes tolerated inside the window before
            the slot is halted.
        restart_window_duration: Crash accounting window in seconds. A worker
            Ready for this long has its crash count reset.
        graceful_shutdown_timeout: Seconds a Draining worker gets before it
            is force-killed.
        backoff_strategy: ``"exponential"`` or ``"linear"``.
        backoff_base: Respawn delay after the first crash, in seconds.
        backoff_max: Upper bound on the respawn delay, in seconds.
        exit_history_size: Number of exits remembered per worker.

    Raises:
        ConfigError: On construction with invalid values.
    """

    desired_worker_count: int = field(default_factory=_default_worker_count)
    heartbeat_interval: float = 1.0
    heartbeat_timeout: float = 5.0
    max_restarts_per_window: int = 5
    restart_window_duration: float = 60.0
    graceful_shutdown_timeout: float = 10.0
    backoff_strategy: str = "exponential"
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    exit_history_size: int = 10

    def __post_init__(self) -> None:
        if self.desired_worker_count < 0:
            msg = f"desired_worker_count must be >= 0, got: {self.desired_worker_count}"
            raise ConfigError(msg)
        for name in (
            "heartbeat_interval",
            "heartbeat_timeout",
            "restart_window_duration",
            "graceful_shutdown_timeout",
            "backoff_base",
            "backoff_max",
        ):
            value = getattr(self, name)
            if value <= 0:
                msg = f"{name} must be positive, got: {value}"
                raise ConfigError(msg)
        if self.heartbeat_timeout <= self.heartbeat_interval:
            msg = (
                f"heartbeat_timeout ({self.heartbeat_timeout}) must be greater than "
                f"heartbeat_interval ({self.heartbeat_interval})"
            )
            raise ConfigError(msg)
        if self.max_restarts_per_window < 0:
            msg = f"max_restarts_per_window must be >= 0, got: {self.max_restarts_per_window}"
            raise ConfigError(msg)
        if self.backoff_strategy not in BACKOFF_STRATEGIES:
            msg = (
                f"backoff_strategy must be one of {', '.join(BACKOFF_STRATEGIES)}, "
                f"got: {self.backoff_strategy!r}"
            )
            raise ConfigError(msg)
        if self.backoff_max < self.backoff_base:
            msg = f"backoff_max ({self.backoff_max}) must be >= backoff_base ({self.backoff_base})"
            raise ConfigError(msg)
        if self.exit_history_size < 1:
            msg = f"exit_history_size must be >= 1, got: {self.exit_history_size}"
            raise ConfigError(msg)


@dataclass(frozen=True)
class ServerConfig:
    """Listening endpoint, control endpoint and dispatch limits.

    Attributes:
        handler: Handler spec, ``"module:func"`` or ``"path/file.py:func"``.
        host: Interface the front end binds to.
        port: Port the front end binds to.
        control_host: Interface the control endpoint binds to.
        control_port: Port the control endpoint binds to.
        backlog_limit: Requests held while no worker can take them.
        max_inflight_per_worker: Requests outstanding per worker before it
            counts as saturated.
        request_timeout: Seconds a dispatch caller waits for a response.
    """

    handler: str = ""
    host: str = "127.0.0.1"
    port: int = 8000
    control_host: str = "127.0.0.1"
    control_port: int = 9101
    backlog_limit: int = 128
    max_inflight_per_worker: int = 32
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        for name in ("port", "control_port"):
            value = getattr(self, name)
            if not 0 <= value <= 65535:
                msg = f"{name} must be between 0 and 65535, got: {value}"
                raise ConfigError(msg)
        if self.backlog_limit < 0:
            msg = f"backlog_limit must be >= 0, got: {self.backlog_limit}"
            raise ConfigError(msg)
        if self.max_inflight_per_worker < 1:
            msg = f"max_inflight_per_worker must be >= 1, got: {self.max_inflight_per_worker}"
            raise ConfigError(msg)
        if self.request_timeout <= 0:
            msg = f"request_timeout must be positive, got: {self.request_timeout}"
            raise ConfigError(msg)


@dataclass(frozen=True)
class PoolForgeConfig:
    """Complete PoolForge configuration."""

    pool: PoolConfig = field(default_factory=PoolConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _coerce(name: str, source: str, raw: Any, kind: type) -> Any:
    """Convert a raw config value to the type of its dataclass field.

    Args:
        name: Field name, for error messages.
        source: Where the value came from (env var name or file table).
        raw: The raw value (string from env, any TOML scalar from a file).
        kind: Target type: int, float or str.

    Returns:
        The converted value.

    Raises:
        ConfigError: If the value cannot be converted.
    """
    if kind is str:
        return str(raw)
    if isinstance(raw, bool):
        msg = f"{source} must be a number, got: {raw!r}"
        raise ConfigError(msg)
    if kind is int:
        try:
            return int(raw) if not isinstance(raw, float) else _strict_int(raw)
        except (TypeError, ValueError):
            msg = f"{source} must be an integer, got: {raw!r}"
            raise ConfigError(msg) from None
    try:
        return float(raw)
    except (TypeError, ValueError):
        msg = f"{source} must be a number, got: {raw!r}"
        raise ConfigError(msg) from None


def _strict_int(value: float) -> int:
    if not value.is_integer():
        raise ValueError(value)
    return int(value)


def _field_types(cls: type) -> dict[str, type]:
    kinds = {"int": int, "float": float, "str": str}
    return {f.name: kinds[str(f.type)] for f in fields(cls)}


def _read_config_file(path: Path) -> dict[str, Any]:
    """Read a TOML config file.

    Raises:
        ConfigError: If the file is missing or not valid TOML.
    """
    try:
        with path.open("rb") as fh:
            data = tomllib.load(fh)
    except FileNotFoundError:
        msg = f"Config file not found: {path}"
        raise ConfigError(msg) from None
    except tomllib.TOMLDecodeError as exc:
        msg = f"Config file {path} is not valid TOML: {exc}"
        raise ConfigError(msg) from exc
    for table in ("pool", "server"):
        if table in data and not isinstance(data[table], dict):
            msg = f"Config file {path}: [{table}] must be a table"
            raise ConfigError(msg)
    return data


def _layer(
    cls: type,
    env_names: dict[str, str],
    file_table: dict[str, Any],
    table_name: str,
    overrides: dict[str, Any],
) -> dict[str, Any]:
    kinds = _field_types(cls)
    values: dict[str, Any] = {}

    unknown = set(file_table) - set(kinds)
    if unknown:
        msg = f"Unknown key(s) in [{table_name}]: {', '.join(sorted(unknown))}"
        raise ConfigError(msg)

    for name, raw in file_table.items():
        values[name] = _coerce(name, f"[{table_name}].{name}", raw, kinds[name])

    for name, env_name in env_names.items():
        raw = os.environ.get(env_name)
        if raw is not None and raw != "":
            values[name] = _coerce(name, env_name, raw, kinds[name])

    for name, value in overrides.items():
        if name in kinds and value is not None:
            values[name] = value
    return values


def load_config(
    config_file: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> PoolForgeConfig:
    """Load configuration from defaults, file, environment and overrides.

    Environment variables:
        POOLFORGE_CONFIG: Config file path, used when ``config_file`` is None.
        POOLFORGE_WORKERS: Desired worker count (default: CPU count).
        POOLFORGE_HEARTBEAT_INTERVAL / POOLFORGE_HEARTBEAT_TIMEOUT: Seconds.
        POOLFORGE_MAX_RESTARTS / POOLFORGE_RESTART_WINDOW: Crash-loop breaker.
        POOLFORGE_GRACEFUL_TIMEOUT: Seconds before a draining worker is killed.
        POOLFORGE_BACKOFF_STRATEGY / _BASE / _MAX: Respawn backoff.
        POOLFORGE_HANDLER, POOLFORGE_HOST, POOLFORGE_PORT,
        POOLFORGE_CONTROL_HOST, POOLFORGE_CONTROL_PORT, POOLFORGE_BACKLOG,
        POOLFORGE_MAX_INFLIGHT, POOLFORGE_REQUEST_TIMEOUT: Server settings.

    Args:
        config_file: Optional TOML file path.
        overrides: Field-name keyed values that win over everything else.
            ``None`` values are ignored so CLI options can be passed through.

    Returns:
        Populated PoolForgeConfig instance.

    Raises:
        ConfigError: If any value is missing, unparsable or out of range.
    """
    overrides = overrides or {}
    if config_file is None:
        config_file = os.environ.get(CONFIG_FILE_ENV) or None

    data: dict[str, Any] = {}
    if config_file is not None:
        data = _read_config_file(Path(config_file))

    pool_values = _layer(PoolConfig, _POOL_ENV, data.get("pool", {}), "pool", overrides)
    server_values = _layer(
        ServerConfig, _SERVER_ENV, data.get("server", {}), "server", overrides
    )

    return PoolForgeConfig(
        pool=PoolConfig(**pool_values),
        server=ServerConfig(**server_values),
    )
