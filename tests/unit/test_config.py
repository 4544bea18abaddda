"""Tests for configuration loading."""

from __future__ import annotations

import os

import pytest

from poolforge._internal.config import PoolConfig, ServerConfig, load_config
from poolforge._internal.errors import ConfigError


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    """Keep POOLFORGE_* variables from the outer environment out of tests."""
    for name in list(os.environ):
        if name.startswith("POOLFORGE_"):
            monkeypatch.delenv(name)


class TestPoolConfig:
    """Tests for the PoolConfig dataclass."""

    def test_defaults(self):
        """PoolConfig has sensible defaults."""
        config = PoolConfig()
        assert config.desired_worker_count == (os.cpu_count() or 1)
        assert config.heartbeat_interval == 1.0
        assert config.heartbeat_timeout == 5.0
        assert config.max_restarts_per_window == 5
        assert config.restart_window_duration == 60.0
        assert config.graceful_shutdown_timeout == 10.0
        assert config.backoff_strategy == "exponential"

    def test_frozen(self):
        """PoolConfig is immutable."""
        config = PoolConfig()
        with pytest.raises(AttributeError):
            config.desired_worker_count = 3  # type: ignore[misc]

    def test_zero_workers_allowed(self):
        assert PoolConfig(desired_worker_count=0).desired_worker_count == 0

    def test_negative_workers_rejected(self):
        with pytest.raises(ConfigError, match="desired_worker_count must be >= 0"):
            PoolConfig(desired_worker_count=-1)

    def test_timeout_must_exceed_interval(self):
        with pytest.raises(ConfigError, match="must be greater than heartbeat_interval"):
            PoolConfig(heartbeat_interval=2.0, heartbeat_timeout=2.0)

    def test_non_positive_duration_rejected(self):
        with pytest.raises(ConfigError, match="graceful_shutdown_timeout must be positive"):
            PoolConfig(graceful_shutdown_timeout=0)

    def test_unknown_backoff_strategy_rejected(self):
        with pytest.raises(ConfigError, match="backoff_strategy must be one of"):
            PoolConfig(backoff_strategy="random")

    def test_backoff_max_below_base_rejected(self):
        with pytest.raises(ConfigError, match="backoff_max"):
            PoolConfig(backoff_base=5.0, backoff_max=1.0)


class TestServerConfig:
    def test_defaults(self):
        config = ServerConfig()
        assert config.host == "127.0.0.1"
        assert config.port == 8000
        assert config.control_port == 9101
        assert config.backlog_limit == 128

    def test_port_range(self):
        with pytest.raises(ConfigError, match="between 0 and 65535"):
            ServerConfig(port=70000)

    def test_inflight_must_be_positive(self):
        with pytest.raises(ConfigError, match="max_inflight_per_worker"):
            ServerConfig(max_inflight_per_worker=0)


class TestLoadConfig:
    """Tests for the load_config function."""

    def test_defaults_without_sources(self):
        config = load_config()
        assert config.pool == PoolConfig()
        assert config.server == ServerConfig()

    def test_workers_from_env(self, monkeypatch: pytest.MonkeyPatch):
        """POOLFORGE_WORKERS is read from the environment."""
        monkeypatch.setenv("POOLFORGE_WORKERS", "6")
        assert load_config().pool.desired_worker_count == 6

    def test_float_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POOLFORGE_HEARTBEAT_INTERVAL", "0.25")
        assert load_config().pool.heartbeat_interval == 0.25

    def test_server_values_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POOLFORGE_HANDLER", "app.handlers:handle")
        monkeypatch.setenv("POOLFORGE_PORT", "8080")
        config = load_config()
        assert config.server.handler == "app.handlers:handle"
        assert config.server.port == 8080

    def test_empty_env_value_is_ignored(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POOLFORGE_WORKERS", "")
        assert load_config().pool.desired_worker_count == PoolConfig().desired_worker_count

    def test_invalid_integer_raises_error(self, monkeypatch: pytest.MonkeyPatch):
        """Non-integer POOLFORGE_WORKERS raises ConfigError."""
        monkeypatch.setenv("POOLFORGE_WORKERS", "many")
        with pytest.raises(ConfigError, match="POOLFORGE_WORKERS must be an integer"):
            load_config()

    def test_invalid_number_raises_error(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POOLFORGE_HEARTBEAT_TIMEOUT", "soon")
        with pytest.raises(ConfigError, match="must be a number"):
            load_config()

    def test_env_value_is_validated(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("POOLFORGE_HEARTBEAT_INTERVAL", "10")
        with pytest.raises(ConfigError, match="must be greater than"):
            load_config()

    def test_config_file(self, tmp_path):
        path = tmp_path / "poolforge.toml"
        path.write_text(
            '[pool]\ndesired_worker_count = 3\nheartbeat_timeout = 8\n\n'
            '[server]\nhandler = "examples/echo.py:handle"\nport = 9000\n'
        )
        config = load_config(path)
        assert config.pool.desired_worker_count == 3
        assert config.pool.heartbeat_timeout == 8.0
        assert config.server.handler == "examples/echo.py:handle"
        assert config.server.port == 9000

    def test_env_overrides_file_and_overrides_win(self, tmp_path, monkeypatch):
        path = tmp_path / "poolforge.toml"
        path.write_text("[pool]\ndesired_worker_count = 3\n")
        monkeypatch.setenv("POOLFORGE_WORKERS", "4")
        assert load_config(path).pool.desired_worker_count == 4
        assert load_config(path, {"desired_worker_count": 5}).pool.desired_worker_count == 5
        assert load_config(path, {"desired_worker_count": None}).pool.desired_worker_count == 4

    def test_config_file_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "pf.toml"
        path.write_text("[server]\ncontrol_port = 9999\n")
        monkeypatch.setenv("POOLFORGE_CONFIG", str(path))
        assert load_config().server.control_port == 9999

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[pool\n")
        with pytest.raises(ConfigError, match="not valid TOML"):
            load_config(path)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "typo.toml"
        path.write_text("[pool]\nworkers = 3\n")
        with pytest.raises(ConfigError, match=r"Unknown key\(s\) in \[pool\]: workers"):
            load_config(path)

    def test_fractional_worker_count_in_file(self, tmp_path):
        path = tmp_path / "frac.toml"
        path.write_text("[pool]\ndesired_worker_count = 2.5\n")
        with pytest.raises(ConfigError, match="must be an integer"):
            load_config(path)
