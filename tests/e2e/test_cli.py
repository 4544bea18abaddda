"""End-to-end tests for the PoolForge CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from poolforge import __version__
from poolforge.cli.app import app

if TYPE_CHECKING:
    from pathlib import Path

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in ("POOLFORGE_HANDLER", "POOLFORGE_CONFIG", "POOLFORGE_CONTROL_URL"):
        monkeypatch.delenv(name, raising=False)


# ---------------------------------------------------------------------------
# Tests: version and help
# ---------------------------------------------------------------------------


def test_version_flag():
    """--version prints version and exits 0."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_version_short_flag():
    """-V also prints version."""
    result = runner.invoke(app, ["-V"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_help_output():
    """--help lists every command."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("serve", "status", "start", "stop", "restart", "scale"):
        assert command in result.output


def test_serve_help():
    """poolforge serve --help shows serve options."""
    result = runner.invoke(app, ["serve", "--help"])
    assert result.exit_code == 0
    assert "--workers" in result.output
    assert "--control-port" in result.output
    assert "--config" in result.output


# ---------------------------------------------------------------------------
# Tests: poolforge serve (startup failures)
# ---------------------------------------------------------------------------


def test_serve_without_handler():
    """serve with no handler anywhere exits 2."""
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 2
    assert "no handler" in result.output


def test_serve_with_unloadable_handler(tmp_path: Path):
    """A handler that cannot be imported fails before any worker starts."""
    result = runner.invoke(app, ["serve", f"{tmp_path / 'missing.py'}:handle"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_serve_with_invalid_config(tmp_path: Path):
    """Invalid config values are reported and exit 1."""
    path = tmp_path / "bad.toml"
    path.write_text("[pool]\nheartbeat_interval = 9\nheartbeat_timeout = 3\n")
    result = runner.invoke(app, ["serve", "json:dumps", "--config", str(path)])
    assert result.exit_code == 1
    assert "heartbeat_timeout" in result.output


def test_serve_rejects_negative_workers():
    result = runner.invoke(app, ["serve", "json:dumps", "--workers", "-1"])
    assert result.exit_code != 0


# ---------------------------------------------------------------------------
# Tests: control commands
# ---------------------------------------------------------------------------


def test_status_table(fake_control):
    """status renders workers, degraded slots and dispatch counters."""
    result = runner.invoke(app, ["status", "--url", fake_control.url])
    assert result.exit_code == 0, result.output
    assert "4242" in result.output
    assert "ready" in result.output
    assert "Degraded" in result.output
    assert "slot 3" in result.output
    assert "Dispatched" in result.output
    assert fake_control.calls == [("status", None)]


def test_status_json(fake_control):
    result = runner.invoke(app, ["status", "--json", "--url", fake_control.url])
    assert result.exit_code == 0
    assert '"desired_workers": 2' in result.output


def test_status_uses_env_url(fake_control, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("POOLFORGE_CONTROL_URL", fake_control.url)
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 0
    assert fake_control.calls == [("status", None)]


def test_scale(fake_control):
    result = runner.invoke(app, ["scale", "5", "--url", fake_control.url])
    assert result.exit_code == 0
    assert "scale applied" in result.output
    assert fake_control.calls == [("scale", {"workers": 5})]


def test_scale_rejected(fake_control):
    """A command rejected by the supervisor exits 1 with its message."""
    result = runner.invoke(app, ["scale", "500", "--url", fake_control.url])
    assert result.exit_code == 1
    assert "too many workers" in result.output


def test_scale_negative_is_usage_error(fake_control):
    result = runner.invoke(app, ["scale", "-1", "--url", fake_control.url])
    assert result.exit_code != 0
    assert fake_control.calls == []


def test_start_and_restart(fake_control):
    assert runner.invoke(app, ["start", "--url", fake_control.url]).exit_code == 0
    assert runner.invoke(app, ["restart", "--url", fake_control.url]).exit_code == 0
    assert [name for name, _ in fake_control.calls] == ["start", "restart"]


def test_stop_clean_exit_code(fake_control):
    result = runner.invoke(app, ["stop", "--url", fake_control.url])
    assert result.exit_code == 0
    assert "Stopped cleanly" in result.output


def test_stop_reports_forced_kill(fake_control):
    """stop exits 1 when the supervisor had to force-kill a worker."""
    fake_control.stop_exit_code = 1
    result = runner.invoke(app, ["stop", "--url", fake_control.url])
    assert result.exit_code == 1
    assert "force-killed" in result.output


def test_unreachable_control_endpoint(free_port):
    result = runner.invoke(app, ["status", "--url", f"http://127.0.0.1:{free_port()}"])
    assert result.exit_code == 1
    assert "Cannot reach control endpoint" in result.output
