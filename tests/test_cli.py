import os
import subprocess
import sys


def run_cli(*args, env=None):
    return subprocess.run(
        [sys.executable, "-m", "agentloop", *args],
        capture_output=True,
        text=True,
        env={**os.environ, **(env or {})},
    )


def test_agentloop_status():
    result = run_cli("status")
    assert result.returncode == 0
    assert "Default provider" in result.stdout
    assert "Recovery:" in result.stdout


def test_agentloop_help():
    result = run_cli("--help")
    assert result.returncode == 0
    assert "run" in result.stdout
    assert "status" in result.stdout
    assert "events" in result.stdout


def test_run_help_shows_provider():
    result = run_cli("run", "--help")
    assert result.returncode == 0
    assert "--provider" in result.stdout
    assert "vllm" in result.stdout or "openrouter" in result.stdout
    assert "--max-iterations" in result.stdout


def test_run_without_task():
    result = run_cli("run")
    assert result.returncode == 0
    assert "Task description required" in result.stdout


def test_events_on_empty_store(tmp_path):
    result = run_cli("events", "5", env={"TELEMETRY_DB_PATH": str(tmp_path / "telemetry.db")})
    assert result.returncode == 0
    assert "No events recorded." in result.stdout
