from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ccrelay import cli
from ccrelay.engine.diagnostics import CLI_MISSING
from ccrelay.history import default_project_dir

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in ("DISCORD_BOT_TOKEN", "DISCORD_CHANNEL_ID", "DISCORD_CLIENT_ID", "DISCORD_ALLOWED_USERS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda **_: None)


def test_sessions_lists_saved_sessions(tmp_path: Path) -> None:
    workspace = tmp_path / "repo"
    workspace.mkdir()
    project_dir = default_project_dir(workspace)
    project_dir.mkdir(parents=True)
    row = {"sessionId": "abc123", "timestamp": "2025-01-01T09:00:00", "type": "user", "message": {"content": "hi"}}
    (project_dir / "abc123.jsonl").write_text(json.dumps(row) + "\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["sessions", "--workspace", str(workspace)])

    assert result.exit_code == 0
    assert "abc123" in result.output


def test_sessions_without_history(tmp_path: Path) -> None:
    result = runner.invoke(cli.app, ["sessions", "--workspace", str(tmp_path)])

    assert result.exit_code == 0
    assert "No sessions found" in result.output


def test_diagnose_reports_cli_version(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_probe(executable: str) -> str:
        return "1.0.0 (Claude Code)"

    monkeypatch.setattr(cli, "probe_cli", fake_probe)

    result = runner.invoke(cli.app, ["diagnose", "--executable", "claude"])

    assert result.exit_code == 0
    assert "cli: claude (1.0.0 (Claude Code))" in result.output
    assert "permissionMode: default" in result.output
    assert "discord: not configured" in result.output


def test_diagnose_fails_when_cli_is_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_probe(executable: str) -> str:
        return CLI_MISSING

    monkeypatch.setattr(cli, "probe_cli", fake_probe)

    result = runner.invoke(cli.app, ["diagnose"])

    assert result.exit_code == 1


def test_run_requires_discord_settings() -> None:
    result = runner.invoke(cli.app, ["run"])

    assert result.exit_code == 1
    assert "missing required settings" in result.output


def test_run_rejects_continue_with_resume() -> None:
    result = runner.invoke(cli.app, ["run", "--continue", "--resume", "abc"])

    assert result.exit_code == 2
