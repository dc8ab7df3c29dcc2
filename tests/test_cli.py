import sys
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from claude_relay.cli import app
from claude_relay.config import CONFIG_FILENAME

runner = CliRunner()

FAKE_CLAUDE = """#!{python}
import json, sys
prompt = sys.stdin.read()
print(json.dumps({{"result": "echo: " + prompt, "session_id": "abcdef12-0001"}}))
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("CLAUDE_RELAY_BINARY", "DEFAULT_PROJECT_DIR", "COMPUTER_NAME"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fake_claude(tmp_path: Path, monkeypatch) -> Path:
    script = tmp_path / "fake-claude"
    script.write_text(FAKE_CLAUDE.format(python=sys.executable), encoding="utf-8")
    script.chmod(0o755)
    monkeypatch.setenv("CLAUDE_RELAY_BINARY", str(script))
    return script


def test_cli_has_required_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("init", "check-config", "sessions", "projects", "ask", "shortcut"):
        assert name in result.stdout


def test_init_writes_config_once(tmp_path: Path):
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0
    config_path = tmp_path / CONFIG_FILENAME
    assert yaml.safe_load(config_path.read_text(encoding="utf-8"))["version"] == 1

    again = runner.invoke(app, ["init", str(tmp_path)])
    assert again.exit_code == 1
    forced = runner.invoke(app, ["init", str(tmp_path), "--force"])
    assert forced.exit_code == 0


def test_check_config_ok(relay_root: Path, fake_claude: Path):
    result = runner.invoke(app, ["check-config", "--path", str(relay_root)])
    assert result.exit_code == 0
    assert f"Claude binary: {fake_claude}" in result.stdout
    assert "Config OK" in result.stdout


def test_check_config_missing_binary(relay_root: Path, monkeypatch):
    monkeypatch.setenv("CLAUDE_RELAY_BINARY", str(relay_root / "no-such-claude"))
    result = runner.invoke(app, ["check-config", "--path", str(relay_root)])
    assert result.exit_code == 1
    assert "Config OK" not in result.stdout


def test_check_config_rejects_invalid_config(relay_root: Path):
    (relay_root / CONFIG_FILENAME).write_text("version: 7\n", encoding="utf-8")
    result = runner.invoke(app, ["check-config", "--path", str(relay_root)])
    assert result.exit_code == 1


def test_shortcut_commands(relay_root: Path):
    added = runner.invoke(
        app, ["shortcut", "add", "build", "run the build", "--path", str(relay_root)]
    )
    assert added.exit_code == 0
    assert "Shortcut /build created." in added.stdout

    listed = runner.invoke(app, ["shortcut", "list", "--path", str(relay_root)])
    assert '1. /build -> "run the build"' in listed.stdout

    other_chat = runner.invoke(
        app, ["shortcut", "list", "--path", str(relay_root), "--chat", "other"]
    )
    assert "No shortcuts defined." in other_chat.stdout

    blocked = runner.invoke(
        app, ["shortcut", "add", "wipe", "rm -rf /", "--path", str(relay_root)]
    )
    assert blocked.exit_code == 1

    deleted = runner.invoke(app, ["shortcut", "del", "build", "--path", str(relay_root)])
    assert deleted.exit_code == 0
    missing = runner.invoke(app, ["shortcut", "del", "build", "--path", str(relay_root)])
    assert missing.exit_code == 1


def test_ask_runs_prompt_and_persists_session(relay_root: Path, fake_claude: Path):
    result = runner.invoke(app, ["ask", "hello there", "--path", str(relay_root)])
    assert result.exit_code == 0, result.output
    assert "Processing..." in result.stdout
    assert "echo: hello there" in result.stdout

    status = runner.invoke(app, ["ask", "/status", "--path", str(relay_root)])
    assert "Session: abcdef12..." in status.stdout


def test_sessions_and_projects_use_configured_home(relay_root: Path, tmp_path: Path):
    config_path = relay_root / CONFIG_FILENAME
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    data["discovery"]["claude_home"] = str(tmp_path / "empty-home")
    config_path.write_text(yaml.safe_dump(data), encoding="utf-8")

    sessions = runner.invoke(app, ["sessions", "--path", str(relay_root)])
    assert sessions.exit_code == 0
    assert "No Claude Code sessions found." in sessions.stdout

    projects = runner.invoke(app, ["projects", "--path", str(relay_root)])
    assert "No Claude Code projects found." in projects.stdout


def test_ask_with_project_dir(relay_root: Path, fake_claude: Path, tmp_path: Path):
    project = tmp_path / "work"
    project.mkdir()
    result = runner.invoke(
        app, ["ask", "hi", "--path", str(relay_root), "--project", str(project)]
    )
    assert result.exit_code == 0, result.output
    assert f"Project directory set to:\n{project.resolve()}" in result.stdout
    assert "echo: hi" in result.stdout
