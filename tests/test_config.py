from pathlib import Path

import pytest
import yaml

from claude_relay.config import CONFIG_FILENAME, ConfigError, load_config


def write_config(root: Path, data: dict) -> Path:
    path = root / CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_defaults_without_config_file(tmp_path: Path):
    config = load_config(tmp_path, env={})
    assert config.root == tmp_path.resolve()
    assert config.claude.binary == "claude"
    assert config.claude.default_project_dir == tmp_path.resolve()
    assert config.queue.max_size == 10
    assert config.queue.max_prompt_chars == 10_000
    assert config.sessions_debounce_seconds == 2.0
    assert config.sessions_path == tmp_path.resolve() / ".claude-relay" / "sessions.json"
    assert config.invoke_timeout_seconds == 300


def test_require_file(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_config(tmp_path, env={}, require_file=True)


def test_nearest_config_is_found_from_subdirectory(tmp_path: Path):
    write_config(tmp_path, {"version": 1, "queue": {"max_size": 3}})
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    config = load_config(nested, env={})
    assert config.root == tmp_path.resolve()
    assert config.queue.max_size == 3
    assert config.queue.max_prompt_chars == 10_000


def test_invoke_timeout_is_capped_by_task_timeout(tmp_path: Path):
    write_config(
        tmp_path,
        {"version": 1, "claude": {"timeout_seconds": 900}, "queue": {"task_timeout_seconds": 600}},
    )
    assert load_config(tmp_path, env={}).invoke_timeout_seconds == 600


def test_env_overrides(tmp_path: Path):
    project = tmp_path / "project"
    project.mkdir()
    env = {
        "CLAUDE_RELAY_BINARY": "/opt/claude",
        "DEFAULT_PROJECT_DIR": str(project),
        "COMPUTER_NAME": "build-box",
    }
    config = load_config(tmp_path, env=env)
    assert config.claude.binary == "/opt/claude"
    assert config.claude.default_project_dir == project
    assert config.computer_name == "build-box"


def test_relative_paths_resolve_against_root(tmp_path: Path):
    write_config(
        tmp_path,
        {"version": 1, "claude": {"allowed_base_paths": ["work"]}, "sessions": {"path": "s.json"}},
    )
    config = load_config(tmp_path, env={})
    assert config.claude.allowed_base_paths == [tmp_path.resolve() / "work"]
    assert config.sessions_path == tmp_path.resolve() / "s.json"


@pytest.mark.parametrize(
    "data, message",
    [
        ({"version": 2}, "Unsupported config version"),
        ({"version": 1, "queue": {"max_size": 0}}, "queue.max_size"),
        ({"version": 1, "claude": {"args": "--verbose"}}, "claude.args"),
        ({"version": 1, "sessions": {"debounce_seconds": -1}}, "sessions.debounce_seconds"),
        ({"version": 1, "reply": {"max_chars": 10}}, "reply.max_chars"),
        ({"version": 1, "locks": {"wait_seconds": "soon"}}, "locks.wait_seconds"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, data, message):
    write_config(tmp_path, data)
    with pytest.raises(ConfigError, match=message):
        load_config(tmp_path, env={})


def test_invalid_yaml(tmp_path: Path):
    path = tmp_path / CONFIG_FILENAME
    path.parent.mkdir(parents=True)
    path.write_text("queue: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(tmp_path, env={})
