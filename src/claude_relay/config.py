import dataclasses
import json
import os
import socket
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = ".claude-relay/config.yml"
CONFIG_VERSION = 1

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "computer_name": None,
    "claude": {
        "binary": "claude",
        "args": [],
        "timeout_seconds": 300,
        "default_project_dir": None,
        "allowed_base_paths": [],
    },
    "queue": {
        "max_size": 10,
        "max_prompt_chars": 10_000,
        "task_timeout_seconds": 600,
        "kill_grace_seconds": 5,
    },
    "sessions": {
        "path": ".claude-relay/sessions.json",
        "debounce_seconds": 2.0,
    },
    "shortcuts": {
        "path": ".claude-relay/shortcuts.json",
    },
    "locks": {
        "stale_after_seconds": 10,
        "wait_seconds": 5,
    },
    "reply": {
        "max_chars": 4000,
    },
    "discovery": {
        "claude_home": None,
        "cache_ttl_seconds": 30,
    },
    "log": {
        "path": ".claude-relay/claude-relay.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

ENV_BINARY = "CLAUDE_RELAY_BINARY"
ENV_DEFAULT_PROJECT_DIR = "DEFAULT_PROJECT_DIR"
ENV_COMPUTER_NAME = "COMPUTER_NAME"


class ConfigError(Exception):
    """Raised when configuration is invalid."""


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class ClaudeConfig:
    binary: str
    args: List[str]
    timeout_seconds: float
    default_project_dir: Path
    allowed_base_paths: List[Path]


@dataclasses.dataclass
class QueueConfig:
    max_size: int
    max_prompt_chars: int
    task_timeout_seconds: float
    kill_grace_seconds: float


@dataclasses.dataclass
class RelayConfig:
    raw: Dict[str, Any]
    root: Path
    version: int
    computer_name: str
    claude: ClaudeConfig
    queue: QueueConfig
    sessions_path: Path
    sessions_debounce_seconds: float
    shortcuts_path: Path
    lock_stale_after_seconds: float
    lock_wait_seconds: float
    reply_max_chars: int
    discovery_claude_home: Optional[Path]
    discovery_cache_ttl_seconds: float
    log: LogConfig

    @property
    def invoke_timeout_seconds(self) -> float:
        return min(self.claude.timeout_seconds, self.queue.task_timeout_seconds)


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def find_nearest_config_path(start: Path) -> Optional[Path]:
    """Return the closest .claude-relay/config.yml walking upward from start."""
    start = start.resolve()
    search_dir = start if start.is_dir() else start.parent
    for current in [search_dir] + list(search_dir.parents):
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def _load_dotenv_for_root(root: Path) -> None:
    """
    Best-effort load of environment variables for this config root.

    Loads from deterministic locations rather than the process CWD, which
    differs under launchd, systemd and installed entrypoints.
    """
    try:
        candidates = [root / ".env", root / ".claude-relay" / ".env"]
        for candidate in candidates:
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=True)
    except Exception:
        # Never fail config loading due to dotenv issues.
        pass


def default_config_text() -> str:
    return yaml.safe_dump(DEFAULT_CONFIG, sort_keys=False)


def load_config(
    start: Path,
    *,
    env: Optional[Mapping[str, str]] = None,
    require_file: bool = False,
) -> RelayConfig:
    """
    Load the nearest config walking upward from the provided path.

    Without a config file the defaults apply with ``start`` as the root,
    unless ``require_file`` is set.
    """
    config_path = find_nearest_config_path(start)
    if config_path is None:
        if require_file:
            raise ConfigError(
                f"Missing config file; expected to find {CONFIG_FILENAME} in {start} or parents"
            )
        root = start.resolve() if start.is_dir() else start.resolve().parent
        data: Dict[str, Any] = {}
    else:
        root = config_path.parent.parent.resolve()
        try:
            with config_path.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
    if env is None:
        _load_dotenv_for_root(root)
        env = os.environ
    merged = _merge_defaults(DEFAULT_CONFIG, data)
    _validate_config(merged)
    return _build_config(root, merged, env)


def _resolve_path(root: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = root / path
    return path


def _build_config(root: Path, cfg: Dict[str, Any], env: Mapping[str, str]) -> RelayConfig:
    claude_cfg = cfg["claude"]
    queue_cfg = cfg["queue"]
    binary = env.get(ENV_BINARY) or str(claude_cfg["binary"])
    default_project_raw = env.get(ENV_DEFAULT_PROJECT_DIR) or claude_cfg.get(
        "default_project_dir"
    )
    default_project_dir = (
        _resolve_path(root, default_project_raw) if default_project_raw else root
    )
    computer_name = (
        env.get(ENV_COMPUTER_NAME) or cfg.get("computer_name") or socket.gethostname()
    )
    discovery_cfg = cfg["discovery"]
    claude_home_raw = discovery_cfg.get("claude_home")
    log_cfg = cfg["log"]
    return RelayConfig(
        raw=cfg,
        root=root,
        version=int(cfg["version"]),
        computer_name=str(computer_name),
        claude=ClaudeConfig(
            binary=binary,
            args=[str(arg) for arg in claude_cfg.get("args") or []],
            timeout_seconds=float(claude_cfg["timeout_seconds"]),
            default_project_dir=default_project_dir,
            allowed_base_paths=[
                _resolve_path(root, p) for p in claude_cfg.get("allowed_base_paths") or []
            ],
        ),
        queue=QueueConfig(
            max_size=int(queue_cfg["max_size"]),
            max_prompt_chars=int(queue_cfg["max_prompt_chars"]),
            task_timeout_seconds=float(queue_cfg["task_timeout_seconds"]),
            kill_grace_seconds=float(queue_cfg["kill_grace_seconds"]),
        ),
        sessions_path=_resolve_path(root, cfg["sessions"]["path"]),
        sessions_debounce_seconds=float(cfg["sessions"]["debounce_seconds"]),
        shortcuts_path=_resolve_path(root, cfg["shortcuts"]["path"]),
        lock_stale_after_seconds=float(cfg["locks"]["stale_after_seconds"]),
        lock_wait_seconds=float(cfg["locks"]["wait_seconds"]),
        reply_max_chars=int(cfg["reply"]["max_chars"]),
        discovery_claude_home=(
            Path(str(claude_home_raw)).expanduser() if claude_home_raw else None
        ),
        discovery_cache_ttl_seconds=float(discovery_cfg["cache_ttl_seconds"]),
        log=LogConfig(
            path=_resolve_path(root, log_cfg["path"]),
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _require_section(cfg: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = cfg.get(name)
    if not isinstance(section, dict):
        raise ConfigError(f"{name} section must be a mapping")
    return section


def _validate_config(cfg: Dict[str, Any]) -> None:
    if cfg.get("version") != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version; expected {CONFIG_VERSION}")
    computer_name = cfg.get("computer_name")
    if computer_name is not None and not isinstance(computer_name, str):
        raise ConfigError("computer_name must be a string or null")
    claude = _require_section(cfg, "claude")
    if not isinstance(claude.get("binary"), str) or not claude["binary"]:
        raise ConfigError("claude.binary is required")
    if not isinstance(claude.get("args", []), list):
        raise ConfigError("claude.args must be a list")
    if not _is_number(claude.get("timeout_seconds")) or claude["timeout_seconds"] <= 0:
        raise ConfigError("claude.timeout_seconds must be a positive number")
    project_dir = claude.get("default_project_dir")
    if project_dir is not None and not isinstance(project_dir, str):
        raise ConfigError("claude.default_project_dir must be a string path or null")
    bases = claude.get("allowed_base_paths", [])
    if not isinstance(bases, list) or not all(isinstance(p, str) for p in bases):
        raise ConfigError("claude.allowed_base_paths must be a list of paths")
    queue = _require_section(cfg, "queue")
    for key in ("max_size", "max_prompt_chars"):
        value = queue.get(key)
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"queue.{key} must be a positive integer")
    for key in ("task_timeout_seconds", "kill_grace_seconds"):
        value = queue.get(key)
        if not _is_number(value) or value <= 0:
            raise ConfigError(f"queue.{key} must be a positive number")
    sessions = _require_section(cfg, "sessions")
    if not isinstance(sessions.get("path"), str) or not sessions["path"]:
        raise ConfigError("sessions.path must be a non-empty string path")
    if not _is_number(sessions.get("debounce_seconds")) or sessions["debounce_seconds"] < 0:
        raise ConfigError("sessions.debounce_seconds must be a non-negative number")
    shortcuts = _require_section(cfg, "shortcuts")
    if not isinstance(shortcuts.get("path"), str) or not shortcuts["path"]:
        raise ConfigError("shortcuts.path must be a non-empty string path")
    locks = _require_section(cfg, "locks")
    for key in ("stale_after_seconds", "wait_seconds"):
        value = locks.get(key)
        if not _is_number(value) or value <= 0:
            raise ConfigError(f"locks.{key} must be a positive number")
    reply = _require_section(cfg, "reply")
    max_chars = reply.get("max_chars")
    if not isinstance(max_chars, int) or isinstance(max_chars, bool) or max_chars < 200:
        raise ConfigError("reply.max_chars must be an integer >= 200")
    discovery = _require_section(cfg, "discovery")
    claude_home = discovery.get("claude_home")
    if claude_home is not None and not isinstance(claude_home, str):
        raise ConfigError("discovery.claude_home must be a string path or null")
    if not _is_number(discovery.get("cache_ttl_seconds")):
        raise ConfigError("discovery.cache_ttl_seconds must be a number")
    log_cfg = _require_section(cfg, "log")
    if not isinstance(log_cfg.get("path", ""), str):
        raise ConfigError("log.path must be a string path")
    for key in ("max_bytes", "backup_count"):
        if not isinstance(log_cfg.get(key, 0), int):
            raise ConfigError(f"log.{key} must be an integer")
