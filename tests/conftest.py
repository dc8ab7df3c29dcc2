"""Test harness configuration.

This repo uses a `src/` layout. Ensure tests always import the in-repo code
even when an older installed `claude_relay` package is on the path.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import pytest


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process`` in cancellation tests."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.returncode: Optional[int] = None
        self.terminate_calls = 0
        self.kill_calls = 0

    def terminate(self) -> None:
        self.terminate_calls += 1

    def kill(self) -> None:
        self.kill_calls += 1
        self.returncode = -9


@pytest.fixture()
def fake_process() -> FakeProcess:
    return FakeProcess()


@pytest.fixture()
def relay_root(tmp_path: Path) -> Path:
    """A project root with a default config and an existing project dir."""
    root = tmp_path / "relay"
    root.mkdir()
    # Import lazily so `pytest_configure()` can prepend the local src/ directory
    # before any `claude_relay` modules are loaded.
    from claude_relay.config import CONFIG_FILENAME, default_config_text

    config_path = root / CONFIG_FILENAME
    config_path.parent.mkdir(parents=True)
    config_path.write_text(default_config_text(), encoding="utf-8")
    return root
