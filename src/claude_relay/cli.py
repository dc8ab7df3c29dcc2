import asyncio
import os
from pathlib import Path
from typing import Optional

import typer

from .bridge import ChatBridge
from .claude_cli import ClaudeInvoker
from .config import (
    CONFIG_FILENAME,
    ConfigError,
    RelayConfig,
    default_config_text,
    load_config,
)
from .logging_utils import setup_rotating_logger
from .session_discovery import ClaudeSessionDiscovery
from .session_store import SessionStore
from .shortcuts import ShortcutStore
from .store import JsonFileMapStore, chat_key
from .task_queue import TaskQueue

CONSOLE_PLATFORM = "console"

app = typer.Typer(add_completion=False)
shortcut_app = typer.Typer(add_completion=False)
app.add_typer(shortcut_app, name="shortcut")


def _require_config(path: Optional[Path]) -> RelayConfig:
    try:
        return load_config(path or Path.cwd())
    except ConfigError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _is_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    return os.access(path, os.W_OK)


def _discovery(config: RelayConfig) -> ClaudeSessionDiscovery:
    return ClaudeSessionDiscovery(
        config.discovery_claude_home,
        cache_ttl_seconds=config.discovery_cache_ttl_seconds,
    )


def _shortcut_store(config: RelayConfig) -> ShortcutStore:
    backend = JsonFileMapStore(
        config.shortcuts_path,
        stale_after=config.lock_stale_after_seconds,
        wait_timeout=config.lock_wait_seconds,
    )
    return ShortcutStore(backend)


class ConsoleSink:
    async def send(self, key: str, text: str) -> None:
        typer.echo(text)


def build_bridge(config: RelayConfig, sink) -> ChatBridge:
    """Wire the stores, queue and invoker for one relay process."""
    logger = setup_rotating_logger(f"claude-relay:{config.root}", config.log)
    lock_opts = dict(
        stale_after=config.lock_stale_after_seconds,
        wait_timeout=config.lock_wait_seconds,
        logger=logger,
    )
    sessions = SessionStore(
        JsonFileMapStore(config.sessions_path, **lock_opts),
        debounce_seconds=config.sessions_debounce_seconds,
        logger=logger,
    )
    shortcuts = ShortcutStore(JsonFileMapStore(config.shortcuts_path, **lock_opts), logger=logger)
    queue = TaskQueue(
        max_size=config.queue.max_size,
        max_prompt_chars=config.queue.max_prompt_chars,
        kill_grace_seconds=config.queue.kill_grace_seconds,
        logger=logger,
    )
    invoker = ClaudeInvoker(
        binary=config.claude.binary,
        args=config.claude.args,
        default_timeout_seconds=config.invoke_timeout_seconds,
        kill_grace_seconds=config.queue.kill_grace_seconds,
        allowed_base_paths=config.claude.allowed_base_paths,
        logger=logger,
    )
    return ChatBridge(
        queue,
        sessions,
        shortcuts,
        invoker,
        sink,
        default_project_dir=config.claude.default_project_dir,
        discovery=_discovery(config),
        computer_name=config.computer_name,
        reply_max_chars=config.reply_max_chars,
        invoke_timeout_seconds=config.invoke_timeout_seconds,
        kill_grace_seconds=config.queue.kill_grace_seconds,
        allowed_base_paths=config.claude.allowed_base_paths,
        logger=logger,
    )


@app.command()
def init(
    path: Optional[Path] = typer.Argument(None, help="Root path; defaults to CWD"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config"),
):
    """Write a default config file."""
    root = (path or Path.cwd()).resolve()
    config_path = root / CONFIG_FILENAME
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite", err=True)
        raise typer.Exit(code=1)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(default_config_text(), encoding="utf-8")
    typer.echo(f"Initialized config at {config_path}")


@app.command("check-config")
def check_config(path: Optional[Path] = typer.Option(None, "--path", help="Root path")):
    """Validate the config and the environment it points at."""
    config = _require_config(path)
    problems = []
    typer.echo(f"Root: {config.root}")
    typer.echo(f"Computer name: {config.computer_name}")
    invoker = ClaudeInvoker(binary=config.claude.binary, args=config.claude.args)
    resolved = invoker.resolve_binary()
    if resolved:
        typer.echo(f"Claude binary: {resolved}")
    else:
        problems.append(f"Claude binary not found: {config.claude.binary}")
    default_dir = config.claude.default_project_dir
    if default_dir.is_dir():
        typer.echo(f"Default project dir: {default_dir}")
    else:
        problems.append(f"Default project dir does not exist: {default_dir}")
    for base in config.claude.allowed_base_paths:
        if not base.is_dir():
            problems.append(f"Allowed base path does not exist: {base}")
    for store_path in (config.sessions_path, config.shortcuts_path):
        if not _is_writable_dir(store_path.parent):
            problems.append(f"Store directory is not writable: {store_path.parent}")
    typer.echo(f"Sessions file: {config.sessions_path}")
    typer.echo(f"Shortcuts file: {config.shortcuts_path}")
    typer.echo(f"Invoke timeout: {int(config.invoke_timeout_seconds)}s")
    if problems:
        for problem in problems:
            typer.echo(f"ERROR: {problem}", err=True)
        raise typer.Exit(code=1)
    typer.echo("Config OK")


@app.command()
def sessions(
    path: Optional[Path] = typer.Option(None, "--path", help="Root path"),
    limit: int = typer.Option(10, "--limit", help="Number of sessions to show"),
):
    """List recent Claude Code sessions on this machine."""
    config = _require_config(path)
    typer.echo(_discovery(config).format_sessions_list(limit))


@app.command()
def projects(
    path: Optional[Path] = typer.Option(None, "--path", help="Root path"),
    limit: int = typer.Option(5, "--limit", help="Number of projects to show"),
):
    """List Claude Code projects on this machine."""
    config = _require_config(path)
    typer.echo(_discovery(config).format_projects_list(limit))


@app.command()
def ask(
    message: str = typer.Argument(..., help="Prompt or /command to send"),
    path: Optional[Path] = typer.Option(None, "--path", help="Root path"),
    chat: str = typer.Option("local", "--chat", help="Console chat id"),
    project: Optional[Path] = typer.Option(
        None, "--project", help="Set the chat project directory first"
    ),
):
    """Send one message through the relay and print the replies."""
    config = _require_config(path)

    async def _run() -> None:
        bridge = build_bridge(config, ConsoleSink())
        try:
            if project is not None:
                await bridge.handle_text(CONSOLE_PLATFORM, chat, f"/project {project}")
            await bridge.handle_text(CONSOLE_PLATFORM, chat, message)
            await bridge.wait_idle()
        finally:
            await bridge.aclose()

    asyncio.run(_run())


@shortcut_app.command("add")
def shortcut_add(
    name: str = typer.Argument(..., help="Shortcut name"),
    command: str = typer.Argument(..., help="Command template; $1..$N are arguments"),
    path: Optional[Path] = typer.Option(None, "--path", help="Root path"),
    chat: str = typer.Option("local", "--chat", help="Console chat id"),
):
    config = _require_config(path)
    result = _shortcut_store(config).set_shortcut(
        chat_key(CONSOLE_PLATFORM, chat), name, command
    )
    if not result.success:
        typer.echo(f"Failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    verb = "updated" if result.is_update else "created"
    typer.echo(f"Shortcut /{result.name} {verb}.")


@shortcut_app.command("del")
def shortcut_del(
    name: str = typer.Argument(..., help="Shortcut name"),
    path: Optional[Path] = typer.Option(None, "--path", help="Root path"),
    chat: str = typer.Option("local", "--chat", help="Console chat id"),
):
    config = _require_config(path)
    result = _shortcut_store(config).delete_shortcut(chat_key(CONSOLE_PLATFORM, chat), name)
    if not result.success:
        typer.echo(f"Failed: {result.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Shortcut /{result.name} deleted.")


@shortcut_app.command("list")
def shortcut_list(
    path: Optional[Path] = typer.Option(None, "--path", help="Root path"),
    chat: str = typer.Option("local", "--chat", help="Console chat id"),
):
    config = _require_config(path)
    typer.echo(_shortcut_store(config).format_list(chat_key(CONSOLE_PLATFORM, chat)))
