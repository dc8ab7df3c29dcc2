from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Optional, Protocol, Sequence, Union

from .claude_cli import (
    DEFAULT_REPLY_MAX_CHARS,
    DEFAULT_TIMEOUT_SECONDS,
    ClaudeResult,
    ClaudeSuccess,
    SpawnCallback,
    format_response,
    split_message,
    validate_cwd,
)
from .core.processes import DEFAULT_KILL_GRACE_SECONDS, terminate_process
from .logging_utils import log_event
from .session_discovery import ClaudeSessionDiscovery
from .session_store import SessionStore
from .shortcuts import COMMAND_PREFIX, ShortcutStore
from .store import ChatId, chat_key
from .task_queue import TASK_TIMEOUT_SECONDS, Task, TaskQueue

MAX_REPLY_CHUNKS = 5
DISCOVERY_LIST_LIMIT = 10

CommandHandler = Callable[[str, str], Awaitable[None]]


class ReplySink(Protocol):
    async def send(self, key: str, text: str) -> None: ...


class Invoker(Protocol):
    async def invoke(
        self,
        prompt: str,
        *,
        cwd: Union[str, Path],
        session_id: Optional[str] = None,
        continue_session: bool = False,
        timeout_seconds: Optional[float] = None,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> ClaudeResult: ...


@dataclass(frozen=True)
class CommandSpec:
    name: str
    description: str
    handler: CommandHandler
    usage: Optional[str] = None


def parse_command(text: str) -> tuple[str, str]:
    """Split ``/name@bot args`` into ``("name", "args")``."""
    body = text[len(COMMAND_PREFIX) :]
    head, _, args = body.partition(" ")
    name = head.split("@", 1)[0].strip().lower()
    return name, args.strip()


def _format_help_text(specs: Sequence[CommandSpec], computer_name: str) -> str:
    lines = [f"Claude Code Bot ({computer_name})", "", "Commands:"]
    for spec in specs:
        usage = spec.usage or f"/{spec.name}"
        lines.append(f"{usage} - {spec.description}")
    lines.append("")
    lines.append("Any other message is sent to Claude Code.")
    return "\n".join(lines)


class ChatBridge:
    """
    Platform-neutral message handling between a chat adapter and the assistant.

    Adapters call ``handle_text`` for each inbound message and receive replies
    through the ``ReplySink``. Each chat gets one drain worker that runs its
    queued tasks strictly in order.
    """

    def __init__(
        self,
        queue: TaskQueue,
        sessions: SessionStore,
        shortcuts: ShortcutStore,
        invoker: Invoker,
        sink: ReplySink,
        *,
        default_project_dir: Path,
        discovery: Optional[ClaudeSessionDiscovery] = None,
        computer_name: Optional[str] = None,
        reply_max_chars: int = DEFAULT_REPLY_MAX_CHARS,
        invoke_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        allowed_base_paths: Optional[Sequence[Path]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._queue = queue
        self._sessions = sessions
        self._shortcuts = shortcuts
        self._invoker = invoker
        self._sink = sink
        self._default_project_dir = default_project_dir
        self._discovery = discovery
        self._computer_name = computer_name or socket.gethostname()
        self._reply_max_chars = reply_max_chars
        self._invoke_timeout_seconds = min(invoke_timeout_seconds, TASK_TIMEOUT_SECONDS)
        self._kill_grace_seconds = kill_grace_seconds
        self._allowed_base_paths = list(allowed_base_paths or [])
        self._logger = logger or logging.getLogger(__name__)
        self._workers: dict[str, asyncio.Task[None]] = {}
        self._command_specs = {spec.name: spec for spec in self._build_command_specs()}

    def _build_command_specs(self) -> list[CommandSpec]:
        return [
            CommandSpec("start", "show welcome message", self._handle_help),
            CommandSpec("help", "show this help", self._handle_help),
            CommandSpec("new", "start a new session", self._handle_new),
            CommandSpec("status", "show current session info", self._handle_status),
            CommandSpec(
                "project",
                "show or set the project directory",
                self._handle_project,
                usage="/project [path]",
            ),
            CommandSpec("projects", "list Claude Code projects", self._handle_projects),
            CommandSpec("sessions", "list recent sessions", self._handle_sessions),
            CommandSpec(
                "resume", "resume a session", self._handle_resume, usage="/resume <id>"
            ),
            CommandSpec("cancel", "cancel the running task", self._handle_cancel),
            CommandSpec("queue", "show queued tasks", self._handle_queue),
            CommandSpec("clear", "drop pending tasks", self._handle_clear),
            CommandSpec(
                "shortcut",
                "manage shortcuts",
                self._handle_shortcut,
                usage="/shortcut add|del|list",
            ),
            CommandSpec("shortcuts", "list shortcuts", self._handle_shortcuts),
        ]

    async def handle_text(self, platform: str, chat_id: ChatId, text: str) -> None:
        key = chat_key(platform, chat_id)
        message = (text or "").strip()
        if not message:
            return
        if not message.startswith(COMMAND_PREFIX):
            await self._submit(key, message)
            return
        name, args = parse_command(message)
        log_event(
            self._logger,
            logging.INFO,
            "bridge.command",
            chat=key,
            name=name,
            args_len=len(args),
        )
        spec = self._command_specs.get(name)
        if spec is not None:
            await spec.handler(key, args)
            return
        expanded = self._shortcuts.expand(key, message)
        if expanded is None:
            await self._send(key, f"Unsupported command: /{name}. Send /help for options.")
            return
        if not expanded:
            await self._send(key, f"Shortcut /{name} expanded to an empty prompt.")
            return
        await self._submit(key, expanded)

    async def wait_idle(self, key: Optional[str] = None) -> None:
        if key is not None:
            workers = [self._workers[key]] if key in self._workers else []
        else:
            workers = list(self._workers.values())
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def aclose(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        await self._sessions.aclose()

    # Task flow

    def _resolve_target(self, key: str) -> tuple[str, Optional[str]]:
        record = self._sessions.get(key)
        project_dir = (
            record.project_dir
            if record and record.project_dir
            else str(self._default_project_dir)
        )
        return project_dir, record.session_id if record else None

    async def _submit(self, key: str, prompt: str) -> None:
        project_dir, session_id = self._resolve_target(key)
        result = self._queue.enqueue(
            key, prompt, project_dir=project_dir, session_id=session_id
        )
        if not result.accepted:
            await self._send(key, f"Cannot queue task: {result.error}")
            return
        if result.position > 1:
            await self._send(
                key,
                f"Queued at position {result.position}. Use /queue to view or /cancel to stop the current task.",
            )
        else:
            await self._send(key, "Processing...")
        self._ensure_worker(key)

    def _ensure_worker(self, key: str) -> None:
        worker = self._workers.get(key)
        if worker is not None and not worker.done():
            return
        worker = asyncio.create_task(self._drain(key))
        self._workers[key] = worker
        worker.add_done_callback(partial(self._on_worker_done, key))

    def _on_worker_done(self, key: str, worker: asyncio.Task[None]) -> None:
        if self._workers.get(key) is worker:
            del self._workers[key]
        if worker.cancelled():
            return
        exc = worker.exception()
        if exc is not None:
            log_event(self._logger, logging.ERROR, "bridge.worker.failed", chat=key, exc=exc)

    async def _drain(self, key: str) -> None:
        while True:
            task = self._queue.dispatch_next(key)
            if task is None:
                return
            try:
                await self._run_task(key, task)
            finally:
                self._queue.complete(key, task.task_id)

    async def _run_task(self, key: str, task: Task) -> None:
        project_dir = task.project_dir or str(self._default_project_dir)
        session_id = task.session_id
        current_dir, current_session = self._resolve_target(key)
        if current_dir == project_dir:
            # An earlier task may have started or dropped the session since enqueue.
            session_id = current_session

        def on_spawn(proc: asyncio.subprocess.Process) -> None:
            if not self._queue.register_process_handle(key, proc, task.task_id):
                terminate_process(
                    proc, grace_seconds=self._kill_grace_seconds, log=self._logger
                )

        try:
            result = await self._invoker.invoke(
                task.prompt,
                cwd=project_dir,
                session_id=session_id,
                timeout_seconds=self._invoke_timeout_seconds,
                on_spawn=on_spawn,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "bridge.invoke.failed",
                chat=key,
                task_id=task.task_id,
                exc=exc,
            )
            if self._queue.is_current(key, task.task_id):
                await self._send(key, "Claude Code encountered an error. Please try again.")
            return

        if not self._queue.is_current(key, task.task_id):
            log_event(
                self._logger,
                logging.INFO,
                "bridge.result.discarded",
                chat=key,
                task_id=task.task_id,
            )
            return

        if isinstance(result, ClaudeSuccess):
            if result.session_id:
                self._sessions.update_session_id(key, result.session_id, project_dir)
            text = format_response(result.text, self._reply_max_chars * MAX_REPLY_CHUNKS)
            for chunk in split_message(text, self._reply_max_chars):
                await self._send(key, chunk)
            return

        log_event(
            self._logger,
            logging.WARNING,
            "bridge.task.failed",
            chat=key,
            task_id=task.task_id,
            kind=result.kind.value,
        )
        if result.invalid_session:
            self._sessions.clear(key)
            await self._send(
                key,
                f"{result.message}\nThe previous session is no longer available; "
                "your next message starts a new conversation.",
            )
            return
        await self._send(key, result.message)

    async def _send(self, key: str, text: str) -> None:
        try:
            await self._sink.send(key, text)
        except Exception as exc:
            log_event(self._logger, logging.WARNING, "bridge.send.failed", chat=key, exc=exc)

    # Command handlers

    async def _handle_help(self, key: str, _args: str) -> None:
        await self._send(
            key,
            _format_help_text(list(self._command_specs.values()), self._computer_name),
        )

    async def _handle_new(self, key: str, _args: str) -> None:
        self._sessions.clear(key)
        await self._send(key, "Session cleared. Next message will start a new conversation.")

    async def _handle_status(self, key: str, _args: str) -> None:
        status = self._queue.status(key)
        lines = [
            "Current Status:",
            "",
            self._sessions.status_string(key),
            f"Queue: {status.queue_length} task(s)"
            + (" (running)" if status.is_processing else ""),
        ]
        await self._send(key, "\n".join(lines))

    async def _handle_project(self, key: str, args: str) -> None:
        if not args:
            project_dir, _session_id = self._resolve_target(key)
            await self._send(key, f"Current project directory:\n{project_dir}")
            return
        error = validate_cwd(args, self._allowed_base_paths)
        if error:
            await self._send(key, f"Cannot use that directory: {error}")
            return
        resolved = str(Path(args).expanduser().resolve())
        previous = self._sessions.get(key)
        self._sessions.set_project_dir(key, resolved)
        if previous is not None and previous.project_dir != resolved and previous.session_id:
            # Sessions belong to a project; switching drops the handle.
            self._sessions.clear(key)
        await self._send(key, f"Project directory set to:\n{resolved}")

    async def _handle_projects(self, key: str, _args: str) -> None:
        if self._discovery is None:
            await self._send(key, "Session discovery is not available.")
            return
        listing = self._discovery.format_projects_list(DISCOVERY_LIST_LIMIT)
        await self._send(key, f"{self._computer_name}:\n\n{listing}")

    async def _handle_sessions(self, key: str, _args: str) -> None:
        if self._discovery is None:
            await self._send(key, "Session discovery is not available.")
            return
        await self._send(key, self._discovery.format_sessions_list(DISCOVERY_LIST_LIMIT))

    async def _handle_resume(self, key: str, args: str) -> None:
        if not args:
            await self._send(key, "Usage: /resume <session id>")
            return
        if self._discovery is None:
            await self._send(key, "Session discovery is not available.")
            return
        session = self._discovery.find_session(args)
        if session is None:
            await self._send(
                key,
                f"Session not found: {args}\n\nUse /sessions to see available sessions.",
            )
            return
        self._sessions.update_session_id(key, session.session_id, session.cwd)
        lines = [
            "Session resumed!",
            "",
            self._discovery.format_session_info(session, details=True),
            "",
            "Send a message to continue the conversation.",
        ]
        await self._send(key, "\n".join(lines))

    async def _handle_cancel(self, key: str, _args: str) -> None:
        result = self._queue.cancel_current(key)
        if not result.success:
            await self._send(key, result.message)
            return
        await self._send(key, f"Task cancelled. [{result.task_id}]")

    async def _handle_queue(self, key: str, _args: str) -> None:
        await self._send(key, self._queue.format_status(key))

    async def _handle_clear(self, key: str, _args: str) -> None:
        result = self._queue.clear_queue(key)
        await self._send(key, f"Cleared {result.cleared_count} pending task(s).")

    async def _handle_shortcuts(self, key: str, _args: str) -> None:
        await self._send(key, self._shortcuts.format_list(key))

    async def _handle_shortcut(self, key: str, args: str) -> None:
        action, _, rest = args.partition(" ")
        action = action.lower()
        if action in ("", "list", "ls"):
            await self._handle_shortcuts(key, "")
            return
        if action == "add":
            name, _, command = rest.strip().partition(" ")
            if not name or not command.strip():
                await self._send(key, "Usage: /shortcut add <name> <command>")
                return
            result = await self._shortcuts.aset_shortcut(key, name, command)
            if not result.success:
                await self._send(key, f"Failed: {result.error}")
                return
            verb = "updated" if result.is_update else "created"
            await self._send(key, f"Shortcut /{result.name} {verb}.")
            return
        if action in ("del", "delete", "rm", "remove"):
            name = rest.strip()
            if not name:
                await self._send(key, "Usage: /shortcut del <name>")
                return
            result = await self._shortcuts.adelete_shortcut(key, name)
            if not result.success:
                await self._send(key, f"Failed: {result.error}")
                return
            await self._send(key, f"Shortcut /{result.name} deleted.")
            return
        await self._send(key, "Usage: /shortcut add|del|list")
