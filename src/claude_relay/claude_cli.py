from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from subprocess import PIPE
from typing import Callable, Iterable, Mapping, Optional, Sequence, Union

from .core.processes import DEFAULT_KILL_GRACE_SECONDS, terminate_process
from .core.utils import resolve_executable, subprocess_env
from .logging_utils import log_event, prompt_preview

MAX_PROMPT_LENGTH = 10_000
MAX_PATH_LENGTH = 500
DEFAULT_TIMEOUT_SECONDS = 5 * 60
DEFAULT_REPLY_MAX_CHARS = 4000
STDERR_LOG_CHARS = 200

SESSION_ID_RE = re.compile(r"^[a-f0-9-]{8,}$", re.IGNORECASE)
INVALID_SESSION_MARKERS = (
    "no conversation found with session id",
    "invalid session",
    "session not found",
)
MANAGED_FLAGS = ("--resume", "--continue", "--output-format")

GENERIC_FAILURE_MESSAGE = "Claude Code encountered an error. Please try again."
SPAWN_FAILURE_MESSAGE = "Failed to start Claude Code. Please check installation."
TRUNCATION_SUFFIX = "\n\n... (truncated)"


class FailureKind(str, Enum):
    INPUT_ERROR = "input_error"
    PATH_ERROR = "path_error"
    INVALID_SESSION_ID = "invalid_session_id"
    TIMEOUT = "timeout"
    PROCESS_ERROR = "process_error"
    INVALID_SESSION = "invalid_session"
    SPAWN_ERROR = "spawn_error"


@dataclass(frozen=True)
class ClaudeSuccess:
    text: str
    session_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return True

    @property
    def invalid_session(self) -> bool:
        return False


@dataclass(frozen=True)
class ClaudeFailure:
    kind: FailureKind
    message: str

    @property
    def success(self) -> bool:
        return False

    @property
    def invalid_session(self) -> bool:
        return self.kind == FailureKind.INVALID_SESSION


ClaudeResult = Union[ClaudeSuccess, ClaudeFailure]
SpawnCallback = Callable[[asyncio.subprocess.Process], None]


def validate_prompt(prompt: object) -> tuple[Optional[str], Optional[str]]:
    """Return ``(sanitized_prompt, error)``."""
    if not isinstance(prompt, str) or not prompt.strip():
        return None, "Prompt must be a non-empty string"
    if len(prompt) > MAX_PROMPT_LENGTH:
        return None, f"Prompt too long (max {MAX_PROMPT_LENGTH} characters)"
    return prompt.strip(), None


def validate_cwd(
    cwd: object, allowed_base_paths: Optional[Sequence[Path]] = None
) -> Optional[str]:
    """Return an error message, or None when ``cwd`` is usable."""
    if not isinstance(cwd, (str, Path)) or not str(cwd):
        return "Working directory must be a non-empty string"
    raw = str(cwd)
    if len(raw) > MAX_PATH_LENGTH:
        return "Path too long"
    if ".." in Path(raw).parts:
        return "Path traversal not allowed"
    resolved = Path(raw).expanduser().resolve()
    if allowed_base_paths:
        allowed = False
        for base in allowed_base_paths:
            base_resolved = Path(base).expanduser().resolve()
            if resolved == base_resolved or base_resolved in resolved.parents:
                allowed = True
                break
        if not allowed:
            return "Path not in allowed directories"
    if not resolved.is_dir():
        return "Directory does not exist"
    return None


def strip_flag(args: Iterable[str], flag: str, *, takes_value: bool = True) -> list[str]:
    cleaned: list[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        arg_str = str(arg)
        if arg_str == flag:
            skip_next = takes_value
            continue
        if arg_str.startswith(f"{flag}="):
            continue
        cleaned.append(arg_str)
    return cleaned


def build_claude_command(
    binary: str,
    args: Sequence[str] = (),
    *,
    session_id: Optional[str] = None,
    continue_session: bool = False,
) -> list[str]:
    """Assemble argv; resume flags are owned here, never taken from config."""
    cleaned = [str(a) for a in args]
    for flag in MANAGED_FLAGS:
        cleaned = strip_flag(cleaned, flag, takes_value=flag != "--continue")
    command = [binary, *cleaned, "--output-format", "json"]
    if session_id:
        command.extend(["--resume", session_id])
    elif continue_session:
        command.append("--continue")
    return command


def is_invalid_session_error(stderr: str) -> bool:
    lowered = (stderr or "").lower()
    return any(marker in lowered for marker in INVALID_SESSION_MARKERS)


def parse_claude_output(stdout: str) -> ClaudeSuccess:
    try:
        payload = json.loads(stdout)
    except (TypeError, ValueError):
        payload = None
    if isinstance(payload, dict):
        text = payload.get("result") or payload.get("message") or stdout
        session_id = payload.get("session_id")
        return ClaudeSuccess(
            text=text if isinstance(text, str) else json.dumps(text),
            session_id=session_id if isinstance(session_id, str) and session_id else None,
        )
    return ClaudeSuccess(text=stdout or "No output", session_id=None)


def format_response(text: Optional[str], max_len: int = DEFAULT_REPLY_MAX_CHARS) -> str:
    if not text or not text.strip():
        return "No response"
    trimmed = text.strip()
    if len(trimmed) > max_len:
        keep = max(1, max_len - 100)
        trimmed = trimmed[:keep] + TRUNCATION_SUFFIX
    return trimmed


def split_message(text: str, max_len: int) -> list[str]:
    if max_len <= 0:
        raise ValueError("max_len must be positive")
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= max_len:
            chunks.append(remaining)
            break
        cut = remaining.rfind("\n", 0, max_len)
        if cut == -1 or cut < max_len // 2:
            cut = remaining.rfind(" ", 0, max_len)
        if cut == -1 or cut < max_len // 2:
            cut = max_len
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].strip()
    return chunks


class ClaudeInvoker:
    """
    Runs one headless assistant call per prompt.

    The prompt is written to a temporary file that becomes the child's stdin,
    so prompt text never reaches a shell or the argv.
    """

    def __init__(
        self,
        *,
        binary: str = "claude",
        args: Sequence[str] = (),
        default_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        allowed_base_paths: Optional[Sequence[Path]] = None,
        env: Optional[Mapping[str, str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._binary = binary
        self._args = list(args)
        self._default_timeout_seconds = default_timeout_seconds
        self._kill_grace_seconds = kill_grace_seconds
        self._allowed_base_paths = list(allowed_base_paths or [])
        self._env = subprocess_env(base_env=env)
        self._logger = logger or logging.getLogger(__name__)

    @property
    def binary(self) -> str:
        return self._binary

    def resolve_binary(self) -> Optional[str]:
        return resolve_executable(self._binary, env=self._env)

    async def invoke(
        self,
        prompt: str,
        *,
        cwd: Union[str, Path],
        session_id: Optional[str] = None,
        continue_session: bool = False,
        timeout_seconds: Optional[float] = None,
        on_spawn: Optional[SpawnCallback] = None,
    ) -> ClaudeResult:
        sanitized, error = validate_prompt(prompt)
        if error or sanitized is None:
            return ClaudeFailure(FailureKind.INPUT_ERROR, f"Input error: {error}")
        path_error = validate_cwd(cwd, self._allowed_base_paths)
        if path_error:
            return ClaudeFailure(FailureKind.PATH_ERROR, f"Path error: {path_error}")
        if session_id and not SESSION_ID_RE.match(session_id):
            return ClaudeFailure(FailureKind.INVALID_SESSION_ID, "Invalid session ID format")
        timeout = timeout_seconds or self._default_timeout_seconds
        workdir = Path(str(cwd)).expanduser().resolve()
        log_event(
            self._logger,
            logging.INFO,
            "claude.invoke",
            cwd=str(workdir),
            prompt_len=len(sanitized),
            prompt_preview=prompt_preview(sanitized),
            resume=bool(session_id),
            timeout_seconds=timeout,
        )

        resolved = self.resolve_binary()
        if not resolved:
            log_event(self._logger, logging.ERROR, "claude.binary.missing", binary=self._binary)
            return ClaudeFailure(FailureKind.SPAWN_ERROR, SPAWN_FAILURE_MESSAGE)
        command = build_claude_command(
            resolved,
            self._args,
            session_id=session_id,
            continue_session=continue_session,
        )

        fd, prompt_path = tempfile.mkstemp(prefix="claude-prompt-", suffix=".txt")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(sanitized)
            with open(prompt_path, "rb") as stdin:
                return await self._run(command, stdin, workdir, timeout, on_spawn)
        finally:
            try:
                os.unlink(prompt_path)
            except FileNotFoundError:
                pass

    async def _run(
        self,
        command: list[str],
        stdin,
        workdir: Path,
        timeout: float,
        on_spawn: Optional[SpawnCallback],
    ) -> ClaudeResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(workdir),
                stdin=stdin,
                stdout=PIPE,
                stderr=PIPE,
                env=self._env,
            )
        except OSError as exc:
            log_event(self._logger, logging.ERROR, "claude.spawn.failed", exc=exc)
            return ClaudeFailure(FailureKind.SPAWN_ERROR, SPAWN_FAILURE_MESSAGE)

        if on_spawn is not None:
            on_spawn(proc)

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError:
            log_event(
                self._logger,
                logging.WARNING,
                "claude.timeout",
                pid=proc.pid,
                timeout_seconds=timeout,
            )
            terminate_process(proc, grace_seconds=self._kill_grace_seconds, log=self._logger)
            await proc.wait()
            return ClaudeFailure(
                FailureKind.TIMEOUT,
                f"Request timed out after {int(timeout)} seconds",
            )
        except asyncio.CancelledError:
            terminate_process(proc, grace_seconds=self._kill_grace_seconds, log=self._logger)
            raise

        stdout = (stdout_raw or b"").decode("utf-8", errors="replace")
        stderr = (stderr_raw or b"").decode("utf-8", errors="replace")
        exit_code = proc.returncode
        if exit_code != 0:
            invalid_session = is_invalid_session_error(stderr)
            log_event(
                self._logger,
                logging.WARNING,
                "claude.exit.failed",
                exit_code=exit_code,
                invalid_session=invalid_session,
                stderr=stderr[:STDERR_LOG_CHARS] or None,
            )
            if invalid_session:
                return ClaudeFailure(FailureKind.INVALID_SESSION, GENERIC_FAILURE_MESSAGE)
            return ClaudeFailure(FailureKind.PROCESS_ERROR, GENERIC_FAILURE_MESSAGE)

        result = parse_claude_output(stdout)
        log_event(
            self._logger,
            logging.INFO,
            "claude.completed",
            output_len=len(result.text),
            has_session=bool(result.session_id),
        )
        return result
