from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .core.time_utils import parse_iso

DEFAULT_CACHE_TTL_SECONDS = 30.0
SESSION_FILE_SUFFIX = ".jsonl"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscoveredSession:
    session_id: str
    cwd: Optional[str]
    file_path: Path
    timestamp: Optional[str] = None
    agent_id: Optional[str] = None
    version: Optional[str] = None
    git_branch: Optional[str] = None
    message_count: int = 0
    user_message_count: int = 0
    project_path: Optional[str] = None


@dataclass
class DiscoveredProject:
    encoded_name: str
    path: str
    sessions: list[DiscoveredSession] = field(default_factory=list)

    @property
    def latest_session(self) -> Optional[DiscoveredSession]:
        return self.sessions[0] if self.sessions else None


def _timestamp_sort_key(session: DiscoveredSession) -> str:
    return session.timestamp or ""


def decode_project_path(encoded_name: str) -> str:
    """
    Best-effort reverse of the assistant's project directory naming, which
    replaces path separators with dashes. Dashes inside real names are lost.
    """
    decoded = encoded_name.replace("---", " - ").replace("--", "/").replace("-", "/")
    if re.match(r"^[A-Z]/", decoded):
        decoded = decoded[0] + ":" + decoded[1:]
    return decoded


def parse_session_file(path: Path) -> Optional[DiscoveredSession]:
    try:
        lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    except (OSError, UnicodeDecodeError):
        return None
    if not lines:
        return None
    try:
        first = json.loads(lines[0])
        last = json.loads(lines[-1])
    except json.JSONDecodeError:
        return None
    if not isinstance(first, dict) or not isinstance(last, dict):
        return None
    session_id = first.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        return None
    user_messages = 0
    for line in lines:
        try:
            entry: Any = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(entry, dict) and entry.get("type") == "user":
            user_messages += 1
    timestamp = last.get("timestamp") or first.get("timestamp")
    return DiscoveredSession(
        session_id=session_id,
        cwd=first.get("cwd") if isinstance(first.get("cwd"), str) else None,
        file_path=path,
        timestamp=timestamp if isinstance(timestamp, str) else None,
        agent_id=first.get("agentId") if isinstance(first.get("agentId"), str) else None,
        version=first.get("version") if isinstance(first.get("version"), str) else None,
        git_branch=(
            first.get("gitBranch") if isinstance(first.get("gitBranch"), str) else None
        ),
        message_count=len(lines),
        user_message_count=user_messages,
    )


def _format_timestamp(value: Optional[str], *, date_only: bool = False) -> str:
    parsed = parse_iso(value)
    if parsed is None:
        return "Unknown"
    if date_only:
        return parsed.strftime("%Y-%m-%d")
    return parsed.strftime("%Y-%m-%d %H:%M UTC")


class ClaudeSessionDiscovery:
    """Read-only view of the assistant's own session logs on this machine."""

    def __init__(
        self,
        claude_home: Optional[Path] = None,
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
    ) -> None:
        self.claude_home = claude_home or (Path.home() / ".claude")
        self.projects_dir = self.claude_home / "projects"
        self._cache_ttl_seconds = cache_ttl_seconds
        self._cache: Optional[list[DiscoveredProject]] = None
        self._cache_time = 0.0

    def invalidate_cache(self) -> None:
        self._cache = None
        self._cache_time = 0.0

    def list_projects(self) -> list[DiscoveredProject]:
        now = time.monotonic()
        if self._cache is not None and (now - self._cache_time) < self._cache_ttl_seconds:
            return self._cache
        projects: list[DiscoveredProject] = []
        if self.projects_dir.is_dir():
            for entry in sorted(self.projects_dir.iterdir()):
                if not entry.is_dir():
                    continue
                sessions = self.sessions_for_project(entry)
                if not sessions:
                    continue
                path = sessions[0].cwd or decode_project_path(entry.name)
                projects.append(
                    DiscoveredProject(
                        encoded_name=entry.name,
                        path=path,
                        sessions=[replace(s, project_path=path) for s in sessions],
                    )
                )
        projects.sort(
            key=lambda p: (p.latest_session.timestamp or "") if p.latest_session else "",
            reverse=True,
        )
        self._cache = projects
        self._cache_time = now
        return projects

    def sessions_for_project(self, project_dir: Path) -> list[DiscoveredSession]:
        sessions: list[DiscoveredSession] = []
        try:
            candidates = [
                p for p in project_dir.iterdir() if p.suffix == SESSION_FILE_SUFFIX
            ]
        except OSError as exc:
            logger.debug("Failed to list %s: %s", project_dir, exc)
            return sessions
        for path in candidates:
            session = parse_session_file(path)
            if session is not None:
                sessions.append(session)
        sessions.sort(key=_timestamp_sort_key, reverse=True)
        return sessions

    def find_session(self, session_id: str) -> Optional[DiscoveredSession]:
        needle = (session_id or "").strip()
        if not needle:
            return None
        for project in self.list_projects():
            for session in project.sessions:
                if session.session_id == needle or session.session_id.startswith(needle):
                    return session
        return None

    def recent_sessions(self, limit: int = 10) -> list[DiscoveredSession]:
        sessions = [s for project in self.list_projects() for s in project.sessions]
        sessions.sort(key=_timestamp_sort_key, reverse=True)
        return sessions[:limit]

    def format_session_info(self, session: DiscoveredSession, *, details: bool = False) -> str:
        lines = [
            f"Session: {session.session_id[:8]}...",
            f"Project: {session.project_path or session.cwd or 'Unknown'}",
            f"Last activity: {_format_timestamp(session.timestamp)}",
        ]
        if details:
            lines.append(f"Messages: {session.message_count}")
            lines.append(f"Branch: {session.git_branch or 'N/A'}")
        return "\n".join(lines)

    def format_sessions_list(self, limit: int = 10) -> str:
        sessions = self.recent_sessions(limit)
        if not sessions:
            return "No Claude Code sessions found."
        lines = ["Recent Sessions:", ""]
        for index, session in enumerate(sessions, start=1):
            path = session.project_path or session.cwd or "Unknown"
            short_path = "/".join(Path(path).parts[-2:]) if path != "Unknown" else path
            lines.append(f"{index}. [{session.session_id[:8]}] {short_path}")
            lines.append(f"   {_format_timestamp(session.timestamp)}")
        lines.append("")
        lines.append("Use /resume <id> to continue a session")
        return "\n".join(lines)

    def format_projects_list(self, limit: int = 5) -> str:
        projects = self.list_projects()[:limit]
        if not projects:
            return "No Claude Code projects found."
        lines = ["Recent Projects:", ""]
        for index, project in enumerate(projects, start=1):
            short_path = project.path
            if len(short_path) > 40:
                short_path = "..." + short_path[-37:]
            latest = project.latest_session
            last = _format_timestamp(latest.timestamp if latest else None, date_only=True)
            lines.append(f"{index}. {short_path}")
            lines.append(f"   Sessions: {len(project.sessions)}, Last: {last}")
        return "\n".join(lines)
