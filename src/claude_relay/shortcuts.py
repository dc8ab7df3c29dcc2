from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .core.time_utils import now_iso
from .logging_utils import log_event
from .store import MapStore

COMMAND_PREFIX = "/"
MAX_SHORTCUTS_PER_CHAT = 20
MAX_SHORTCUT_NAME_LENGTH = 20
MAX_SHORTCUT_COMMAND_LENGTH = 1000
LIST_PREVIEW_CHARS = 40

RESERVED_NAMES = frozenset(
    {
        "help",
        "start",
        "new",
        "status",
        "project",
        "projects",
        "cancel",
        "queue",
        "clear",
        "sessions",
        "resume",
        "shortcut",
        "shortcuts",
        "export",
    }
)

BLOCKED_PATTERNS = (
    re.compile(r"rm\s+-rf", re.IGNORECASE),
    re.compile(r"del\s+/[sfq]", re.IGNORECASE),
    re.compile(r"format\s+[a-z]:", re.IGNORECASE),
    re.compile(r"mkfs", re.IGNORECASE),
    re.compile(r"dd\s+if=", re.IGNORECASE),
    re.compile(r">\s*/dev/sd", re.IGNORECASE),
    re.compile(r"chmod\s+777", re.IGNORECASE),
    re.compile(r"curl.*\|.*sh", re.IGNORECASE),
    re.compile(r"wget.*\|.*sh", re.IGNORECASE),
)

_NAME_RE = re.compile(r"^[a-z0-9_]+$")
_PLACEHOLDER_RE = re.compile(r"\$(\d+)")

NO_SHORTCUTS_MESSAGE = (
    "No shortcuts defined.\n\n"
    "Use /shortcut add <name> <command> to create one.\n"
    "Example: /shortcut add build run npm build"
)


@dataclass
class ShortcutRecord:
    command: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Optional["ShortcutRecord"]:
        command = payload.get("command")
        if not isinstance(command, str) or not command:
            return None
        created_at = payload.get("created_at") or payload.get("createdAt")
        updated_at = payload.get("updated_at") or payload.get("updatedAt")
        return cls(
            command=command,
            created_at=created_at if isinstance(created_at, str) else None,
            updated_at=updated_at if isinstance(updated_at, str) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ShortcutEntry:
    name: str
    command: str
    created_at: Optional[str]
    updated_at: Optional[str]


@dataclass(frozen=True)
class ShortcutResult:
    success: bool
    name: Optional[str] = None
    is_update: bool = False
    error: Optional[str] = None


def validate_name(name: Any) -> tuple[Optional[str], Optional[str]]:
    """Return ``(normalized_name, error)``."""
    if not isinstance(name, str) or not name.strip():
        return None, "Shortcut name is required"
    normalized = name.strip().lower()
    if len(normalized) > MAX_SHORTCUT_NAME_LENGTH:
        return None, f"Name too long (max {MAX_SHORTCUT_NAME_LENGTH} chars)"
    if not _NAME_RE.match(normalized):
        return None, "Name can only contain letters, numbers, and underscores"
    if normalized in RESERVED_NAMES:
        return None, f'"{normalized}" is a reserved command name'
    return normalized, None


def validate_command(command: Any) -> tuple[Optional[str], Optional[str]]:
    """Return ``(normalized_command, error)``."""
    if not isinstance(command, str) or not command.strip():
        return None, "Command content is required"
    normalized = command.strip()
    if len(normalized) > MAX_SHORTCUT_COMMAND_LENGTH:
        return None, f"Command too long (max {MAX_SHORTCUT_COMMAND_LENGTH} chars)"
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(normalized):
            return None, "Command contains blocked dangerous pattern"
    return normalized, None


def substitute_placeholders(template: str, args: list[str]) -> str:
    def replace(match: re.Match[str]) -> str:
        index = int(match.group(1))
        if 1 <= index <= len(args):
            return args[index - 1]
        return ""

    return _PLACEHOLDER_RE.sub(replace, template).strip()


class ShortcutStore:
    """Per-chat command templates, written through to the backend on every change."""

    def __init__(
        self,
        backend: MapStore,
        *,
        max_per_chat: int = MAX_SHORTCUTS_PER_CHAT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backend = backend
        self._max_per_chat = max_per_chat
        self._logger = logger or logging.getLogger(__name__)
        self._shortcuts: dict[str, dict[str, ShortcutRecord]] = {}
        for key, payload in backend.load().items():
            if not isinstance(payload, dict):
                continue
            records: dict[str, ShortcutRecord] = {}
            for name, raw in payload.items():
                if not isinstance(name, str) or not isinstance(raw, dict):
                    continue
                record = ShortcutRecord.from_dict(raw)
                if record is not None:
                    records[name.lower()] = record
            self._shortcuts[key] = records

    def set_shortcut(self, key: str, name: str, command: str) -> ShortcutResult:
        result = self._apply_set(key, name, command)
        if result.success:
            self._save()
        return result

    async def aset_shortcut(self, key: str, name: str, command: str) -> ShortcutResult:
        """Like ``set_shortcut`` but writes the backend from a worker thread."""
        result = self._apply_set(key, name, command)
        if result.success:
            await self._asave()
        return result

    def _apply_set(self, key: str, name: str, command: str) -> ShortcutResult:
        normalized_name, error = validate_name(name)
        if error or normalized_name is None:
            return ShortcutResult(success=False, error=error)
        normalized_command, error = validate_command(command)
        if error or normalized_command is None:
            return ShortcutResult(success=False, error=error)
        records = self._shortcuts.setdefault(key, {})
        existing = records.get(normalized_name)
        is_update = existing is not None
        if not is_update and len(records) >= self._max_per_chat:
            return ShortcutResult(
                success=False,
                error=f"Maximum shortcuts reached ({self._max_per_chat})",
            )
        now = now_iso()
        records[normalized_name] = ShortcutRecord(
            command=normalized_command,
            created_at=existing.created_at if existing and existing.created_at else now,
            updated_at=now,
        )
        log_event(
            self._logger,
            logging.INFO,
            "shortcuts.set",
            chat=key,
            name=normalized_name,
            is_update=is_update,
        )
        return ShortcutResult(success=True, name=normalized_name, is_update=is_update)

    def get_shortcut(self, key: str, name: str) -> Optional[str]:
        record = self._shortcuts.get(key, {}).get(name.lower())
        return record.command if record else None

    def delete_shortcut(self, key: str, name: str) -> ShortcutResult:
        result = self._apply_delete(key, name)
        if result.success:
            self._save()
        return result

    async def adelete_shortcut(self, key: str, name: str) -> ShortcutResult:
        result = self._apply_delete(key, name)
        if result.success:
            await self._asave()
        return result

    def _apply_delete(self, key: str, name: str) -> ShortcutResult:
        normalized = (name or "").strip().lower()
        records = self._shortcuts.get(key)
        if not records or normalized not in records:
            return ShortcutResult(success=False, error="Shortcut not found")
        del records[normalized]
        log_event(self._logger, logging.INFO, "shortcuts.deleted", chat=key, name=normalized)
        return ShortcutResult(success=True, name=normalized)

    def list(self, key: str) -> list[ShortcutEntry]:
        return [
            ShortcutEntry(
                name=name,
                command=record.command,
                created_at=record.created_at,
                updated_at=record.updated_at,
            )
            for name, record in self._shortcuts.get(key, {}).items()
        ]

    def format_list(self, key: str) -> str:
        entries = self.list(key)
        if not entries:
            return NO_SHORTCUTS_MESSAGE
        lines = ["Your Shortcuts:", ""]
        for index, entry in enumerate(entries, start=1):
            preview = entry.command
            if len(preview) > LIST_PREVIEW_CHARS:
                preview = preview[: LIST_PREVIEW_CHARS - 3] + "..."
            lines.append(f'{index}. /{entry.name} -> "{preview}"')
        lines.extend(
            [
                "",
                "Usage:",
                "/shortcut add <name> <command>",
                "/shortcut del <name>",
                "/shortcut list",
            ]
        )
        return "\n".join(lines)

    def expand(self, key: str, message: str) -> Optional[str]:
        """
        Expand ``/name arg1 arg2`` into the stored template with ``$1``..``$N``
        substituted. Returns None when the message is not a known shortcut.
        """
        if not isinstance(message, str) or not message.startswith(COMMAND_PREFIX):
            return None
        parts = message[len(COMMAND_PREFIX) :].split()
        if not parts:
            return None
        command = self.get_shortcut(key, parts[0])
        if command is None:
            return None
        return substitute_placeholders(command, parts[1:])

    def _save(self) -> None:
        self._backend.save(self._payload())

    async def _asave(self) -> None:
        # Lock waits sleep; keep them off the event loop.
        await asyncio.to_thread(self._backend.save, self._payload())

    def _payload(self) -> dict[str, Any]:
        return {
            key: {name: record.to_dict() for name, record in records.items()}
            for key, records in self._shortcuts.items()
            if records
        }
