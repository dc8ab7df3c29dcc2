from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Optional

from .core.time_utils import now_iso
from .logging_utils import log_event
from .store import MapStore

DEFAULT_DEBOUNCE_SECONDS = 2.0
NO_SESSION_MESSAGE = "No active session.\nUse /project <path> to set a project directory."


@dataclass
class SessionRecord:
    project_dir: Optional[str] = None
    session_id: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SessionRecord":
        project_dir = payload.get("project_dir") or payload.get("projectDir")
        if not isinstance(project_dir, str) or not project_dir:
            project_dir = None
        session_id = payload.get("session_id") or payload.get("sessionId")
        if not isinstance(session_id, str) or not session_id:
            session_id = None
        updated_at = payload.get("updated_at") or payload.get("updatedAt")
        if not isinstance(updated_at, str):
            updated_at = None
        return cls(project_dir=project_dir, session_id=session_id, updated_at=updated_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_dir": self.project_dir,
            "session_id": self.session_id,
            "updated_at": self.updated_at,
        }


class SessionStore:
    """
    Chat key -> project directory / assistant session handle.

    Mutations update the in-memory map and arm a single debounce timer; the
    whole map is written once when the window closes. Mutations made inside
    the window are lost if the process dies before the flush. Call
    ``flush``/``aclose`` on shutdown to write them out.
    """

    def __init__(
        self,
        backend: MapStore,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._backend = backend
        self._debounce_seconds = debounce_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._sessions: dict[str, SessionRecord] = {}
        self._dirty = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task[None]] = None
        for key, payload in backend.load().items():
            if isinstance(payload, dict):
                self._sessions[key] = SessionRecord.from_dict(payload)

    @property
    def pending_flush(self) -> bool:
        return self._dirty

    def get(self, key: str) -> Optional[SessionRecord]:
        record = self._sessions.get(key)
        if record is None:
            return None
        return dataclasses.replace(record)

    def all_sessions(self) -> dict[str, SessionRecord]:
        return {key: dataclasses.replace(record) for key, record in self._sessions.items()}

    def set_project_dir(self, key: str, project_dir: str) -> SessionRecord:
        if not isinstance(project_dir, str) or not project_dir:
            raise ValueError("project_dir is required")
        record = self._sessions.get(key) or SessionRecord()
        record.project_dir = project_dir
        return self._store(key, record)

    def update_session_id(
        self,
        key: str,
        session_id: Optional[str],
        project_dir: Optional[str] = None,
    ) -> SessionRecord:
        record = self._sessions.get(key) or SessionRecord()
        record.session_id = session_id or None
        if project_dir:
            record.project_dir = project_dir
        return self._store(key, record)

    def clear(self, key: str) -> SessionRecord:
        existing = self._sessions.get(key)
        record = SessionRecord(project_dir=existing.project_dir if existing else None)
        return self._store(key, record)

    def status_string(self, key: str) -> str:
        record = self._sessions.get(key)
        if record is None:
            return NO_SESSION_MESSAGE
        session = f"{record.session_id[:8]}..." if record.session_id else "None"
        lines = [
            f"Project: {record.project_dir or 'Not set'}",
            f"Session: {session}",
            f"Updated: {record.updated_at or 'Unknown'}",
        ]
        return "\n".join(lines)

    def flush(self) -> bool:
        """Write pending mutations now. Returns True when something was written."""
        self._cancel_timer()
        if not self._dirty:
            return False
        snapshot = self._snapshot()
        self._dirty = False
        try:
            self._backend.save(snapshot)
        except Exception:
            self._dirty = True
            raise
        return True

    async def aflush(self) -> bool:
        self._cancel_timer()
        task = self._flush_task
        if task is not None and not task.done():
            await task
        if not self._dirty:
            return False
        snapshot = self._snapshot()
        self._dirty = False
        try:
            await asyncio.to_thread(self._backend.save, snapshot)
        except Exception:
            self._dirty = True
            raise
        return True

    def close(self) -> None:
        self.flush()

    async def aclose(self) -> None:
        await self.aflush()

    def _store(self, key: str, record: SessionRecord) -> SessionRecord:
        record.updated_at = now_iso()
        self._sessions[key] = record
        self._schedule_save()
        return dataclasses.replace(record)

    def _snapshot(self) -> dict[str, Any]:
        return {key: record.to_dict() for key, record in self._sessions.items()}

    def _schedule_save(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop to debounce on; write through.
            self.flush()
            return
        if self._timer is not None:
            return
        self._timer = loop.call_later(max(self._debounce_seconds, 0), self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_in_thread())

    async def _flush_in_thread(self) -> None:
        if not self._dirty:
            return
        snapshot = self._snapshot()
        self._dirty = False
        try:
            await asyncio.to_thread(self._backend.save, snapshot)
        except Exception as exc:
            self._dirty = True
            log_event(
                self._logger,
                logging.ERROR,
                "sessions.flush.failed",
                records=len(snapshot),
                exc=exc,
            )
            return
        log_event(
            self._logger,
            logging.INFO,
            "sessions.flushed",
            records=len(snapshot),
        )
