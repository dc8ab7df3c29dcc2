from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Optional, Protocol, Union

from .core.locks import DEFAULT_STALE_AFTER_SECONDS, DEFAULT_WAIT_SECONDS, store_lock
from .core.utils import atomic_write, read_json
from .logging_utils import log_event

ChatId = Union[int, str]


def chat_key(platform: str, chat_id: ChatId) -> str:
    if not isinstance(platform, str) or not platform.strip():
        raise ValueError("platform is required")
    if isinstance(chat_id, bool) or not isinstance(chat_id, (int, str)):
        raise TypeError("chat_id must be int or str")
    chat_raw = str(chat_id).strip()
    if not chat_raw:
        raise ValueError("chat_id is required")
    return f"{platform.strip().lower()}:{chat_raw}"


def parse_chat_key(key: str) -> tuple[str, str]:
    platform, sep, chat_raw = key.partition(":")
    if not sep or not platform or not chat_raw:
        raise ValueError("invalid chat key")
    return platform, chat_raw


class MapStore(Protocol):
    """Whole-map persistence backend shared by the session and shortcut stores."""

    def load(self) -> dict[str, Any]: ...

    def save(self, data: dict[str, Any]) -> None: ...


class MemoryMapStore:
    def __init__(self, initial: Optional[dict[str, Any]] = None) -> None:
        self._data: dict[str, Any] = json.loads(json.dumps(initial or {}))
        self.saves: list[dict[str, Any]] = []

    def load(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._data))

    def save(self, data: dict[str, Any]) -> None:
        snapshot = json.loads(json.dumps(data))
        self._data = snapshot
        self.saves.append(snapshot)


class JsonFileMapStore:
    """JSON object on disk keyed by chat key, written under a cooperative lock."""

    def __init__(
        self,
        path: Path,
        *,
        stale_after: float = DEFAULT_STALE_AFTER_SECONDS,
        wait_timeout: float = DEFAULT_WAIT_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._path = path
        self._stale_after = stale_after
        self._wait_timeout = wait_timeout
        self._logger = logger or logging.getLogger(__name__)
        self._write_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any]:
        try:
            data = read_json(self._path)
        except (OSError, json.JSONDecodeError) as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "store.load.failed",
                path=str(self._path),
                exc=exc,
            )
            return {}
        if not isinstance(data, dict):
            return {}
        return {key: value for key, value in data.items() if isinstance(key, str)}

    def save(self, data: dict[str, Any]) -> None:
        text = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        with self._write_lock:
            with store_lock(
                self._path,
                stale_after=self._stale_after,
                wait_timeout=self._wait_timeout,
            ) as lock:
                atomic_write(self._path, text)
        if lock.forced:
            log_event(
                self._logger,
                logging.WARNING,
                "store.lock.seized",
                path=str(self._path),
            )
