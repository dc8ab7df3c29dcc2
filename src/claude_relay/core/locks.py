import json
import logging
import os
import socket
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .time_utils import now_iso
from .utils import atomic_write

DEFAULT_STALE_AFTER_SECONDS = 10.0
DEFAULT_WAIT_SECONDS = 5.0
_BACKOFF_INITIAL_SECONDS = 0.01
_BACKOFF_MAX_SECONDS = 0.25

logger = logging.getLogger(__name__)


@dataclass
class LockInfo:
    pid: Optional[int]
    started_at: Optional[str]
    host: Optional[str]
    token: Optional[str] = None


class StoreLockError(Exception):
    """Raised when a store lock file cannot be created."""


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


def read_lock_info(lock_path: Path) -> LockInfo:
    if not lock_path.exists():
        return LockInfo(pid=None, started_at=None, host=None)
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockInfo(pid=None, started_at=None, host=None)
    if not text:
        return LockInfo(pid=None, started_at=None, host=None)
    if text.startswith("{"):
        try:
            payload = json.loads(text)
            pid = payload.get("pid")
            return LockInfo(
                pid=int(pid) if isinstance(pid, int) or str(pid).isdigit() else None,
                started_at=payload.get("started_at"),
                host=payload.get("host"),
                token=payload.get("token"),
            )
        except Exception:
            return LockInfo(pid=None, started_at=None, host=None)
    pid = int(text) if text.isdigit() else None
    return LockInfo(pid=pid, started_at=None, host=None)


def _lock_payload(token: str) -> str:
    payload = {
        "pid": os.getpid(),
        "started_at": now_iso(),
        "host": socket.gethostname(),
        "token": token,
    }
    return json.dumps(payload) + "\n"


class StoreLock:
    """
    Cooperative lock file guarding a JSON store shared between processes.

    The lock is a sibling ``<name>.lock`` file created exclusively. A lock file
    older than ``stale_after`` seconds is treated as abandoned and removed.
    Contended waits back off with sleeps up to ``wait_timeout`` seconds, after
    which the lock is seized.
    """

    def __init__(
        self,
        path: Path,
        *,
        stale_after: float = DEFAULT_STALE_AFTER_SECONDS,
        wait_timeout: float = DEFAULT_WAIT_SECONDS,
    ) -> None:
        self.path = lock_path_for(path)
        self.stale_after = stale_after
        self.wait_timeout = wait_timeout
        self._token: Optional[str] = None
        self.forced = False

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        if self._token is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.wait_timeout
        delay = _BACKOFF_INITIAL_SECONDS
        while True:
            if self._try_create(token):
                self._token = token
                self.forced = False
                return
            if self._is_stale():
                logger.warning("Removing stale store lock %s", self.path)
                self._unlink()
                continue
            if time.monotonic() >= deadline:
                info = read_lock_info(self.path)
                logger.warning(
                    "Seizing store lock %s held by pid=%s after %.1fs",
                    self.path,
                    info.pid,
                    self.wait_timeout,
                )
                atomic_write(self.path, _lock_payload(token))
                self._token = token
                self.forced = True
                return
            time.sleep(delay)
            delay = min(delay * 2, _BACKOFF_MAX_SECONDS)

    def release(self) -> None:
        token = self._token
        if token is None:
            return
        self._token = None
        info = read_lock_info(self.path)
        if info.token != token:
            # Another process seized the lock; it is theirs to remove now.
            return
        self._unlink()

    def _try_create(self, token: str) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as exc:
            raise StoreLockError(f"Failed to create lock {self.path}: {exc}") from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(_lock_payload(token))
        return True

    def _is_stale(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        return (time.time() - mtime) > self.stale_after

    def _unlink(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@contextmanager
def store_lock(
    path: Path,
    *,
    stale_after: float = DEFAULT_STALE_AFTER_SECONDS,
    wait_timeout: float = DEFAULT_WAIT_SECONDS,
) -> Iterator[StoreLock]:
    lock = StoreLock(path, stale_after=stale_after, wait_timeout=wait_timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
