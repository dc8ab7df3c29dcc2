from __future__ import annotations

import dataclasses
import logging
import random
import string
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .core.processes import DEFAULT_KILL_GRACE_SECONDS, ProcessHandle, terminate_process
from .core.time_utils import now_iso
from .core.utils import truncate_preview
from .logging_utils import log_event

MAX_QUEUE_SIZE = 10
MAX_TASK_CONTENT_LENGTH = 10_000
TASK_TIMEOUT_SECONDS = 10 * 60
CURRENT_PREVIEW_CHARS = 50
PENDING_PREVIEW_CHARS = 30

_ID_ALPHABET = string.digits + string.ascii_lowercase


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"


class RejectReason(str, Enum):
    INVALID_TASK = "invalid_task"
    QUEUE_FULL = "queue_full"


@dataclass
class Task:
    task_id: str
    chat_key: str
    prompt: str
    project_dir: Optional[str]
    session_id: Optional[str]
    added_at: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: Optional[str] = None


@dataclass(frozen=True)
class EnqueueResult:
    accepted: bool
    position: int = -1
    task_id: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[RejectReason] = None


@dataclass(frozen=True)
class CancelResult:
    success: bool
    message: str
    task_id: Optional[str] = None


@dataclass(frozen=True)
class ClearResult:
    cleared_count: int


@dataclass(frozen=True)
class TaskSummary:
    task_id: str
    prompt: str
    added_at: str
    position: Optional[int] = None


@dataclass(frozen=True)
class QueueStatus:
    queue_length: int
    is_processing: bool
    current_task: Optional[TaskSummary]
    pending_tasks: list[TaskSummary]


@dataclass
class ChatQueue:
    queue: list[Task] = dataclasses.field(default_factory=list)
    current_task: Optional[Task] = None
    process: Optional[ProcessHandle] = None
    lock: threading.Lock = dataclasses.field(default_factory=threading.Lock, repr=False)

    @property
    def is_processing(self) -> bool:
        return self.current_task is not None

    def reset(self) -> None:
        self.current_task = None
        self.process = None


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ID_ALPHABET[rem])
    return "".join(reversed(digits))


def new_task_id() -> str:
    # Unique enough within one process lifetime; queues are never persisted.
    suffix = "".join(random.choices(_ID_ALPHABET, k=5))
    return _base36(int(time.time() * 1000)) + suffix


class TaskQueue:
    """
    Per-chat FIFO of assistant invocations with at most one task processing.

    State lives in memory only: a restart drops pending and running tasks.
    Every mutating call takes the chat's lock, so the one-active-task rule and
    the size cap also hold when callers run on several threads.
    """

    def __init__(
        self,
        *,
        max_size: int = MAX_QUEUE_SIZE,
        max_prompt_chars: int = MAX_TASK_CONTENT_LENGTH,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._max_size = max_size
        self._max_prompt_chars = max_prompt_chars
        self._kill_grace_seconds = kill_grace_seconds
        self._logger = logger or logging.getLogger(__name__)
        self._queues: dict[str, ChatQueue] = {}
        self._registry_lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def _queue_for(self, key: str) -> ChatQueue:
        with self._registry_lock:
            chat_queue = self._queues.get(key)
            if chat_queue is None:
                chat_queue = ChatQueue()
                self._queues[key] = chat_queue
            return chat_queue

    def enqueue(
        self,
        key: str,
        prompt: Any,
        *,
        project_dir: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> EnqueueResult:
        if not isinstance(prompt, str) or not prompt.strip():
            return EnqueueResult(
                accepted=False,
                error="Invalid task format",
                reason=RejectReason.INVALID_TASK,
            )
        if len(prompt) > self._max_prompt_chars:
            return EnqueueResult(
                accepted=False,
                error=f"Task content too long (max {self._max_prompt_chars} chars)",
                reason=RejectReason.INVALID_TASK,
            )
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            if len(chat_queue.queue) >= self._max_size:
                log_event(
                    self._logger,
                    logging.INFO,
                    "queue.rejected",
                    chat=key,
                    reason=RejectReason.QUEUE_FULL.value,
                )
                return EnqueueResult(
                    accepted=False,
                    error=f"Queue full (max {self._max_size} tasks)",
                    reason=RejectReason.QUEUE_FULL,
                )
            task = Task(
                task_id=new_task_id(),
                chat_key=key,
                prompt=prompt,
                project_dir=project_dir,
                session_id=session_id,
                added_at=now_iso(),
            )
            chat_queue.queue.append(task)
            position = len(chat_queue.queue)
        log_event(
            self._logger,
            logging.INFO,
            "queue.enqueued",
            chat=key,
            task_id=task.task_id,
            position=position,
            prompt_len=len(prompt),
        )
        return EnqueueResult(accepted=True, position=position, task_id=task.task_id)

    def dispatch_next(self, key: str) -> Optional[Task]:
        """Mark the head task processing and hand it to the caller to run."""
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            if chat_queue.is_processing or not chat_queue.queue:
                return None
            task = chat_queue.queue[0]
            task.status = TaskStatus.PROCESSING
            task.started_at = now_iso()
            chat_queue.current_task = task
        log_event(self._logger, logging.INFO, "queue.dispatched", chat=key, task_id=task.task_id)
        return task

    def register_process_handle(
        self,
        key: str,
        handle: ProcessHandle,
        task_id: Optional[str] = None,
    ) -> bool:
        """
        Attach a running child to the processing task so it can be cancelled.
        Returns False when there is no matching task; the caller owns the child.
        """
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            current = chat_queue.current_task
            if current is None or (task_id is not None and current.task_id != task_id):
                return False
            chat_queue.process = handle
            return True

    def complete(self, key: str, task_id: str) -> bool:
        """
        Drop a finished task. Only resets the chat to idle when ``task_id`` is
        still the processing task, so a completion that lost a race with
        ``cancel_current`` leaves the next task alone.
        """
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            chat_queue.queue = [t for t in chat_queue.queue if t.task_id != task_id]
            current = chat_queue.current_task
            if current is None or current.task_id != task_id:
                return False
            chat_queue.reset()
        log_event(self._logger, logging.INFO, "queue.completed", chat=key, task_id=task_id)
        return True

    def cancel_current(self, key: str) -> CancelResult:
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            task = chat_queue.current_task
            if task is None:
                return CancelResult(success=False, message="No task is currently running")
            process = chat_queue.process
            chat_queue.queue = [t for t in chat_queue.queue if t.task_id != task.task_id]
            chat_queue.reset()
        if process is not None:
            try:
                terminate_process(
                    process,
                    grace_seconds=self._kill_grace_seconds,
                    log=self._logger,
                )
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "queue.cancel.terminate_failed",
                    chat=key,
                    task_id=task.task_id,
                    exc=exc,
                )
        log_event(
            self._logger,
            logging.INFO,
            "queue.cancelled",
            chat=key,
            task_id=task.task_id,
            had_process=process is not None,
        )
        return CancelResult(success=True, message="Task cancelled", task_id=task.task_id)

    def clear_queue(self, key: str) -> ClearResult:
        """Remove pending tasks; the processing task, if any, is kept."""
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            current = chat_queue.current_task
            if current is not None:
                kept = [t for t in chat_queue.queue if t.task_id == current.task_id]
            else:
                kept = []
            cleared = len(chat_queue.queue) - len(kept)
            chat_queue.queue = kept
        if cleared:
            log_event(self._logger, logging.INFO, "queue.cleared", chat=key, cleared=cleared)
        return ClearResult(cleared_count=cleared)

    def current_task(self, key: str) -> Optional[Task]:
        chat_queue = self._queues.get(key)
        if chat_queue is None or chat_queue.current_task is None:
            return None
        return dataclasses.replace(chat_queue.current_task)

    def is_current(self, key: str, task_id: str) -> bool:
        chat_queue = self._queues.get(key)
        return bool(
            chat_queue
            and chat_queue.current_task
            and chat_queue.current_task.task_id == task_id
        )

    def status(self, key: str) -> QueueStatus:
        chat_queue = self._queue_for(key)
        with chat_queue.lock:
            tasks = list(chat_queue.queue)
            current = chat_queue.current_task
        current_summary = None
        if current is not None:
            current_summary = TaskSummary(
                task_id=current.task_id,
                prompt=truncate_preview(current.prompt, CURRENT_PREVIEW_CHARS),
                added_at=current.added_at,
            )
        pending = [t for t in tasks if current is None or t.task_id != current.task_id]
        return QueueStatus(
            queue_length=len(tasks),
            is_processing=current is not None,
            current_task=current_summary,
            pending_tasks=[
                TaskSummary(
                    task_id=t.task_id,
                    prompt=truncate_preview(t.prompt, PENDING_PREVIEW_CHARS),
                    added_at=t.added_at,
                    position=index,
                )
                for index, t in enumerate(pending, start=1)
            ],
        )

    def format_status(self, key: str) -> str:
        status = self.status(key)
        lines = ["Queue Status:", f"Total: {status.queue_length} task(s)"]
        if status.current_task is not None:
            lines.append("")
            lines.append("Currently running:")
            lines.append(f"  [{status.current_task.task_id}] {status.current_task.prompt}")
        if status.pending_tasks:
            lines.append("")
            lines.append("Pending:")
            for summary in status.pending_tasks:
                lines.append(f"  {summary.position}. [{summary.task_id}] {summary.prompt}")
        if status.queue_length == 0:
            lines.append("")
            lines.append("Queue is empty.")
        return "\n".join(lines)
