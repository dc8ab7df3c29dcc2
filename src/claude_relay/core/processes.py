from __future__ import annotations

import asyncio
import logging
import threading
from typing import Optional, Protocol, Union

from ..logging_utils import log_event

DEFAULT_KILL_GRACE_SECONDS = 5.0

logger = logging.getLogger(__name__)
_EXIT_WATCHERS: set[asyncio.Task[None]] = set()

KillTimer = Union[asyncio.TimerHandle, threading.Timer]


class ProcessHandle(Protocol):
    """The subset of ``asyncio.subprocess.Process`` needed to stop a child."""

    @property
    def returncode(self) -> Optional[int]: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


def terminate_process(
    handle: ProcessHandle,
    *,
    grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    log: Optional[logging.Logger] = None,
) -> Optional[KillTimer]:
    """
    Send a termination signal now and a kill after ``grace_seconds``.

    The kill is skipped when the child has already been reaped, and the timer
    is cancelled as soon as the child exits so a recycled pid is never hit.
    Off the event loop (a worker thread, or no loop at all) the kill is armed
    on a daemon ``threading.Timer`` instead. Failures are logged, never
    raised. Returns the armed kill timer, if any.
    """
    log = log or logger
    if handle.returncode is not None:
        return None
    try:
        handle.terminate()
    except ProcessLookupError:
        return None
    except Exception as exc:
        log_event(log, logging.WARNING, "process.terminate.failed", exc=exc)

    def _force_kill() -> None:
        poll = getattr(handle, "poll", None)
        if callable(poll):
            poll()
        if handle.returncode is not None:
            return
        try:
            handle.kill()
        except ProcessLookupError:
            return
        except Exception as exc:
            log_event(log, logging.WARNING, "process.kill.failed", exc=exc)
            return
        log_event(log, logging.INFO, "process.killed", grace_seconds=grace_seconds)

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        thread_timer = threading.Timer(grace_seconds, _force_kill)
        thread_timer.daemon = True
        thread_timer.start()
        return thread_timer

    timer = loop.call_later(grace_seconds, _force_kill)
    wait = getattr(handle, "wait", None)
    if callable(wait):

        async def _cancel_on_exit() -> None:
            try:
                await wait()
            finally:
                timer.cancel()

        watcher = loop.create_task(_cancel_on_exit())
        _EXIT_WATCHERS.add(watcher)
        watcher.add_done_callback(_EXIT_WATCHERS.discard)
    return timer
